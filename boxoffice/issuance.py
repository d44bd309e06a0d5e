"""
Ticket issuance for paid orders.

Runs off the order's change to PAID. Every run generates a complete fresh
set of tickets: encode and upload fan out per ticket, then a single commit
(chunked for large orders) writes the tickets and flips
``tickets_generated``. Until that flag is set the run can be repeated from
scratch; once it is set, repeats are no-ops.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .errors import IssuanceFailure
from .helpers import new_ticket_id, now_ts
from .infra.timings import timeit
from .model import orders, tickets
from .model.orders import OrderRecord
from .model.states import ISSUABLE, OrderStatus
from .model.store import Store, run_transaction
from .model.tickets import TicketRecord
from .storage import ObjectStorage
from .symbols import CONTENT_TYPE, encode_symbol
from .triggers import OrderChange

logger = structlog.get_logger(__name__)

QUANTITY_EXCEEDED = "Quantity exceeds maximum allowed"
CANCELLED = "Issuance cancelled"


class IssuanceOutcome(str, Enum):
    ISSUED = "ISSUED"
    SKIPPED = "SKIPPED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class IssuanceResult:
    outcome: IssuanceOutcome
    order_id: str
    ticket_ids: List[str] = field(default_factory=list)


class _AlreadyIssued(Exception):
    """Another run flipped tickets_generated first."""


def should_issue(change: OrderChange) -> bool:
    after, before = change.after, change.before
    if after.status != OrderStatus.PAID or after.tickets_generated:
        return False
    return before is None or before.status != OrderStatus.PAID


def symbol_path(order_id: str, ticket_id: str) -> str:
    return f"qrcodes/{order_id}/{ticket_id}.png"


async def _build_ticket(
    storage: ObjectStorage, order: OrderRecord, number: int, ticket_id: str
) -> TicketRecord:
    png = await asyncio.to_thread(encode_symbol, ticket_id)
    async with timeit("storage.put"):
        url = await storage.put(symbol_path(order.id, ticket_id), png,
                                CONTENT_TYPE)
    return TicketRecord(
        id=ticket_id,
        order_id=order.id,
        ticket_type=order.ticket_type,
        ticket_number=number,
        owner_name=order.name,
        owner_phone=order.phone,
        owner_email=order.email,
        qr_url=url,
        used=False,
        created_at=now_ts(),
    )


def _chunks(items: Sequence[TicketRecord],
            size: int) -> List[Sequence[TicketRecord]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


async def _discard(store: Store, storage: ObjectStorage, order_id: str,
                   written: Sequence[TicketRecord],
                   planned: Sequence[str]) -> None:
    """Remove this run's committed rows and any symbol it may have uploaded."""
    if written:
        ids = [t.id for t in written]

        async def tx(db: AsyncSession) -> int:
            return await tickets.delete_tickets(db, ids)

        await run_transaction(store, tx, key=f"order:{order_id}",
                              kind="store.discard_tickets")
    for ticket_id in planned:
        await storage.delete(symbol_path(order_id, ticket_id))


async def _commit(store: Store, order_id: str,
                  issued: Sequence[TicketRecord], batch_size: int,
                  written: List[TicketRecord]) -> None:
    chunks = _chunks(issued, batch_size)
    all_ids = [t.id for t in issued]
    for n, chunk in enumerate(chunks):
        last = n == len(chunks) - 1

        async def tx(db: AsyncSession) -> None:
            await tickets.insert_tickets(db, chunk)
            if last:
                # folded into the final chunk: a failure anywhere before
                # this leaves tickets_generated false
                done = await orders.complete_issuance(
                    db, order_id, all_ids, now_ts()
                )
                if not done:
                    raise _AlreadyIssued()

        await run_transaction(store, tx, key=f"order:{order_id}",
                              kind="store.commit_tickets")
        written.extend(chunk)


async def _mark_error(store: Store, order_id: str, message: str) -> None:
    async def tx(db: AsyncSession) -> bool:
        return await orders.mark_issuance_error(db, order_id, message)

    await run_transaction(store, tx, key=f"order:{order_id}",
                          kind="store.mark_error")


async def issue_tickets(
    store: Store,
    storage: ObjectStorage,
    order_id: str,
    *,
    max_quantity: int = config.MAX_TICKETS_PER_ORDER,
    batch_size: int = config.TICKET_BATCH_SIZE,
) -> IssuanceResult:
    async with store.transaction() as db:
        order = await orders.get_order(db, order_id)
    if (order is None or order.tickets_generated
            or order.status not in ISSUABLE):
        return IssuanceResult(IssuanceOutcome.SKIPPED, order_id)

    log = logger.bind(order_id=order_id, ticket_type=order.ticket_type,
                      quantity=order.quantity)

    if order.quantity > max_quantity:
        log.error("issuance_quantity_exceeded", max_quantity=max_quantity)
        await _mark_error(store, order_id, QUANTITY_EXCEEDED)
        return IssuanceResult(IssuanceOutcome.REJECTED, order_id)

    log.info("issuance_started")
    # ids are fixed up front so every cleanup path knows which symbol
    # paths this run may have written
    planned = [new_ticket_id() for _ in range(order.quantity)]
    built: List[TicketRecord] = []
    written: List[TicketRecord] = []
    try:
        async with timeit("issuance.fan_out"):
            results = await asyncio.gather(
                *(_build_ticket(storage, order, n, ticket_id)
                  for n, ticket_id in enumerate(planned, start=1)),
                return_exceptions=True,
            )
        for r in results:
            if isinstance(r, BaseException):
                raise r
        built = list(results)
        await _commit(store, order_id, built, batch_size, written)
    except _AlreadyIssued:
        log.info("issuance_lost_race")
        await _discard(store, storage, order_id, written, planned)
        return IssuanceResult(IssuanceOutcome.SKIPPED, order_id)
    except asyncio.CancelledError:
        # budget exceeded; clean up even if cancelled again, then let the
        # cancellation through
        log.error("issuance_cancelled")
        await asyncio.shield(_abandon(store, storage, order_id, CANCELLED,
                                      written, planned, log))
        raise
    except Exception as exc:
        reason = str(exc) or type(exc).__name__
        log.error("issuance_failed", error=reason, exc_info=True)
        await _abandon(store, storage, order_id, reason, written, planned, log)
        raise IssuanceFailure(order_id, reason) from exc

    ids = [t.id for t in built]
    log.info("issuance_completed", tickets=len(ids))
    return IssuanceResult(IssuanceOutcome.ISSUED, order_id, ids)


async def _abandon(store: Store, storage: ObjectStorage, order_id: str,
                   reason: str, written: Sequence[TicketRecord],
                   planned: Sequence[str], log) -> None:
    await _mark_error(store, order_id, reason)
    try:
        await _discard(store, storage, order_id, written, planned)
    except Exception:
        # leftovers are unreferenced by the order; the retry makes a
        # fresh set regardless
        log.error("issuance_cleanup_failed", exc_info=True)


async def on_order_updated(
    store: Store,
    storage: ObjectStorage,
    change: OrderChange,
    **kw,
) -> IssuanceResult:
    """Trigger entry point. Raises IssuanceFailure so the host retries."""
    if not should_issue(change):
        return IssuanceResult(IssuanceOutcome.SKIPPED, change.order_id)
    return await issue_tickets(store, storage, change.order_id, **kw)


async def sweep_pending(
    store: Store,
    storage: ObjectStorage,
    *,
    grace: float = config.ISSUANCE_SWEEP_GRACE_SECONDS,
    limit: int = config.ISSUANCE_SWEEP_LIMIT,
    **kw,
) -> List[IssuanceResult]:
    """
    Re-drive issuance for paid orders that still have no tickets: the
    in-process trigger gave up, or the process died before it ran.
    Orders paid within the last `grace` seconds are left to their trigger.
    """
    async with store.transaction() as db:
        pending = await orders.list_pending_issuance(
            db, paid_before=now_ts() - grace, limit=limit,
            # over-cap orders stay ERROR until someone intervenes
            skip_error=QUANTITY_EXCEEDED,
        )
    results: List[IssuanceResult] = []
    for order_id in pending:
        try:
            results.append(
                await issue_tickets(store, storage, order_id, **kw)
            )
        except IssuanceFailure as exc:
            # already marked ERROR; the next sweep tries again
            logger.warning("issuance_sweep_failed", order_id=order_id,
                           error=exc.message)
    if pending:
        logger.info("issuance_sweep", pending=len(pending),
                    issued=sum(r.outcome == IssuanceOutcome.ISSUED
                               for r in results))
    return results


async def list_tickets(store: Store, order_id: str) -> List[TicketRecord]:
    async with store.transaction() as db:
        return await tickets.list_for_order(db, order_id)
