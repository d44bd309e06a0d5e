"""
Payment reconciliation.

A provider notification is applied in one transaction over the order and
its inventory row:

  captured: CREATED/FAILED -> PAID with the stock debited, or
            -> OVERSOLD_ERROR if the stock ran out since the soft check
  failed:   CREATED -> FAILED

Delivery is at-least-once. Anything that already left a payable status is
reported as ALREADY_PROCESSED and left alone.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import now_ts
from .model import inventory, orders
from .model.states import OrderStatus, PAYABLE
from .model.store import Store, run_transaction
from .payments import CAPTURED, FAILED, PaymentNotification
from .triggers import OrderChange, OrderSnapshot

logger = structlog.get_logger(__name__)


class ReconcileOutcome(str, Enum):
    PAID = "PAID"
    OVERSOLD = "OVERSOLD_ERROR"
    FAILED = "FAILED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    NOT_FOUND = "ORDER_NOT_FOUND"
    IGNORED = "IGNORED"


@dataclass(frozen=True)
class Reconciliation:
    outcome: ReconcileOutcome
    order_id: str
    # set when the order became PAID; feeds the issuance trigger
    change: Optional[OrderChange] = None


async def _apply_captured(
    db: AsyncSession, note: PaymentNotification
) -> Reconciliation:
    order = await orders.get_order(db, note.order_id)
    if order is None:
        return Reconciliation(ReconcileOutcome.NOT_FOUND, note.order_id)

    # Idempotency guard: PAID (and anything past it) is final for payment
    if order.status not in PAYABLE:
        return Reconciliation(ReconcileOutcome.ALREADY_PROCESSED, order.id)

    item = await inventory.get_item(db, order.ticket_type)
    if item is None or item.available < order.quantity:
        # Oversell race: other orders were paid first. Stock stays as is.
        await orders.transition(
            db, order, OrderStatus.OVERSOLD_ERROR,
            payment_id=note.payment_id,
            paid_at=now_ts(),
            failure_reason="Insufficient stock at payment confirmation",
        )
        logger.warning(
            "order_oversold",
            order_id=order.id,
            ticket_type=order.ticket_type,
            quantity=order.quantity,
            available=item.available if item else 0,
            payment_id=note.payment_id,
        )
        return Reconciliation(ReconcileOutcome.OVERSOLD, order.id)

    await inventory.debit(db, item, order.quantity)
    await orders.transition(
        db, order, OrderStatus.PAID,
        payment_id=note.payment_id,
        paid_at=now_ts(),
    )
    change = OrderChange(
        order_id=order.id,
        before=OrderSnapshot.of(order),
        after=OrderSnapshot(status=OrderStatus.PAID,
                            tickets_generated=order.tickets_generated),
    )
    return Reconciliation(ReconcileOutcome.PAID, order.id, change)


async def _apply_failed(
    db: AsyncSession, note: PaymentNotification
) -> Reconciliation:
    order = await orders.get_order(db, note.order_id)
    if order is None:
        return Reconciliation(ReconcileOutcome.NOT_FOUND, note.order_id)
    if order.status != OrderStatus.CREATED:
        return Reconciliation(ReconcileOutcome.ALREADY_PROCESSED, order.id)
    await orders.transition(
        db, order, OrderStatus.FAILED,
        payment_id=note.payment_id,
        failure_reason=note.error_description or "Payment failed",
        failed_at=now_ts(),
    )
    return Reconciliation(ReconcileOutcome.FAILED, order.id)


async def reconcile(store: Store, note: PaymentNotification) -> Reconciliation:
    if note.kind == CAPTURED:
        apply = _apply_captured
    elif note.kind == FAILED:
        apply = _apply_failed
    else:
        logger.info("payment_event_ignored", payment_event=note.event,
                    order_id=note.order_id)
        return Reconciliation(ReconcileOutcome.IGNORED, note.order_id)

    async def tx(db: AsyncSession) -> Reconciliation:
        return await apply(db, note)

    result = await run_transaction(
        store, tx, key=f"order:{note.order_id}", kind="store.reconcile"
    )
    logger.info("payment_reconciled", order_id=note.order_id,
                payment_event=note.event, outcome=result.outcome.value)
    return result
