from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import orjson
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import TransientStoreFailure
from .orm import Order
from .states import OrderStatus, check_transition


@dataclass(frozen=True)
class OrderRecord:
    id: str
    name: str
    phone: str
    email: str
    ticket_type: str
    quantity: int
    amount: float
    currency: str
    status: OrderStatus
    tickets_generated: bool
    ticket_ids: List[str]
    payment_id: Optional[str]
    failure_reason: Optional[str]
    error_message: Optional[str]
    created_at: float
    paid_at: Optional[float]
    tickets_generated_at: Optional[float]


_COLUMNS = """
    id, name, phone, email, ticket_type, quantity, amount, currency, status,
    tickets_generated, ticket_ids, payment_id, failure_reason, error_message,
    created_at, paid_at, tickets_generated_at
"""


def _record(row) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        name=row["name"],
        phone=row["phone"],
        email=row["email"] or "",
        ticket_type=row["ticket_type"],
        quantity=int(row["quantity"]),
        amount=float(row["amount"]),
        currency=row["currency"],
        status=OrderStatus(row["status"]),
        tickets_generated=bool(row["tickets_generated"]),
        ticket_ids=orjson.loads(row["ticket_ids"]) if row["ticket_ids"] else [],
        payment_id=row["payment_id"],
        failure_reason=row["failure_reason"],
        error_message=row["error_message"],
        created_at=float(row["created_at"]),
        paid_at=row["paid_at"],
        tickets_generated_at=row["tickets_generated_at"],
    )


def as_dict(order: OrderRecord) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "status": order.status.value,
        "ticket_type": order.ticket_type,
        "quantity": order.quantity,
        "amount": order.amount,
        "currency": order.currency,
        "tickets_generated": order.tickets_generated,
        "ticket_ids": order.ticket_ids,
        "created_at": order.created_at,
        "paid_at": order.paid_at,
    }


async def insert_order(db: AsyncSession, order: Order) -> None:
    db.add(order)
    await db.flush()


async def get_order(db: AsyncSession, order_id: str) -> Optional[OrderRecord]:
    row = (await db.execute(
        text(f"SELECT {_COLUMNS} FROM orders WHERE id = :id"),
        {"id": order_id},
    )).mappings().first()
    return _record(row) if row else None


async def list_orders(db: AsyncSession, limit: int) -> List[OrderRecord]:
    rows = (await db.execute(
        text(f"""
            SELECT {_COLUMNS} FROM orders
            ORDER BY created_at DESC
            LIMIT :limit
        """),
        {"limit": limit},
    )).mappings().all()
    return [_record(r) for r in rows]


async def transition(
    db: AsyncSession,
    order: OrderRecord,
    target: OrderStatus,
    **fields: Any,
) -> None:
    """
    Move `order` from the status it was read with to `target`, writing
    `fields` alongside. Conditional on the status still being the one we
    read; a concurrent writer turns this into TransientStoreFailure.
    """
    check_transition(order.status, target)
    assignments = ", ".join(f"{k} = :{k}" for k in fields)
    sets = "status = :target" + (f", {assignments}" if assignments else "")
    row = (await db.execute(
        text(f"""
            UPDATE orders SET {sets}
            WHERE id = :id AND status = :seen
            RETURNING id
        """),
        {"id": order.id, "seen": order.status.value,
         "target": target.value, **fields},
    )).first()
    if row is None:
        raise TransientStoreFailure(f"order:{order.id}")


async def complete_issuance(
    db: AsyncSession,
    order_id: str,
    ticket_ids: List[str],
    generated_at: float,
) -> bool:
    """
    Flip tickets_generated false -> true and record the ticket ids.
    PAID stays PAID; ERROR -> PAID once a retried run commits.
    Returns False if another run already did (or the order left the
    issuable statuses), in which case the caller must roll back.
    """
    row = (await db.execute(text("""
        UPDATE orders
        SET status = :paid,
            tickets_generated = TRUE,
            ticket_ids = :ids,
            tickets_generated_at = :ts,
            error_message = NULL
        WHERE id = :id
          AND tickets_generated = FALSE
          AND status IN (:paid, :error)
        RETURNING id
    """), {
        "id": order_id,
        "ids": orjson.dumps(ticket_ids).decode(),
        "ts": generated_at,
        "paid": OrderStatus.PAID.value,
        "error": OrderStatus.ERROR.value,
    })).first()
    return row is not None


async def mark_issuance_error(
    db: AsyncSession, order_id: str, message: str
) -> bool:
    """
    PAID -> ERROR (or refresh the message on ERROR), only while tickets
    are not generated. Any other status is left alone and yields False.
    """
    row = (await db.execute(text("""
        UPDATE orders
        SET status = :error, error_message = :msg
        WHERE id = :id
          AND tickets_generated = FALSE
          AND status IN (:paid, :error)
        RETURNING id
    """), {
        "id": order_id,
        "msg": message[:500],
        "paid": OrderStatus.PAID.value,
        "error": OrderStatus.ERROR.value,
    })).first()
    return row is not None


async def list_pending_issuance(
    db: AsyncSession,
    paid_before: float,
    limit: int,
    skip_error: Optional[str] = None,
) -> List[str]:
    """Paid orders still without tickets, oldest payment first."""
    rows = (await db.execute(text("""
        SELECT id FROM orders
        WHERE tickets_generated = FALSE
          AND status IN (:paid, :error)
          AND paid_at <= :before
          AND (error_message IS NULL OR error_message != :skip)
        ORDER BY paid_at
        LIMIT :limit
    """), {
        "paid": OrderStatus.PAID.value,
        "error": OrderStatus.ERROR.value,
        "before": paid_before,
        "skip": skip_error or "",
        "limit": limit,
    })).all()
    return [r[0] for r in rows]
