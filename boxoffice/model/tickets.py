from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class TicketRecord:
    id: str
    order_id: str
    ticket_type: str
    ticket_number: int
    owner_name: str
    owner_phone: str
    owner_email: str
    qr_url: str
    used: bool
    created_at: float
    scanned_at: Optional[float] = None
    scanned_by: Optional[str] = None

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


def _record(row) -> TicketRecord:
    return TicketRecord(
        id=row["id"],
        order_id=row["order_id"],
        ticket_type=row["ticket_type"],
        ticket_number=int(row["ticket_number"]),
        owner_name=row["owner_name"],
        owner_phone=row["owner_phone"],
        owner_email=row["owner_email"] or "",
        qr_url=row["qr_url"],
        used=bool(row["used"]),
        created_at=float(row["created_at"]),
        scanned_at=row["scanned_at"],
        scanned_by=row["scanned_by"],
    )


async def insert_tickets(
    db: AsyncSession, tickets: Sequence[TicketRecord]
) -> None:
    if not tickets:
        return
    await db.execute(text("""
        INSERT INTO tickets (
            id, order_id, ticket_type, ticket_number, owner_name,
            owner_phone, owner_email, qr_url, used, created_at,
            scanned_at, scanned_by
        ) VALUES (
            :id, :order_id, :ticket_type, :ticket_number, :owner_name,
            :owner_phone, :owner_email, :qr_url, :used, :created_at,
            :scanned_at, :scanned_by
        )
    """), [t.as_row() for t in tickets])


async def delete_tickets(db: AsyncSession, ticket_ids: Sequence[str]) -> int:
    if not ticket_ids:
        return 0
    stmt = text(
        "DELETE FROM tickets WHERE id IN :ids"
    ).bindparams(bindparam("ids", expanding=True))
    result = await db.execute(stmt, {"ids": list(ticket_ids)})
    return int(result.rowcount or 0)


async def get_ticket(db: AsyncSession, ticket_id: str) -> Optional[TicketRecord]:
    row = (await db.execute(
        text("SELECT * FROM tickets WHERE id = :id"), {"id": ticket_id}
    )).mappings().first()
    return _record(row) if row else None


async def list_for_order(db: AsyncSession, order_id: str) -> List[TicketRecord]:
    rows = (await db.execute(text("""
        SELECT * FROM tickets WHERE order_id = :o ORDER BY ticket_number
    """), {"o": order_id})).mappings().all()
    return [_record(r) for r in rows]


async def mark_used(
    db: AsyncSession, ticket_id: str, scanned_at: float, scanned_by: str
) -> bool:
    """
    used false -> true. False means someone else flipped it since our read.
    """
    row = (await db.execute(text("""
        UPDATE tickets
        SET used = TRUE, scanned_at = :ts, scanned_by = :by
        WHERE id = :id AND used = FALSE
        RETURNING id
    """), {"id": ticket_id, "ts": scanned_at, "by": scanned_by})).first()
    return row is not None
