# model/inventory.py
"""
Inventory ledger: one counter row per ticket type.

- soft check: advisory read at order creation, reserves nothing
- debit: the authoritative decrement, only ever inside the payment
  reconciliation transaction, committed against the version it read
- inventory view for the public stock endpoint
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ..errors import TransientStoreFailure


@dataclass(frozen=True)
class Availability:
    ok: bool
    available: int
    exists: bool = True


@dataclass(frozen=True)
class Item:
    ticket_type: str
    available: int
    sold_count: int
    version: int


async def seed_inventory(
    db: AsyncSession | AsyncConnection, inventory: Dict[str, int]
) -> None:
    """
    Insert-if-absent. Existing rows keep their counters across restarts.
    """
    for ticket_type, qty in inventory.items():
        await db.execute(text("""
            INSERT INTO inventory (ticket_type, available, sold_count, version)
            VALUES (:t, :a, 0, 0)
            ON CONFLICT (ticket_type) DO NOTHING
        """), {"t": ticket_type, "a": int(qty)})


async def get_item(db: AsyncSession, ticket_type: str) -> Optional[Item]:
    row = (await db.execute(text("""
        SELECT ticket_type, available, sold_count, version
        FROM inventory WHERE ticket_type = :t
    """), {"t": ticket_type})).mappings().first()
    if row is None:
        return None
    return Item(
        ticket_type=row["ticket_type"],
        available=int(row["available"]),
        sold_count=int(row["sold_count"]),
        version=int(row["version"]),
    )


async def check_availability(
    db: AsyncSession, ticket_type: str, qty: int
) -> Availability:
    """
    Soft check. Several buyers can pass it for the same last unit; the
    debit at payment time settles who actually gets it.
    """
    item = await get_item(db, ticket_type)
    if item is None:
        return Availability(ok=False, available=0, exists=False)
    return Availability(ok=item.available >= qty, available=item.available)


async def debit(db: AsyncSession, item: Item, qty: int) -> Item:
    """
    Conditional decrement against the version read in this transaction.
    Zero rows means another writer got there first: the caller's
    transaction must be retried from a fresh read.
    """
    if qty <= 0:
        raise ValueError("debit quantity must be positive")
    row = (await db.execute(text("""
        UPDATE inventory
        SET available = available - :q,
            sold_count = sold_count + :q,
            version = version + 1
        WHERE ticket_type = :t
          AND version = :v
          AND available >= :q
        RETURNING available, sold_count, version
    """), {"t": item.ticket_type, "q": qty, "v": item.version})).first()
    if row is None:
        raise TransientStoreFailure(f"inventory:{item.ticket_type}")
    return Item(
        ticket_type=item.ticket_type,
        available=int(row[0]),
        sold_count=int(row[1]),
        version=int(row[2]),
    )


async def compute_inventory(db: AsyncSession) -> Dict[str, Any]:
    """
    Returns:
      {"GENERAL": {"available": ..., "sold": ..., "sold_out": ...}, ...}
    """
    rows = (await db.execute(text("""
        SELECT ticket_type, available, sold_count FROM inventory
        ORDER BY ticket_type
    """))).mappings().all()
    out: Dict[str, Any] = {}
    for r in rows:
        out[r["ticket_type"]] = {
            "available": int(r["available"]),
            "sold": int(r["sold_count"]),
            "sold_out": int(r["available"]) <= 0,
        }
    return out
