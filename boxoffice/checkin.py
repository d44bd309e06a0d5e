from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .errors import AuthenticationError, TransientStoreFailure, ValidationError
from .helpers import is_valid_ticket_id, now_ts, to_clock, to_iso
from .model import orders, tickets
from .model.store import Store, run_transaction

logger = structlog.get_logger(__name__)


class VerificationStatus(str, Enum):
    INVALID = "INVALID"
    ALREADY_USED = "ALREADY_USED"
    SUCCESS = "SUCCESS"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    message: str
    guest: Optional[str] = None
    ticket_type: Optional[str] = None
    ticket_number: Optional[int] = None
    scanned_at: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
        }
        if self.guest is not None:
            out["guest"] = self.guest
        if self.ticket_type is not None:
            out["ticketType"] = self.ticket_type
        if self.ticket_number is not None:
            out["ticketNumber"] = self.ticket_number
        if self.scanned_at is not None:
            out["scannedAt"] = to_iso(self.scanned_at)
        return out


async def verify_ticket(
    store: Store,
    ticket_id: Any,
    scanner_id: Optional[str],
    *,
    tz_name: str = config.EVENT_TIMEZONE,
) -> VerificationResult:
    if not scanner_id:
        raise AuthenticationError("You must be logged in to scan tickets.")
    if not ticket_id or not isinstance(ticket_id, str):
        raise ValidationError("Valid Ticket ID is required")
    if not is_valid_ticket_id(ticket_id):
        return VerificationResult(VerificationStatus.INVALID,
                                  "Invalid ticket format.")
    ticket_id = ticket_id.lower()

    async def tx(db: AsyncSession) -> VerificationResult:
        ticket = await tickets.get_ticket(db, ticket_id)
        if ticket is not None:
            # rows from an abandoned issuance run never made it into the
            # order's ticket list and don't admit anyone
            order = await orders.get_order(db, ticket.order_id)
            if (order is None or not order.tickets_generated
                    or ticket.id not in order.ticket_ids):
                ticket = None
        if ticket is None:
            return VerificationResult(VerificationStatus.INVALID,
                                      "Ticket not found.")

        if ticket.used:
            return VerificationResult(
                VerificationStatus.ALREADY_USED,
                f"Already scanned at {to_clock(ticket.scanned_at, tz_name)}",
                guest=ticket.owner_name,
                ticket_type=ticket.ticket_type,
                scanned_at=ticket.scanned_at,
            )

        # first committed scan wins; losers retry and see used=true
        if not await tickets.mark_used(db, ticket.id, now_ts(), scanner_id):
            raise TransientStoreFailure(f"ticket:{ticket.id}")
        return VerificationResult(
            VerificationStatus.SUCCESS,
            "Ticket verified successfully",
            guest=ticket.owner_name,
            ticket_type=ticket.ticket_type,
            ticket_number=ticket.ticket_number or 1,
        )

    result = await run_transaction(store, tx, key=f"ticket:{ticket_id}",
                                   kind="store.verify")
    logger.info("ticket_scanned", ticket_id=ticket_id, scanner=scanner_id,
                status=result.status.value)
    return result
