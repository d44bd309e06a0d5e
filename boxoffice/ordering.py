"""Order creation: validate, soft check, open a charge, persist CREATED."""

from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from . import config
from .errors import StockUnavailableError, ValidationError
from .helpers import is_valid_email, is_valid_phone, normalize_phone, now_ts
from .infra.timings import timeit
from .model.inventory import check_availability
from .model.orders import insert_order
from .model.orm import Order
from .model.states import OrderStatus
from .model.store import Store
from .payments import PaymentProvider

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OrderRequest:
    name: str
    phone: str
    email: str
    ticket_type: str
    quantity: int
    amount: float


@dataclass(frozen=True)
class OrderCreated:
    order_id: str
    amount: int
    currency: str
    key: Optional[str] = None


def parse_order_request(
    payload: Dict[str, Any], max_amount: float = config.MAX_ORDER_AMOUNT
) -> OrderRequest:
    name = payload.get("name")
    phone = payload.get("phone")
    email = payload.get("email")
    ticket_type = payload.get("ticketType")
    amount = payload.get("amount")
    quantity = payload.get("quantity")

    if not name or not phone or not ticket_type or not amount or not quantity:
        raise ValidationError("Missing required fields")
    if not all(isinstance(v, str) for v in (name, phone, ticket_type)):
        raise ValidationError("Missing required fields")
    if not name.strip():
        raise ValidationError("Missing required fields")
    if not is_valid_phone(phone):
        raise ValidationError("Invalid phone number format")
    if email and (not isinstance(email, str) or not is_valid_email(email)):
        raise ValidationError("Invalid email format")

    try:
        qty = int(quantity)
        amt = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("Invalid amount or quantity")
    # bools are ints, and 2.5 tickets is not a quantity
    if isinstance(quantity, bool) or float(quantity) != qty:
        raise ValidationError("Invalid amount or quantity")
    if not (amt > 0 and qty > 0 and amt < max_amount):
        raise ValidationError("Invalid amount or quantity")

    return OrderRequest(
        name=name.strip(),
        phone=normalize_phone(phone),
        email=email.strip() if email else "",
        ticket_type=ticket_type,
        quantity=qty,
        amount=amt,
    )


async def create_order(
    store: Store,
    provider: PaymentProvider,
    payload: Dict[str, Any],
    *,
    currency: str = config.CURRENCY,
) -> OrderCreated:
    req = parse_order_request(payload)

    # Soft check: nothing is reserved, stock is only debited at payment
    async with timeit("store.soft_check"):
        async with store.transaction() as db:
            avail = await check_availability(db, req.ticket_type, req.quantity)
    if not avail.exists:
        raise ValidationError("Invalid ticket type")
    if not avail.ok:
        logger.info("order_rejected_stock", ticket_type=req.ticket_type,
                    requested=req.quantity, available=avail.available)
        raise StockUnavailableError(req.ticket_type, req.quantity,
                                    avail.available)

    async with timeit("provider.create_charge"):
        charge = await provider.create_charge(
            int(round(req.amount * 100)),
            currency,
            {
                "receipt": f"rcpt_{int(time.time() * 1000)}",
                "name": req.name,
                "phone": req.phone,
                "ticketType": req.ticket_type,
                "quantity": str(req.quantity),
            },
        )

    async with timeit("store.insert_order"):
        async with store.transaction() as db:
            await insert_order(db, Order(
                id=charge.order_id,
                name=req.name,
                phone=req.phone,
                email=req.email,
                ticket_type=req.ticket_type,
                quantity=req.quantity,
                amount=req.amount,
                currency=charge.currency,
                status=OrderStatus.CREATED.value,
                tickets_generated=False,
                created_at=now_ts(),
            ))

    logger.info("order_created", order_id=charge.order_id,
                ticket_type=req.ticket_type, quantity=req.quantity)
    return OrderCreated(
        order_id=charge.order_id,
        amount=charge.amount,
        currency=charge.currency,
        key=charge.key,
    )
