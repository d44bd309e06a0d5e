import pytest

from boxoffice.errors import (
    PaymentProviderError, StockUnavailableError, ValidationError,
)
from boxoffice.model import orders
from boxoffice.model.inventory import get_item
from boxoffice.model.states import OrderStatus
from boxoffice.ordering import create_order, parse_order_request
from boxoffice.payments import PaymentProvider

from conftest import order_payload


def test_parse_normalizes_fields():
    req = parse_order_request(order_payload(email=" asha@example.com "))
    assert req.name == "Asha Rao"
    assert req.phone == "9876543210"
    assert req.email == "asha@example.com"
    assert (req.ticket_type, req.quantity, req.amount) == ("GENERAL", 3, 1500.0)


def test_email_is_optional():
    assert parse_order_request(order_payload(email=None)).email == ""


@pytest.mark.parametrize("overrides,message", [
    ({"name": ""}, "Missing required fields"),
    ({"name": "   "}, "Missing required fields"),
    ({"phone": None}, "Missing required fields"),
    ({"ticketType": ""}, "Missing required fields"),
    ({"quantity": 0}, "Missing required fields"),
    ({"phone": "12345"}, "Invalid phone number format"),
    ({"email": "nope"}, "Invalid email format"),
    ({"quantity": "three"}, "Invalid amount or quantity"),
    ({"quantity": 2.5}, "Invalid amount or quantity"),
    ({"quantity": True}, "Invalid amount or quantity"),
    ({"quantity": -1}, "Invalid amount or quantity"),
    ({"amount": -10}, "Invalid amount or quantity"),
    ({"amount": 1_000_000}, "Invalid amount or quantity"),
])
def test_parse_rejects(overrides, message):
    with pytest.raises(ValidationError) as exc:
        parse_order_request(order_payload(**overrides))
    assert exc.value.message == message


@pytest.mark.asyncio
async def test_create_order_persists_created(store, provider):
    created = await create_order(store, provider, order_payload())
    assert created.order_id.startswith("order_")
    assert created.amount == 150000
    assert created.currency == "INR"

    async with store.transaction() as db:
        order = await orders.get_order(db, created.order_id)
        item = await get_item(db, "GENERAL")
    assert order.status == OrderStatus.CREATED
    assert not order.tickets_generated and order.ticket_ids == []
    assert (order.name, order.phone) == ("Asha Rao", "9876543210")
    # nothing reserved at creation
    assert (item.available, item.sold_count) == (5, 0)


@pytest.mark.asyncio
async def test_soft_check_rejects_short_stock(store, provider):
    with pytest.raises(StockUnavailableError) as exc:
        await create_order(store, provider,
                           order_payload(ticketType="VIP", quantity=3))
    assert (exc.value.requested, exc.value.available) == (3, 2)
    async with store.transaction() as db:
        assert await orders.list_orders(db, 10) == []


@pytest.mark.asyncio
async def test_unknown_ticket_type(store, provider):
    with pytest.raises(ValidationError) as exc:
        await create_order(store, provider,
                           order_payload(ticketType="BALCONY"))
    assert exc.value.message == "Invalid ticket type"


@pytest.mark.asyncio
async def test_soft_check_passes_for_every_buyer(store, provider):
    # two buyers for the last two VIP seats each get an order
    a = await create_order(store, provider,
                           order_payload(ticketType="VIP", quantity=2))
    b = await create_order(store, provider,
                           order_payload(ticketType="VIP", quantity=2))
    assert a.order_id != b.order_id


class BrokenProvider(PaymentProvider):
    async def create_charge(self, amount, currency, metadata):
        raise PaymentProviderError()


@pytest.mark.asyncio
async def test_provider_failure_leaves_no_order(store):
    with pytest.raises(PaymentProviderError):
        await create_order(store, BrokenProvider("s"), order_payload())
    async with store.transaction() as db:
        assert await orders.list_orders(db, 10) == []
