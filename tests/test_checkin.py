import asyncio

import pytest

from boxoffice.checkin import VerificationStatus, verify_ticket
from boxoffice.errors import AuthenticationError, ValidationError
from boxoffice.helpers import new_ticket_id, now_ts
from boxoffice.issuance import on_order_updated
from boxoffice.model import tickets
from boxoffice.model.tickets import TicketRecord


@pytest.fixture
def issued(store, storage, paid_order):
    async def _make(**overrides):
        paid = await paid_order(**overrides)
        result = await on_order_updated(store, storage, paid.change)
        return result.ticket_ids
    return _make


@pytest.mark.asyncio
async def test_first_scan_admits_second_is_rejected(store, issued):
    ticket_id = (await issued(quantity=1))[0]

    first = await verify_ticket(store, ticket_id, "door")
    second = await verify_ticket(store, ticket_id, "gate2", tz_name="UTC")

    assert first.status == VerificationStatus.SUCCESS
    assert first.message == "Ticket verified successfully"
    assert (first.guest, first.ticket_type, first.ticket_number) \
        == ("Asha Rao", "GENERAL", 1)

    assert second.status == VerificationStatus.ALREADY_USED
    assert second.message.startswith("Already scanned at ")
    assert second.guest == "Asha Rao"
    assert second.scanned_at is not None
    body = second.as_dict()
    assert body["status"] == "ALREADY_USED"
    assert body["ticketType"] == "GENERAL"
    assert "scannedAt" in body

    async with store.transaction() as db:
        row = await tickets.get_ticket(db, ticket_id)
    assert row.used and row.scanned_by == "door"


@pytest.mark.asyncio
async def test_uppercase_id_is_accepted(store, issued):
    ticket_id = (await issued(quantity=1))[0]
    result = await verify_ticket(store, ticket_id.upper(), "door")
    assert result.status == VerificationStatus.SUCCESS


@pytest.mark.race
@pytest.mark.asyncio
async def test_concurrent_scans_admit_once(store, issued):
    ticket_id = (await issued(quantity=1))[0]

    results = await asyncio.gather(
        *(verify_ticket(store, ticket_id, f"door{n}") for n in range(5))
    )

    statuses = [r.status for r in results]
    assert statuses.count(VerificationStatus.SUCCESS) == 1
    assert statuses.count(VerificationStatus.ALREADY_USED) == 4


@pytest.mark.asyncio
async def test_bad_format_never_reads_the_store():
    # a store that would blow up if touched
    result = await verify_ticket(object(), "not-a-uuid", "door")
    assert result.status == VerificationStatus.INVALID
    assert result.message == "Invalid ticket format."
    assert result.as_dict() == {
        "status": "INVALID", "message": "Invalid ticket format.",
    }


@pytest.mark.asyncio
async def test_unknown_ticket(store):
    result = await verify_ticket(store, new_ticket_id(), "door")
    assert result.status == VerificationStatus.INVALID
    assert result.message == "Ticket not found."


@pytest.mark.asyncio
async def test_ticket_outside_the_order_list_is_rejected(store, issued,
                                                         paid_order):
    await issued(quantity=1)
    paid = await paid_order(quantity=1)
    # leftover row from a run that never completed
    stray = TicketRecord(
        id=new_ticket_id(), order_id=paid.order_id, ticket_type="GENERAL",
        ticket_number=1, owner_name="Asha Rao", owner_phone="9876543210",
        owner_email="", qr_url="/media/x.png", used=False,
        created_at=now_ts(),
    )
    async with store.transaction() as db:
        await tickets.insert_tickets(db, [stray])

    result = await verify_ticket(store, stray.id, "door")
    assert result.status == VerificationStatus.INVALID


@pytest.mark.asyncio
async def test_requires_scanner(store):
    with pytest.raises(AuthenticationError):
        await verify_ticket(store, new_ticket_id(), None)


@pytest.mark.parametrize("ticket_id", [None, "", 42])
@pytest.mark.asyncio
async def test_requires_ticket_id(store, ticket_id):
    with pytest.raises(ValidationError) as exc:
        await verify_ticket(store, ticket_id, "door")
    assert exc.value.message == "Valid Ticket ID is required"
