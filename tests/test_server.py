import pytest

from boxoffice import server
from boxoffice.payments import MockPay
from boxoffice.storage import LocalStorage

from conftest import SECRET, order_payload


async def _create(client, **overrides):
    r = await client.post("/api/orders", json=order_payload(**overrides))
    assert r.status_code == 200, r.text
    return r.json()


async def _emit(client, order_id, kind="captured"):
    r = await client.post(f"/mockpay/{order_id}/emit", data={"t": kind})
    assert r.status_code == 200, r.text
    return r.json()


async def _login(client, username, password):
    return await client.post("/staff/login",
                             data={"username": username, "password": password})


@pytest.mark.asyncio
async def test_purchase_to_checkin(app_client):
    created = await _create(app_client, quantity=2)
    assert created["amount"] == 150000
    assert created["currency"] == "INR"
    assert "key" not in created
    order_id = created["orderId"]

    r = await app_client.get(f"/api/orders/{order_id}")
    assert r.json()["status"] == "CREATED"

    emitted = await _emit(app_client, order_id)
    assert emitted == {"ok": True, "event": "payment.captured",
                       "order_id": order_id}

    # webhook and the issuance it triggers have both run by now
    order = (await app_client.get(f"/api/orders/{order_id}")).json()
    assert order["status"] == "PAID"
    assert order["tickets_generated"] is True
    assert len(order["ticket_ids"]) == 2

    tickets = (await app_client.get(f"/api/orders/{order_id}/tickets")).json()
    assert [t["ticketNumber"] for t in tickets["tickets"]] == [1, 2]
    ticket_id = tickets["tickets"][0]["ticketId"]

    qr = await app_client.get(tickets["tickets"][0]["qrUrl"])
    assert qr.status_code == 200
    assert qr.content.startswith(b"\x89PNG")

    inventory = (await app_client.get("/api/inventory")).json()
    assert inventory["GENERAL"] == {"available": 3, "sold": 2,
                                    "sold_out": False}

    r = await app_client.post("/api/tickets/verify",
                              json={"ticketId": ticket_id})
    assert r.status_code == 401

    assert (await _login(app_client, "door", "scanme")).status_code == 200
    r = await app_client.post("/api/tickets/verify",
                              json={"ticketId": ticket_id})
    assert r.json()["status"] == "SUCCESS"
    r = await app_client.post("/api/tickets/verify",
                              json={"ticketId": ticket_id})
    assert r.json()["status"] == "ALREADY_USED"


@pytest.mark.asyncio
async def test_failed_payment(app_client):
    order_id = (await _create(app_client))["orderId"]
    await _emit(app_client, order_id, "failed")

    order = (await app_client.get(f"/api/orders/{order_id}")).json()
    assert order["status"] == "FAILED"
    assert order["tickets_generated"] is False


@pytest.mark.asyncio
async def test_webhook_signature_and_redelivery(app_client):
    order_id = (await _create(app_client, quantity=1))["orderId"]
    mock = MockPay(SECRET)
    payload, headers = mock.signed(
        mock.build_event("captured", order_id, 150000, "INR")
    )

    r = await app_client.post("/payments/webhook", content=payload,
                              headers={"content-type": "application/json"})
    assert r.status_code == 401
    assert r.json()["code"] == "AUTHENTICATION"

    tampered = dict(headers)
    tampered["x-razorpay-signature"] = "0" * 64
    r = await app_client.post("/payments/webhook", content=payload,
                              headers=tampered)
    assert r.status_code == 401

    # raw header bytes outside ASCII
    tampered["x-razorpay-signature"] = "\u00e9".encode("latin-1") * 64
    r = await app_client.post("/payments/webhook", content=payload,
                              headers=tampered)
    assert r.status_code == 401
    assert r.json()["code"] == "AUTHENTICATION"

    r = await app_client.post("/payments/webhook", content=payload,
                              headers=headers)
    assert r.json() == {"ok": True, "status": "PAID"}

    r = await app_client.post("/payments/webhook", content=payload,
                              headers=headers)
    assert r.json() == {"ok": True, "status": "ALREADY_PROCESSED"}

    inventory = (await app_client.get("/api/inventory")).json()
    assert inventory["GENERAL"]["sold"] == 1


@pytest.mark.asyncio
async def test_webhook_for_unknown_order_is_redelivered(app_client):
    mock = MockPay(SECRET)
    payload, headers = mock.signed(
        mock.build_event("captured", "order_missing", 100, "INR")
    )
    r = await app_client.post("/payments/webhook", content=payload,
                              headers=headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_webhook_ignores_other_events(app_client):
    mock = MockPay(SECRET)
    event = mock.build_event("captured", "order_any", 100, "INR")
    event["event"] = "refund.processed"
    payload, headers = mock.signed(event)
    r = await app_client.post("/payments/webhook", content=payload,
                              headers=headers)
    assert r.json() == {"ok": True, "status": "IGNORED"}


@pytest.mark.asyncio
async def test_oversold_order_gets_no_tickets(app_client):
    a = (await _create(app_client, ticketType="VIP", quantity=2))["orderId"]
    b = (await _create(app_client, ticketType="VIP", quantity=2))["orderId"]
    await _emit(app_client, a)
    await _emit(app_client, b)

    order_b = (await app_client.get(f"/api/orders/{b}")).json()
    assert order_b["status"] == "OVERSOLD_ERROR"
    assert order_b["tickets_generated"] is False
    tickets = (await app_client.get(f"/api/orders/{b}/tickets")).json()
    assert tickets["tickets"] == []
    assert (await app_client.get("/api/inventory")).json()["VIP"] == {
        "available": 0, "sold": 2, "sold_out": True,
    }


@pytest.mark.asyncio
async def test_create_order_errors(app_client):
    r = await app_client.post("/api/orders",
                              json=order_payload(phone="123"))
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid phone number format",
                        "code": "VALIDATION"}

    r = await app_client.post("/api/orders",
                              json=order_payload(ticketType="VIP",
                                                 quantity=3))
    assert r.status_code == 409
    assert r.json()["code"] == "STOCK_UNAVAILABLE"

    r = await app_client.get("/api/orders/order_missing")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_staff_login_and_admin(app_client):
    r = await app_client.get("/api/admin/orders")
    assert r.status_code == 401

    r = await _login(app_client, "door", "wrong")
    assert r.status_code == 401
    assert r.json()["error"] == "Invalid credentials."

    # door staff can scan but not administer
    assert (await _login(app_client, "door", "scanme")).json()["admin"] \
        is False
    assert (await app_client.get("/api/admin/orders")).status_code == 401

    await _create(app_client)
    r = await _login(app_client, "admin", "supasecret")
    assert r.json() == {"ok": True, "user": "admin", "admin": True}
    items = (await app_client.get("/api/admin/orders")).json()["items"]
    assert len(items) == 1
    assert items[0]["name"] == "Asha Rao"
    assert (await app_client.get("/api/admin/timings")).status_code == 200

    await app_client.get("/staff/logout")
    assert (await app_client.get("/api/admin/orders")).status_code == 401


@pytest.mark.asyncio
async def test_healthz(app_client):
    assert (await app_client.get("/healthz")).json() == {"ok": True}


class _DownStorage(LocalStorage):
    async def put(self, path, data, content_type):
        raise OSError("bucket unavailable")


@pytest.mark.asyncio
async def test_admin_sweep_issues_stranded_orders(app_client, monkeypatch):
    working = server.storage
    monkeypatch.setattr(server, "storage",
                        _DownStorage(working.root, working.public_url))
    order_id = (await _create(app_client, quantity=2))["orderId"]
    await _emit(app_client, order_id)

    order = (await app_client.get(f"/api/orders/{order_id}")).json()
    assert order["status"] == "ERROR"
    assert order["tickets_generated"] is False

    monkeypatch.setattr(server, "storage", working)
    r = await app_client.post("/api/admin/issuance/sweep")
    assert r.status_code == 401

    await _login(app_client, "admin", "supasecret")
    r = await app_client.post("/api/admin/issuance/sweep")
    assert r.json() == {"items": [
        {"order_id": order_id, "outcome": "ISSUED", "tickets": 2},
    ]}
    order = (await app_client.get(f"/api/orders/{order_id}")).json()
    assert order["status"] == "PAID"
    assert order["tickets_generated"] is True

    r = await app_client.post("/api/admin/issuance/sweep")
    assert r.json() == {"items": []}
