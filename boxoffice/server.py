from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import BackgroundTasks, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.sessions import SessionMiddleware

from . import config
from .checkin import verify_ticket
from .errors import AuthenticationError, DomainError, ErrorCode
from .helpers import ct_equal, to_iso
from .infra.logs import setup_logging
from .infra.timings import summary, timeit
from .issuance import list_tickets, on_order_updated, sweep_pending
from .model import orders
from .model.inventory import compute_inventory
from .model.store import init_db, open_store
from .ordering import create_order
from .payments import MockPay, Razorpay, new_provider, parse_notification
from .reconciliation import ReconcileOutcome, reconcile
from .storage import new_storage
from .triggers import OrderChange, TriggerRunner

logger = structlog.get_logger(__name__)

# ----------------------------
# Wiring
# ----------------------------
store = open_store(config.DATABASE_URL)

provider = new_provider(
    config.PAYMENT_PROVIDER,
    webhook_secret=config.WEBHOOK_SECRET,
    key_id=config.RAZORPAY_KEY_ID,
    key_secret=config.RAZORPAY_KEY_SECRET,
    api_url=config.RAZORPAY_API_URL,
)

storage = new_storage(
    config.STORAGE_BACKEND,
    root=config.STORAGE_DIR,
    public_url=config.STORAGE_PUBLIC_URL,
    http_url=config.STORAGE_HTTP_URL,
    token=config.STORAGE_HTTP_TOKEN,
)

runner = TriggerRunner()


async def _sweep_forever(interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await sweep_pending(store, storage)
        except Exception:
            # store hiccup; next round retries
            logger.error("issuance_sweep_crashed", exc_info=True)


# ---
# startup / shutdown
# ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_LEVEL, config.LOG_JSON)
    await init_db(store, config.INVENTORY)
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )
    if isinstance(provider, Razorpay):
        provider.http = app.state.http
    logger.info(
        "boxoffice_starting",
        provider=config.PAYMENT_PROVIDER,
        storage=config.STORAGE_BACKEND,
        inventory=config.INVENTORY,
    )
    sweeper = None
    if config.ISSUANCE_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(
            _sweep_forever(config.ISSUANCE_SWEEP_INTERVAL_SECONDS)
        )
    yield
    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
    await app.state.http.aclose()
    logger.info("boxoffice_timings", timings=summary())
    await store.dispose()


app = FastAPI(
    title="boxoffice",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)
if (config.STORAGE_BACKEND == "local"
        and config.STORAGE_PUBLIC_URL.startswith("/")):
    app.mount(
        config.STORAGE_PUBLIC_URL,
        StaticFiles(directory=config.STORAGE_DIR, check_dir=False),
        name="media",
    )


_HTTP_STATUS = {
    ErrorCode.VALIDATION: 400,
    ErrorCode.AUTHENTICATION: 401,
    ErrorCode.STOCK_UNAVAILABLE: 409,
    ErrorCode.PAYMENT_PROVIDER: 502,
    ErrorCode.TRANSIENT_STORE_FAILURE: 503,
}


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    status = _HTTP_STATUS.get(exc.code, 500)
    if status >= 500:
        logger.error("request_failed", path=request.url.path,
                     code=exc.code.value, error=exc.message)
    return ORJSONResponse(
        {"error": exc.message, "code": exc.code.value}, status_code=status
    )


@app.exception_handler(asyncio.TimeoutError)
async def _timeout(request: Request, exc: asyncio.TimeoutError):
    logger.error("request_timeout", path=request.url.path)
    return ORJSONResponse({"error": "Timed out"}, status_code=504)


# ----------------------------
# Helpers
# ----------------------------
def scanner_of(request: Request) -> str | None:
    return request.session.get("scanner_id")


def require_admin(request: Request) -> None:
    if not request.session.get("admin_user"):
        raise AuthenticationError("Admin login required")


def _staff_ok(username: str, password: str) -> bool:
    expected = config.STAFF_USERS.get(username)
    if expected is None:
        # compare anyway so unknown users cost the same
        ct_equal(password, password)
        return False
    return ct_equal(password, expected)


async def _generate_tickets(change: OrderChange):
    return await on_order_updated(store, storage, change)


# ----------------------------
# API: Orders
# ----------------------------
@app.post("/api/orders")
async def api_create_order(payload: dict):
    created = await asyncio.wait_for(
        create_order(store, provider, payload),
        timeout=config.CREATE_ORDER_TIMEOUT,
    )
    out = {
        "orderId": created.order_id,
        "amount": created.amount,
        "currency": created.currency,
    }
    if created.key:
        out["key"] = created.key
    return out


@app.get("/api/orders/{order_id}")
async def api_get_order(order_id: str):
    async with timeit("store.get_order"):
        async with store.transaction() as db:
            order = await orders.get_order(db, order_id)
    if order is None:
        # webhook may still be on its way -> let client keep polling
        raise HTTPException(404, detail="order not found")
    out = orders.as_dict(order)
    out["created_at"] = to_iso(order.created_at)
    out["paid_at"] = to_iso(order.paid_at)
    return out


@app.get("/api/orders/{order_id}/tickets")
async def api_order_tickets(order_id: str):
    items = await list_tickets(store, order_id)
    return {
        "order_id": order_id,
        "tickets": [
            {
                "ticketId": t.id,
                "ticketNumber": t.ticket_number,
                "ticketType": t.ticket_type,
                "qrUrl": t.qr_url,
                "used": t.used,
            }
            for t in items
        ],
    }


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(request: Request, background: BackgroundTasks):
    payload = await request.body()
    headers = dict(request.headers)

    event = provider.verify_webhook(payload, headers)
    note = parse_notification(event)

    result = await asyncio.wait_for(
        reconcile(store, note), timeout=config.WEBHOOK_TIMEOUT
    )
    if result.outcome == ReconcileOutcome.NOT_FOUND:
        raise HTTPException(404, detail="order not found")

    if result.change is not None:
        background.add_task(
            runner.fire, "generate_tickets", _generate_tickets, result.change
        )
    return {"ok": True, "status": result.outcome.value}


# ----------------------------
# Check-in
# ----------------------------
@app.post("/api/tickets/verify")
async def api_verify_ticket(request: Request, payload: dict):
    result = await asyncio.wait_for(
        verify_ticket(store, payload.get("ticketId"), scanner_of(request)),
        timeout=config.VERIFY_TIMEOUT,
    )
    return result.as_dict()


@app.post("/staff/login")
async def staff_login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    user = username.strip()
    is_admin = (ct_equal(user, config.ADMIN_USERNAME)
                and ct_equal(password, config.ADMIN_PASSWORD))
    if not is_admin and not _staff_ok(user, password):
        logger.warning("staff_login_failed", user=user)
        raise AuthenticationError("Invalid credentials.")
    request.session["scanner_id"] = user
    if is_admin:
        request.session["admin_user"] = user
    return {"ok": True, "user": user, "admin": is_admin}


@app.get("/staff/logout")
async def staff_logout(request: Request):
    request.session.clear()
    return {"ok": True}


# ----------------------------
# Inventory & admin
# ----------------------------
@app.get("/api/inventory")
async def api_inventory():
    async with store.transaction() as db:
        return await compute_inventory(db)


@app.get("/api/admin/orders")
async def api_admin_orders(request: Request, limit: int = 200):
    require_admin(request)
    async with store.transaction() as db:
        rows = await orders.list_orders(db, max(1, min(limit, 500)))
    items = []
    for o in rows:
        item = orders.as_dict(o)
        item.update({
            "name": o.name,
            "phone": o.phone,
            "email": o.email,
            "payment_id": o.payment_id or "",
            "failure_reason": o.failure_reason or "",
            "error_message": o.error_message or "",
            "created_at": to_iso(o.created_at),
            "paid_at": to_iso(o.paid_at),
        })
        items.append(item)
    return {"items": items, "limit": limit}


@app.get("/api/admin/timings")
async def api_admin_timings(request: Request):
    require_admin(request)
    return summary()


@app.post("/api/admin/issuance/sweep")
async def api_admin_issuance_sweep(request: Request, grace: float = 0):
    require_admin(request)
    results = await asyncio.wait_for(
        sweep_pending(store, storage, grace=max(0.0, grace)),
        timeout=config.ISSUANCE_TIMEOUT,
    )
    return {
        "items": [
            {"order_id": r.order_id, "outcome": r.outcome.value,
             "tickets": len(r.ticket_ids)}
            for r in results
        ],
    }


# ----------------------------
# MockPay: emit a signed provider event for an order
# ----------------------------
@app.post("/mockpay/{order_id}/emit")
async def mockpay_emit(order_id: str, request: Request):
    if not isinstance(provider, MockPay):
        raise HTTPException(404, detail="mock provider disabled")
    form = await request.form()
    kind = form.get("t")  # captured|failed
    if kind not in {"captured", "failed"}:
        raise HTTPException(400, detail="invalid kind")

    async with store.transaction() as db:
        order = await orders.get_order(db, order_id)
    if order is None:
        raise HTTPException(404, detail="order not found")

    event = provider.build_event(
        kind, order.id, int(round(order.amount * 100)), order.currency
    )
    payload, headers = provider.signed(event)

    client_http: httpx.AsyncClient = request.app.state.http
    try:
        await client_http.post(
            config.MOCK_WEBHOOK_URL, content=payload, headers=headers
        )
    except httpx.HTTPError as e:
        # the buyer can emit again; delivery is at-least-once anyway
        logger.warning("mock_webhook_delivery_failed", order_id=order_id,
                       error=str(e))
        return {"ok": False, "event": event["event"], "order_id": order_id}
    return {"ok": True, "event": event["event"], "order_id": order_id}


@app.get("/healthz")
async def healthz():
    return {"ok": True}
