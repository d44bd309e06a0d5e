"""
Pytest configuration and fixtures.
"""
import os
import tempfile

# config is read once at import; pin it before anything imports boxoffice
_TMP = tempfile.mkdtemp(prefix="boxoffice-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/import.db"
os.environ["STORAGE_DIR"] = f"{_TMP}/media"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["WEBHOOK_SECRET"] = "test-secret"
os.environ["STAFF_USERS"] = "door:scanme"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "supasecret"
os.environ["TX_BACKOFF_SECONDS"] = "0.001"

from typing import Any, AsyncGenerator, Dict, List  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from boxoffice.model.store import Store, init_db, open_store  # noqa: E402
from boxoffice.ordering import create_order  # noqa: E402
from boxoffice.payments import MockPay, PaymentNotification  # noqa: E402
from boxoffice.reconciliation import Reconciliation, reconcile  # noqa: E402
from boxoffice.storage import LocalStorage, ObjectStorage  # noqa: E402
from boxoffice.triggers import TriggerRunner  # noqa: E402

STOCK = {"GENERAL": 5, "VIP": 2}
SECRET = "test-secret"


class RecordingStorage(ObjectStorage):
    """LocalStorage wrapper that counts calls and can fail on demand."""

    def __init__(self, inner: LocalStorage, fail_on_put: int = 0) -> None:
        self.inner = inner
        self.puts: List[str] = []
        self.deletes: List[str] = []
        self.fail_on_put = fail_on_put

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        self.puts.append(path)
        if self.fail_on_put and len(self.puts) == self.fail_on_put:
            raise OSError("bucket unavailable")
        return await self.inner.put(path, data, content_type)

    async def delete(self, path: str) -> None:
        self.deletes.append(path)
        await self.inner.delete(path)


@pytest_asyncio.fixture
async def store(tmp_path) -> AsyncGenerator[Store, Any]:
    s = open_store(f"sqlite:///{tmp_path}/test.db")
    await init_db(s, STOCK)
    yield s
    await s.dispose()


@pytest.fixture
def local_storage(tmp_path) -> LocalStorage:
    return LocalStorage(str(tmp_path / "media"), "/media")


@pytest.fixture
def storage(local_storage) -> RecordingStorage:
    return RecordingStorage(local_storage)


@pytest.fixture
def provider() -> MockPay:
    return MockPay(SECRET)


def order_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "name": "  Asha Rao ",
        "phone": "98765 43210",
        "email": "asha@example.com",
        "ticketType": "GENERAL",
        "amount": 1500,
        "quantity": 3,
    }
    payload.update(overrides)
    return payload


def captured(order_id: str, payment_id: str = "pay_1") -> PaymentNotification:
    return PaymentNotification(kind="captured", event="payment.captured",
                               order_id=order_id, payment_id=payment_id)


def failed(order_id: str, reason: str | None = None) -> PaymentNotification:
    return PaymentNotification(kind="failed", event="payment.failed",
                               order_id=order_id, payment_id="pay_f",
                               error_description=reason)


@pytest.fixture
def new_order(store, provider):
    async def _make(**overrides) -> str:
        created = await create_order(store, provider, order_payload(**overrides))
        return created.order_id
    return _make


@pytest.fixture
def paid_order(store, new_order):
    async def _make(**overrides) -> Reconciliation:
        order_id = await new_order(**overrides)
        result = await reconcile(store, captured(order_id))
        assert result.change is not None
        return result
    return _make


@pytest_asyncio.fixture
async def app_client(tmp_path, monkeypatch) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client bound to the app, with a fresh store per test."""
    from boxoffice import config, server

    s = open_store(f"sqlite:///{tmp_path}/app.db")
    await init_db(s, STOCK)
    monkeypatch.setattr(server, "store", s)
    monkeypatch.setattr(
        server, "storage", LocalStorage(config.STORAGE_DIR, "/media")
    )
    monkeypatch.setattr(
        server, "runner", TriggerRunner(attempts=2, backoff=0, budget=30)
    )

    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as client:
        # mock provider deliveries loop straight back into the app
        server.app.state.http = client
        yield client
    await s.dispose()
