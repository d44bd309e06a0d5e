from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional
import uuid
import hmac
import hashlib
import json
import time

import httpx
import structlog

from .errors import AuthenticationError, PaymentProviderError, ValidationError
from .helpers import ct_equal

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-razorpay-signature"

CAPTURED = "captured"
FAILED = "failed"
IGNORED = "ignored"


@dataclass(frozen=True)
class Charge:
    order_id: str
    amount: int     # minor units
    currency: str
    key: Optional[str] = None


@dataclass(frozen=True)
class PaymentNotification:
    kind: str  # captured | failed | ignored
    event: str
    order_id: str
    payment_id: Optional[str]
    error_description: Optional[str] = None


# ----------------------------
# Signatures
# ----------------------------
def sign(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str],
                     secret: str) -> None:
    if not signature:
        logger.warning("webhook_signature_missing")
        raise AuthenticationError("Missing signature")
    expected = sign(payload, secret)
    if not ct_equal(expected, signature):
        logger.warning("webhook_signature_invalid")
        raise AuthenticationError("Invalid signature")


def parse_notification(event: Dict[str, Any]) -> PaymentNotification:
    """{event, payload.payment.entity.{id, order_id, error_description?}}"""
    name = event.get("event") or ""
    try:
        entity = event["payload"]["payment"]["entity"]
        order_id = entity["order_id"]
    except (KeyError, TypeError):
        raise ValidationError("Malformed payment notification")
    if not order_id or not isinstance(order_id, str):
        raise ValidationError("Malformed payment notification")

    if name == "payment.captured":
        kind = CAPTURED
    elif name == "payment.failed":
        kind = FAILED
    else:
        kind = IGNORED
    return PaymentNotification(
        kind=kind,
        event=name,
        order_id=order_id,
        payment_id=entity.get("id"),
        error_description=entity.get("error_description"),
    )


# ----------------------------
# Payment Provider Interface
# ----------------------------
class PaymentProvider(ABC):
    def __init__(self, webhook_secret: str) -> None:
        self.webhook_secret = webhook_secret

    @abstractmethod
    async def create_charge(
            self, amount: int, currency: str, metadata: Dict[str, str]
    ) -> Charge: ...

    def verify_webhook(self, payload: bytes, headers: Dict[str, str]) -> dict:
        verify_signature(payload, headers.get(SIGNATURE_HEADER),
                         self.webhook_secret)
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Invalid JSON")
        return event


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentProvider):
    """
    Opens charges locally and signs events the way the real provider
    does, so the webhook path is exercised unchanged.
    """

    async def create_charge(
            self, amount: int, currency: str, metadata: Dict[str, str]
    ) -> Charge:
        return Charge(
            order_id=f"order_{uuid.uuid4().hex[:14]}",
            amount=amount,
            currency=currency,
        )

    def build_event(self, kind: str, order_id: str, amount: int,
                    currency: str) -> Dict[str, Any]:
        entity: Dict[str, Any] = {
            "id": f"pay_{uuid.uuid4().hex[:14]}",
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "status": kind,
        }
        if kind == FAILED:
            entity["error_description"] = "Payment declined by mock bank"
        return {
            "event": f"payment.{kind}",
            "created_at": int(time.time()),
            "payload": {"payment": {"entity": entity}},
        }

    def signed(self, event: Dict[str, Any]) -> tuple[bytes, Dict[str, str]]:
        payload = json.dumps(event).encode()
        return payload, {
            SIGNATURE_HEADER: sign(payload, self.webhook_secret),
            "content-type": "application/json",
        }


# ----------------------------
# Razorpay (REST)
# ----------------------------
class Razorpay(PaymentProvider):
    def __init__(self, webhook_secret: str, key_id: str, key_secret: str,
                 api_url: str, http: Optional[httpx.AsyncClient] = None):
        super().__init__(webhook_secret)
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_url = api_url.rstrip("/")
        self.http = http

    async def create_charge(
            self, amount: int, currency: str, metadata: Dict[str, str]
    ) -> Charge:
        body = {
            "amount": amount,
            "currency": currency,
            "receipt": metadata.get("receipt", f"rcpt_{int(time.time())}"),
            "notes": {k: v for k, v in metadata.items() if k != "receipt"},
        }
        try:
            if self.http is not None:
                r = await self._post(self.http, body)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    r = await self._post(client, body)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as e:
            logger.error("provider_create_charge_failed", error=str(e))
            raise PaymentProviderError() from e
        return Charge(
            order_id=data["id"],
            amount=int(data["amount"]),
            currency=data["currency"],
            key=self.key_id,
        )

    async def _post(self, client: httpx.AsyncClient, body: dict):
        return await client.post(
            f"{self.api_url}/orders",
            json=body,
            auth=(self.key_id, self.key_secret),
        )


def new_provider(name: str, *, webhook_secret: str, key_id: str = "",
                 key_secret: str = "", api_url: str = "",
                 http: Optional[httpx.AsyncClient] = None) -> PaymentProvider:
    if name == "razorpay":
        if not key_id or not key_secret:
            raise RuntimeError("Razorpay provider requires key id and secret")
        return Razorpay(webhook_secret, key_id, key_secret, api_url, http)
    if name == "mock":
        return MockPay(webhook_secret)
    raise RuntimeError(f"unknown payment provider: {name}")
