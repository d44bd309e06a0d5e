import time
import re
import uuid
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
import hmac
from typing import Optional


_PHONE_RE = re.compile(r"^[6-9]\d{9}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_TICKET_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def to_clock(ts: float | None, tz_name: str) -> str:
    # "21:05" in the event's local time
    if ts is None:
        return "Unknown time"
    return datetime.fromtimestamp(ts, tz=ZoneInfo(tz_name)).strftime("%H:%M")


def normalize_phone(phone: str) -> str:
    return re.sub(r"\s+", "", phone)


def is_valid_phone(phone: Optional[str]) -> bool:
    # Indian mobile number: 10 digits starting with 6-9
    if not phone:
        return False
    return _PHONE_RE.match(normalize_phone(phone)) is not None


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return _EMAIL_RE.match(email) is not None


def is_valid_ticket_id(ticket_id: str) -> bool:
    return _TICKET_ID_RE.match(ticket_id) is not None


def new_ticket_id() -> str:
    return str(uuid.uuid4())


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
