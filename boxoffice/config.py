import os


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def parse_inventory(raw: str) -> dict[str, int]:
    """'GENERAL=500,VIP=50' -> {"GENERAL": 500, "VIP": 50}"""
    out: dict[str, int] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        name, _, qty = part.partition("=")
        out[name.strip()] = int(qty)
    return out


def parse_users(raw: str) -> dict[str, str]:
    """'door:scanme,gate2:pw' -> {"door": "scanme", "gate2": "pw"}"""
    out: dict[str, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part or ":" not in part:
            continue
        user, _, password = part.partition(":")
        out[user.strip()] = password
    return out


# ----------------------------
# Store
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./boxoffice.db")
DB_POOL_SIZE = _int("DB_POOL_SIZE", 10)
DB_MAX_OVERFLOW = _int("DB_MAX_OVERFLOW", 10)
DB_POOL_TIMEOUT = _int("DB_POOL_TIMEOUT", 30)
# 0 = derive from the pool
DB_GATE_LIMIT = _int("DB_GATE_LIMIT", 0)
INVENTORY = parse_inventory(os.environ.get("INVENTORY", "GENERAL=500,VIP=50"))

TX_ATTEMPTS = _int("TX_ATTEMPTS", 5)
TX_BACKOFF_SECONDS = _float("TX_BACKOFF_SECONDS", 0.05)

# ----------------------------
# Orders & issuance
# ----------------------------
CURRENCY = os.environ.get("CURRENCY", "INR")
MAX_ORDER_AMOUNT = _float("MAX_ORDER_AMOUNT", 1_000_000)
MAX_TICKETS_PER_ORDER = _int("MAX_TICKETS_PER_ORDER", 50)
TICKET_BATCH_SIZE = _int("TICKET_BATCH_SIZE", 500)

TRIGGER_ATTEMPTS = _int("TRIGGER_ATTEMPTS", 5)
TRIGGER_BACKOFF_SECONDS = _float("TRIGGER_BACKOFF_SECONDS", 1.0)

# background re-drive of paid orders still without tickets; 0 disables
ISSUANCE_SWEEP_INTERVAL_SECONDS = _float("ISSUANCE_SWEEP_INTERVAL_SECONDS",
                                         300)
ISSUANCE_SWEEP_GRACE_SECONDS = _float("ISSUANCE_SWEEP_GRACE_SECONDS", 120)
ISSUANCE_SWEEP_LIMIT = _int("ISSUANCE_SWEEP_LIMIT", 100)

# execution budgets per unit of work (seconds)
CREATE_ORDER_TIMEOUT = _float("CREATE_ORDER_TIMEOUT", 30)
WEBHOOK_TIMEOUT = _float("WEBHOOK_TIMEOUT", 30)
ISSUANCE_TIMEOUT = _float("ISSUANCE_TIMEOUT", 120)
VERIFY_TIMEOUT = _float("VERIFY_TIMEOUT", 10)

# ----------------------------
# Payment provider
# ----------------------------
PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").lower()
RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET", "")
RAZORPAY_API_URL = os.environ.get(
    "RAZORPAY_API_URL", "https://api.razorpay.com/v1"
)
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "whsec-dev")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

# ----------------------------
# Symbol storage
# ----------------------------
STORAGE_BACKEND = os.environ.get("STORAGE_BACKEND", "local").lower()
STORAGE_DIR = os.environ.get("STORAGE_DIR", "./media")
STORAGE_PUBLIC_URL = os.environ.get("STORAGE_PUBLIC_URL", "/media")
STORAGE_HTTP_URL = os.environ.get("STORAGE_HTTP_URL", "")
STORAGE_HTTP_TOKEN = os.environ.get("STORAGE_HTTP_TOKEN", "")

# ----------------------------
# Staff auth
# ----------------------------
SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
STAFF_USERS = parse_users(os.environ.get("STAFF_USERS", "door:scanme"))

EVENT_TIMEZONE = os.environ.get("EVENT_TIMEZONE", "Asia/Kolkata")

# ----------------------------
# Logging
# ----------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.environ.get("LOG_JSON", "0") in ("1", "true", "yes")
