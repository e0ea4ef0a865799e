import os
import json


def _to_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


# ----------------------------
# Core
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./eventverse.db")
APP_URL = os.environ.get("APP_URL", "http://localhost:8000").rstrip("/")
SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_JSON = _to_bool(os.environ.get("LOG_JSON"))

# ----------------------------
# Booking
# ----------------------------
GUEST_USER_ID = os.environ.get("GUEST_USER_ID", "guest")
MAX_TICKETS_PER_BOOKING = int(os.environ.get("MAX_TICKETS_PER_BOOKING", "10"))

# 0 disables the expiry sweep: failed attempts stay PENDING for retry
PENDING_TTL_SECONDS = int(os.environ.get("PENDING_TTL_SECONDS", "0"))

# ----------------------------
# Webhooks
# ----------------------------
WEBHOOK_ACK_MALFORMED = _to_bool(
    os.environ.get("WEBHOOK_ACK_MALFORMED"), True
)
WEBHOOK_ACK_ON_ERROR = _to_bool(os.environ.get("WEBHOOK_ACK_ON_ERROR"), True)

# ----------------------------
# Card payments
# ----------------------------
CARD_BACKEND = os.environ.get("CARD_BACKEND", "mock").lower()  # stripe|mock
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
CARD_CURRENCY = os.environ.get("CARD_CURRENCY", "usd")
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    f"{APP_URL}/payments/webhook"
)

# ----------------------------
# Mobile money (M-Pesa Daraja)
# ----------------------------
MPESA_ENVIRONMENT = os.environ.get("MPESA_ENVIRONMENT", "sandbox")
MPESA_BASE_URL = (
    "https://api.safaricom.co.ke"
    if MPESA_ENVIRONMENT == "production"
    else "https://sandbox.safaricom.co.ke"
)
MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY")
MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET")
MPESA_SHORTCODE = os.environ.get("MPESA_SHORTCODE")
MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY")
MPESA_CALLBACK_URL = os.environ.get(
    "MPESA_CALLBACK_URL",
    f"{APP_URL}/api/mpesa/callback"
)
MPESA_CURRENCY = "KES"

# rates into KES; USD_TO_KES_RATE kept for older deployments
EXCHANGE_RATES = {
    "KES": 1.0,
    "USD": float(os.environ.get("USD_TO_KES_RATE", "130")),
}
EXCHANGE_RATES.update(json.loads(os.environ.get("EXCHANGE_RATES", "{}")))

TOKEN_CACHE_BACKEND = os.environ.get("TOKEN_CACHE_BACKEND", "memory").lower()

# ----------------------------
# Notifications
# ----------------------------
NOTIFY_BACKEND = os.environ.get("NOTIFY_BACKEND", "none").lower()  # redis|none

# ----------------------------
# Client polling
# ----------------------------
POLL_INITIAL_INTERVAL = float(os.environ.get("POLL_INITIAL_INTERVAL", "3"))
POLL_MAX_INTERVAL = float(os.environ.get("POLL_MAX_INTERVAL", "30"))
POLL_MAX_ATTEMPTS = int(os.environ.get("POLL_MAX_ATTEMPTS", "40"))

# ----------------------------
# Admin (operator sweeps, timings)
# ----------------------------
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
