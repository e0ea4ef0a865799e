import time
import re
import secrets
from datetime import datetime, timezone
import hmac
from typing import Callable, Optional


Clock = Callable[[], float]

PHONE_RE = re.compile(r"^254\d{9}$")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_ticket_id() -> str:
    return secrets.token_hex(16)


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Strip everything but digits; None unless it is a 2547XXXXXXXX msisdn."""
    if not phone:
        return None
    msisdn = re.sub(r"\D", "", phone)
    return msisdn if PHONE_RE.match(msisdn) else None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
