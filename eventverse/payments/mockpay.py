from __future__ import annotations
import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Dict, List, Optional

from .. import settings
from ..errors import MalformedPayloadError, NotFoundError
from ..model.db import CARD_SESSION
from .base import (
    CardProvider, CheckoutSession, Failed, LineItem, PaymentOutcome,
    Pending, SignatureError, Succeeded,
)

KINDS = ("succeeded", "failed", "canceled")


def sign(payload: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(CardProvider):
    """Local stand-in for a hosted-checkout provider.

    Sessions live in process memory; the /mockpay pages let a developer
    emit signed succeeded/failed/canceled webhooks for a session.
    """
    name = "mockpay"

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret or settings.MOCK_SECRET
        self.sessions: Dict[str, Dict[str, object]] = {}

    async def create_session(
        self, line_items: List[LineItem], *, success_url: str,
        cancel_url: str, metadata: Dict[str, str],
    ) -> CheckoutSession:
        psid = f"mock_{uuid.uuid4().hex}"
        self.sessions[psid] = {
            "amount": sum(i["unit_amount"] * i["quantity"] for i in line_items),
            "currency": settings.CARD_CURRENCY,
            "status": "open",
            "payment_id": None,
            "success_url": success_url.replace("{CHECKOUT_SESSION_ID}", psid),
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
        }
        return {"session_id": psid, "redirect_url": f"/mockpay/{psid}"}

    def session(self, psid: str) -> Dict[str, object]:
        s = self.sessions.get(psid)
        if s is None:
            raise NotFoundError("payment session not found")
        return s

    def build_event(self, psid: str, kind: str) -> bytes:
        """Settle the session and return the signed-over webhook body."""
        if kind not in KINDS:
            raise ValueError(f"invalid kind: {kind}")
        s = self.session(psid)
        if kind == "succeeded":
            s["status"] = "paid"
            s["payment_id"] = s["payment_id"] or f"mockpi_{uuid.uuid4().hex}"
        else:
            s["status"] = kind
        event = {
            "type": f"payment.{kind}",
            "payment_session_id": psid,
            "payment_id": s["payment_id"],
            "amount": s["amount"],
            "currency": s["currency"],
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        return json.dumps(event).encode()

    def parse_webhook(
        self, payload: bytes, headers: Dict[str, str]
    ) -> Optional[PaymentOutcome]:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(sign(payload, self.secret), sig):
            raise SignatureError("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise MalformedPayloadError("Invalid JSON")
        if not isinstance(event, dict):
            raise MalformedPayloadError("Invalid event")
        psid = event.get("payment_session_id")
        kind = str(event.get("type", "")).split(".")[-1]
        if not psid or kind not in KINDS:
            raise MalformedPayloadError("missing payment_session_id or type")
        if kind == "succeeded":
            result = Succeeded(
                receipt=event.get("payment_id"),
                amount=event.get("amount"),
            )
        else:
            result = Failed(reason=kind, code=kind)
        return PaymentOutcome(
            column=CARD_SESSION, correlation_id=psid, result=result,
            extra={"idempotency_key": event.get("idempotency_key")},
        )

    async def retrieve_session(self, session_id: str) -> PaymentOutcome:
        s = self.session(session_id)
        status = s["status"]
        if status == "paid":
            result = Succeeded(receipt=s["payment_id"], amount=s["amount"])
        elif status == "open":
            result = Pending(reason="unpaid")
        else:
            result = Failed(reason=str(status), code=str(status))
        return PaymentOutcome(
            column=CARD_SESSION, correlation_id=session_id, result=result,
        )
