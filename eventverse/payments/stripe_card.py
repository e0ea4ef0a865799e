from __future__ import annotations
from typing import Dict, List, Optional

import stripe

from .. import settings
from ..errors import MalformedPayloadError, ProviderError
from ..model.db import CARD_SESSION
from .base import (
    CardProvider, CheckoutSession, Failed, LineItem, PaymentOutcome,
    Pending, SignatureError, Succeeded,
)

PAID = ("paid", "no_payment_required")


def _provider_error(e: stripe.StripeError) -> ProviderError:
    return ProviderError(
        e.user_message or str(e) or "Stripe request failed",
        code=getattr(e, "code", None),
        retryable=isinstance(e, stripe.RateLimitError),
        provider="stripe",
    )


def _field(obj, key: str):
    # StripeObject is not a Mapping; missing keys raise AttributeError
    return getattr(obj, key, None)


def _receipt(session) -> Optional[str]:
    intent = _field(session, "payment_intent")
    if intent is None or isinstance(intent, str):
        return intent
    return _field(intent, "id")


def _session_outcome(session) -> PaymentOutcome:
    payment_status = _field(session, "payment_status")
    if payment_status in PAID:
        result = Succeeded(
            receipt=_receipt(session),
            amount=_field(session, "amount_total"),
        )
    elif _field(session, "status") == "expired":
        result = Failed(reason="expired", code="expired")
    else:
        result = Pending(reason=payment_status or "unpaid")
    return PaymentOutcome(
        column=CARD_SESSION, correlation_id=session.id, result=result,
    )


class StripeCard(CardProvider):
    name = "stripe"

    def __init__(self, api_key: Optional[str] = None,
                 webhook_secret: Optional[str] = None) -> None:
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

    def _key(self) -> str:
        if not self.api_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not set")
        return self.api_key

    async def create_session(
        self, line_items: List[LineItem], *, success_url: str,
        cancel_url: str, metadata: Dict[str, str],
    ) -> CheckoutSession:
        try:
            session = await stripe.checkout.Session.create_async(
                api_key=self._key(),
                payment_method_types=["card"],
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": settings.CARD_CURRENCY,
                        "product_data": {"name": item["name"]},
                        "unit_amount": item["unit_amount"],
                    },
                    "quantity": item["quantity"],
                } for item in line_items],
                success_url=success_url,
                cancel_url=cancel_url,
                # metadata values are capped at 500 chars: no ticket ids here
                metadata=metadata,
            )
        except stripe.StripeError as e:
            raise _provider_error(e) from e
        return {"session_id": session.id, "redirect_url": session.url}

    def parse_webhook(
        self, payload: bytes, headers: Dict[str, str]
    ) -> Optional[PaymentOutcome]:
        signature = headers.get("stripe-signature")
        if not signature:
            raise SignatureError("No signature")
        if not self.webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET is not set")
        try:
            event = stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret
            )
        except ValueError as e:
            raise MalformedPayloadError("Invalid JSON") from e
        except stripe.SignatureVerificationError as e:
            raise SignatureError("Invalid signature") from e

        kind = _field(event, "type")
        session = _field(_field(event, "data"), "object")
        if session is None or not _field(session, "id"):
            raise MalformedPayloadError("missing session id")
        if kind in ("checkout.session.completed",
                    "checkout.session.async_payment_succeeded"):
            outcome = _session_outcome(session)
        elif kind == "checkout.session.async_payment_failed":
            outcome = PaymentOutcome(
                column=CARD_SESSION, correlation_id=session.id,
                result=Failed(reason="payment failed", code=kind),
            )
        elif kind == "checkout.session.expired":
            outcome = PaymentOutcome(
                column=CARD_SESSION, correlation_id=session.id,
                result=Failed(reason="expired", code=kind),
            )
        else:
            return None
        return PaymentOutcome(
            column=outcome.column,
            correlation_id=outcome.correlation_id,
            result=outcome.result,
            extra={"event_id": _field(event, "id"), "type": kind},
        )

    async def retrieve_session(self, session_id: str) -> PaymentOutcome:
        try:
            session = await stripe.checkout.Session.retrieve_async(
                session_id, api_key=self._key()
            )
        except stripe.StripeError as e:
            raise _provider_error(e) from e
        return _session_outcome(session)
