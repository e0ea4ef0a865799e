# payments/__init__.py
from typing import Optional

from .. import settings
from .base import (
    CardProvider, Failed, PaymentOutcome, Pending, SignatureError, Succeeded,
)
from .mockpay import MockPay
from .mpesa import MpesaClient, parse_callback, settlement_amount


def new_card_provider(backend: Optional[str] = None) -> CardProvider:
    backend = (backend or settings.CARD_BACKEND).lower()
    if backend == "stripe":
        from .stripe_card import StripeCard
        return StripeCard()
    return MockPay()


__all__ = [
    "CardProvider", "PaymentOutcome", "Succeeded", "Failed", "Pending",
    "SignatureError", "MockPay", "MpesaClient", "parse_callback",
    "settlement_amount", "new_card_provider",
]
