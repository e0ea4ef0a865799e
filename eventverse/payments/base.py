from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, TypedDict, Union


# ----------------------------
# Normalized payment outcome
# ----------------------------
@dataclass(frozen=True)
class Succeeded:
    receipt: Optional[str] = None
    amount: Optional[float] = None


@dataclass(frozen=True)
class Failed:
    reason: str = ""
    code: Optional[str] = None


@dataclass(frozen=True)
class Pending:
    reason: str = ""
    code: Optional[str] = None


Result = Union[Succeeded, Failed, Pending]


@dataclass(frozen=True)
class PaymentOutcome:
    """One provider report about one payment attempt.

    ``column`` names the ticket column holding the correlation id
    (``card_session_id`` or ``mm_checkout_id``) and ``correlation_id`` its
    value. ``extra`` carries provider metadata for logs only.
    """
    column: str
    correlation_id: str
    result: Result
    extra: Dict[str, object] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return isinstance(self.result, Succeeded)


# ----------------------------
# Card provider interface
# ----------------------------
class LineItem(TypedDict):
    name: str
    unit_amount: int  # cents
    quantity: int


class CheckoutSession(TypedDict):
    session_id: str
    redirect_url: str


class CardProvider(ABC):
    name: str = "card"

    @abstractmethod
    async def create_session(
        self, line_items: List[LineItem], *, success_url: str,
        cancel_url: str, metadata: Dict[str, str],
    ) -> CheckoutSession: ...

    # raises MalformedPayloadError or SignatureError
    @abstractmethod
    def parse_webhook(
        self, payload: bytes, headers: Dict[str, str]
    ) -> Optional[PaymentOutcome]:
        """None for event types that carry no payment outcome."""

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> PaymentOutcome: ...


class SignatureError(Exception):
    pass
