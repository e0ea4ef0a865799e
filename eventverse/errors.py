from typing import Optional


class TicketingError(Exception):
    """Base for errors surfaced to callers with an HTTP status."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(TicketingError):
    def __init__(self, message: str) -> None:
        super().__init__(message, 400)


class NotFoundError(TicketingError):
    def __init__(self, message: str) -> None:
        super().__init__(message, 404)


class ForbiddenError(TicketingError):
    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message, 403)


class ConflictError(TicketingError):
    def __init__(self, message: str) -> None:
        super().__init__(message, 409)


class MalformedPayloadError(TicketingError):
    def __init__(self, message: str) -> None:
        super().__init__(message, 400)


class ProviderError(TicketingError):
    """A payment provider refused or failed a call.

    `code` and `description` are the provider's own, passed through for
    diagnosis. Rate limits are `retryable`; clients back off on them.
    """

    def __init__(self, description: str, *, code: Optional[str] = None,
                 retryable: bool = False, provider: str = "") -> None:
        self.code = code
        self.description = description
        self.retryable = retryable
        self.provider = provider
        super().__init__(description, 429 if retryable else 502)


class PaymentTimeout(TicketingError):
    def __init__(self, message: str = "Payment timeout") -> None:
        super().__init__(message, 408)
