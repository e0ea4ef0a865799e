from __future__ import annotations
from dataclasses import dataclass

from . import settings


@dataclass
class Backoff:
    """Interval policy for polling a payment's status.

    Starts at ``initial``; each rate-limited poll multiplies the interval
    by ``factor`` up to ``cap``. Gives up after ``max_attempts`` polls.
    """
    initial: float = settings.POLL_INITIAL_INTERVAL
    factor: float = 1.5
    cap: float = settings.POLL_MAX_INTERVAL
    max_attempts: int = settings.POLL_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        self.interval = self.initial
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def attempted(self) -> None:
        self.attempts += 1

    def rate_limited(self) -> float:
        self.interval = min(self.cap, self.interval * self.factor)
        return self.interval
