from __future__ import annotations
from typing import Optional

from ...helpers import Clock, now_ts


class AccessTokenCache:
    """In-process bearer token cache with an explicit expiry.

    The clock is injected so expiry can be tested without waiting.
    """

    def __init__(self, clock: Clock = now_ts) -> None:
        self.clock = clock
        self.token: Optional[str] = None
        self.expires_at: float = 0.0

    async def get(self) -> Optional[str]:
        if self.token and self.clock() < self.expires_at:
            return self.token
        return None

    async def put(self, token: str, ttl_seconds: float) -> None:
        self.token = token
        self.expires_at = self.clock() + ttl_seconds

    async def clear(self) -> None:
        self.token = None
        self.expires_at = 0.0
