from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


# ---- keys
def k_token(name: str) -> str: return f"token:{name}"


class AccessTokenCache:
    """Bearer token shared by all workers; redis owns the expiry."""

    def __init__(self, r: redis.Redis, name: str = "mpesa") -> None:
        self.r = r
        self.key = k_token(name)

    async def get(self) -> Optional[str]:
        return await self.r.get(self.key)

    async def put(self, token: str, ttl_seconds: float) -> None:
        ttl = int(ttl_seconds)
        if ttl <= 0:
            return
        await self.r.set(self.key, token, ex=ttl)

    async def clear(self) -> None:
        await self.r.delete(self.key)
