# model/tokencache/__init__.py
from typing import Optional, Protocol
import redis.asyncio as redis

from ... import settings
from ...helpers import Clock, now_ts
from ._memory import AccessTokenCache as MemoryTokenCache
from ._redis import AccessTokenCache as RedisTokenCache


class TokenCache(Protocol):
    async def get(self) -> Optional[str]: ...
    async def put(self, token: str, ttl_seconds: float) -> None: ...
    async def clear(self) -> None: ...


def new_cache(*, backend: Optional[str] = None,
              r: Optional[redis.Redis] = None,
              clock: Clock = now_ts) -> TokenCache:
    backend = (backend or settings.TOKEN_CACHE_BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("TokenCache(redis) requires r=redis.Redis")
        return RedisTokenCache(r)
    return MemoryTokenCache(clock=clock)


__all__ = ["TokenCache", "MemoryTokenCache", "RedisTokenCache", "new_cache"]
