from __future__ import annotations
import json
from typing import List, Optional, Protocol

import redis.asyncio as redis
from loguru import logger

from .helpers import now_ts, to_iso

TICKET_COUNT_UPDATE = "ticket-count-update"


def event_channel(event_id: str) -> str:
    return f"event:{event_id}"


class Notifier(Protocol):
    async def ticket_count_changed(
        self, event_id: str, ticket_count: int
    ) -> None: ...


class NullNotifier:
    async def ticket_count_changed(
        self, event_id: str, ticket_count: int
    ) -> None:
        logger.debug(
            "ticket count for event {} is now {}", event_id, ticket_count
        )


class RedisNotifier:
    """Publishes count updates on the event's pub/sub channel."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def ticket_count_changed(
        self, event_id: str, ticket_count: int
    ) -> None:
        message = json.dumps({
            "type": TICKET_COUNT_UPDATE,
            "eventId": event_id,
            "ticketCount": ticket_count,
            "timestamp": to_iso(now_ts()),
        })
        await self.r.publish(event_channel(event_id), message)


def new_notifier(backend: str, r: Optional[redis.Redis] = None) -> Notifier:
    if backend == "redis":
        if r is None:
            raise RuntimeError("RedisNotifier requires r=redis.Redis")
        return RedisNotifier(r)
    return NullNotifier()


async def fan_out(notifier: Notifier, counts: List[tuple[str, int]]) -> None:
    """Best effort: a failed publish is logged, never raised."""
    for event_id, count in counts:
        try:
            await notifier.ticket_count_changed(event_id, count)
        except Exception:
            logger.opt(exception=True).warning(
                "ticket count update for event {} not delivered", event_id
            )
