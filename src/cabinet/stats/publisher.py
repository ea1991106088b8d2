"""Redis fan-out for session and download events."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol, cast, runtime_checkable

import redis.asyncio as aioredis

from cabinet.shared.models import DownloadEvent, SessionEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class EventPublisher(Protocol):
    """Protocol for forwarding recorded events to external observers."""

    async def publish(self, event: SessionEvent | DownloadEvent) -> None: ...


class RedisEventPublisher:
    """Publish events to a Redis channel and a capped history list.

    Implements the ``EventPublisher`` protocol. Failures are logged and
    swallowed: observers are best-effort, live state never depends on them.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        channel: str = "cabinet:events",
        history_key: str = "cabinet:events:history",
        history_max: int = 1000,
    ) -> None:
        self._redis = redis
        self._channel = channel
        self._history_key = history_key
        self._history_max = history_max

    @property
    def channel(self) -> str:
        return self._channel

    async def publish(self, event: SessionEvent | DownloadEvent) -> None:
        raw = encode_event(event)
        client = cast(Any, self._redis)
        try:
            await client.publish(self._channel, raw)
            await client.rpush(self._history_key, raw)
            await client.ltrim(self._history_key, -self._history_max, -1)
        except Exception as exc:
            logger.warning("failed to publish %s to %s: %s", event.type.value, self._channel, exc)
            return
        logger.debug("published %s to %s", event.type.value, self._channel)


def encode_event(event: SessionEvent | DownloadEvent) -> str:
    kind = "session" if isinstance(event, SessionEvent) else "download"
    return json.dumps({"kind": kind, "event": event.model_dump(mode="json")})
