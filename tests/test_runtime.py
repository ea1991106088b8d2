"""Tests for runtime wiring."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import redis.exceptions

from cabinet.config import Settings
from cabinet.runtime import create_runtime
from cabinet.shared.enums import ScraperType, SessionEventType
from cabinet.shared.models import SessionEvent


class TestCreateRuntime:
    async def test_defaults_without_redis_or_scrapers(self, settings: Settings) -> None:
        runtime = await create_runtime(settings, launcher=AsyncMock())

        assert runtime.redis is None
        assert len(runtime.scrapers) == 0
        assert runtime.downloads.max_concurrent == settings.download_max_concurrent

        await runtime.start()
        await runtime.shutdown()

    async def test_igdb_enabled_with_credentials(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"igdb_client_id": "id", "igdb_client_secret": "secret"})
        runtime = await create_runtime(settings, launcher=AsyncMock())
        assert runtime.scrapers.available() == [ScraperType.IGDB]

    async def test_events_published_to_redis(self, settings: Settings, mock_redis: AsyncMock) -> None:
        runtime = await create_runtime(settings, launcher=AsyncMock(), redis=mock_redis)

        await runtime.sink.record(SessionEvent(type=SessionEventType.SESSION_CREATED, session_id="s", game_id="g"))
        mock_redis.publish.assert_awaited_once()

        await runtime.shutdown()
        mock_redis.aclose.assert_awaited_once()
        assert runtime.redis is None

    async def test_unreachable_redis_is_tolerated(
        self, settings: Settings, mock_redis: AsyncMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        mock_redis.ping.side_effect = redis.exceptions.ConnectionError("refused")
        monkeypatch.setattr("cabinet.shared.redis_client.aioredis.from_url", lambda *_a, **_kw: mock_redis)
        settings = settings.model_copy(update={"redis_url": "redis://127.0.0.1:1/0"})

        runtime = await create_runtime(settings, launcher=AsyncMock())

        assert runtime.redis is None
        mock_redis.aclose.assert_awaited_once()

    async def test_reachable_redis_is_used(
        self, settings: Settings, mock_redis: AsyncMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("cabinet.shared.redis_client.aioredis.from_url", lambda *_a, **_kw: mock_redis)
        settings = settings.model_copy(update={"redis_url": "redis://cache:6379/0"})

        runtime = await create_runtime(settings, launcher=AsyncMock())

        assert runtime.redis is mock_redis
        await runtime.shutdown()
