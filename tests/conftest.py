"""Shared pytest fixtures for the cabinet test suite."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from cabinet.config import Settings
from cabinet.runner.resolver import HostResourceResolver
from cabinet.shared.models import LaunchConfiguration, ResourceLimits
from cabinet.stats.sink import EventSink


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Return a Settings instance with test defaults."""
    return Settings(
        data_root=str(tmp_path / "data"),
        download_dir=str(tmp_path / "downloads"),
        redis_url="",
        health_poll_seconds=0,
    )


@pytest.fixture()
def sink() -> EventSink:
    return EventSink(capacity=100, subscriber_queue_size=8)


@pytest.fixture()
def headless_resolver() -> HostResourceResolver:
    """Resolver on a host with no display, audio or devices."""
    return HostResourceResolver(
        default_image="cabinet/runner:base",
        environ={},
        path_exists=lambda _path: False,
        is_nonempty_file=lambda _path: False,
    )


@pytest.fixture()
def launch_config() -> LaunchConfiguration:
    return LaunchConfiguration(image="runner:base", resources=ResourceLimits(cpu=2, memory_gb=4))


@pytest.fixture()
def mock_redis() -> AsyncMock:
    """Mock async Redis client."""
    mock = AsyncMock()
    mock.publish = AsyncMock(return_value=1)
    mock.rpush = AsyncMock(return_value=1)
    mock.ltrim = AsyncMock(return_value=True)
    mock.ping = AsyncMock(return_value=True)
    return mock
