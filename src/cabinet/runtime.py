"""Explicitly constructed service container for the orchestration core."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis

from cabinet.catalog.igdb import IgdbScraper
from cabinet.catalog.interfaces import MetadataScraper
from cabinet.catalog.registry import ScraperRegistry
from cabinet.config import Settings, get_settings, parse_backoff_seconds
from cabinet.downloads.manager import DownloadManager
from cabinet.downloads.transfer import HttpxTransfer
from cabinet.runner.interfaces import ContainerLauncher
from cabinet.runner.launcher import DockerLauncher
from cabinet.runner.manager import RunnerSessionManager
from cabinet.runner.monitor import ContainerHealthMonitor
from cabinet.runner.resolver import HostResourceResolver
from cabinet.shared.redis_client import connect_redis
from cabinet.shared.storage import JsonDocumentStore
from cabinet.stats.publisher import RedisEventPublisher
from cabinet.stats.sink import EventSink

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CabinetRuntime:
    settings: Settings
    sink: EventSink
    sessions: RunnerSessionManager
    monitor: ContainerHealthMonitor
    downloads: DownloadManager
    scrapers: ScraperRegistry
    redis: aioredis.Redis | None = None

    async def start(self) -> None:
        await self.sessions.start()
        await self.downloads.start()
        self.monitor.start()
        logger.info("cabinet runtime started")

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.downloads.shutdown()
        await self.sessions.shutdown()
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
        logger.info("cabinet runtime stopped")


async def create_runtime(
    settings: Settings | None = None,
    *,
    launcher: ContainerLauncher | None = None,
    redis: Any | None = None,
) -> CabinetRuntime:
    """Wire every collaborator from settings. Nothing is started yet."""
    settings = settings or get_settings()

    if redis is None:
        redis = await connect_redis(settings)

    publisher = None
    if redis is not None:
        publisher = RedisEventPublisher(
            redis,
            channel=settings.event_channel,
            history_key=settings.event_history_key,
            history_max=settings.event_history_max,
        )

    store = JsonDocumentStore(settings.storage_dir)
    sink = EventSink(
        capacity=settings.event_log_capacity,
        subscriber_queue_size=settings.subscriber_queue_size,
        publisher=publisher,
    )
    launcher = launcher or DockerLauncher()

    sessions = RunnerSessionManager(
        resolver=HostResourceResolver(
            default_image=settings.runner_image,
            x11_socket_dir=settings.x11_socket_dir,
            pulse_sink=settings.pulse_sink,
            container_runtime_dir=settings.container_user_runtime_dir,
            container_home=settings.container_home,
        ),
        launcher=launcher,
        sink=sink,
        store=store,
        name_prefix=settings.container_name_prefix,
        launch_timeout=settings.launch_timeout_seconds,
        stop_timeout=settings.stop_timeout_seconds,
        teardown_attempts=settings.teardown_max_attempts,
        teardown_backoff=parse_backoff_seconds(settings.teardown_backoff_seconds, default=(1, 2, 4)),
        heartbeat_timeout=settings.heartbeat_timeout_seconds,
        watchdog_interval=settings.watchdog_interval_seconds,
        retention=settings.session_retention_seconds,
        stop_on_shutdown=settings.stop_sessions_on_shutdown,
    )

    downloads = DownloadManager(
        transfer=HttpxTransfer(
            chunk_size=settings.download_chunk_size,
            timeout=settings.download_timeout_seconds,
        ),
        sink=sink,
        store=store,
        max_concurrent=settings.download_max_concurrent,
        max_attempts=settings.download_max_attempts,
        backoff=parse_backoff_seconds(settings.download_backoff_seconds, default=(2, 5, 15)),
        cancel_grace=settings.download_cancel_grace_seconds,
        history_size=settings.download_history_size,
    )

    scrapers: list[MetadataScraper] = []
    if settings.igdb_client_id and settings.igdb_client_secret:
        scrapers.append(IgdbScraper(settings.igdb_client_id, settings.igdb_client_secret))
    else:
        logger.info("IGDB credentials not set, scraper disabled")

    return CabinetRuntime(
        settings=settings,
        sink=sink,
        sessions=sessions,
        monitor=ContainerHealthMonitor(sessions, launcher, interval=settings.health_poll_seconds),
        downloads=downloads,
        scrapers=ScraperRegistry(scrapers),
        redis=redis,
    )
