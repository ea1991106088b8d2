"""Tests for RunnerSessionManager."""

from __future__ import annotations

import asyncio
import random
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from cabinet.runner.manager import RunnerSessionManager
from cabinet.runner.resolver import HostResourceResolver
from cabinet.shared.enums import DisplayServer, SessionEventType, SessionStatus
from cabinet.shared.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidStateError,
    LaunchError,
    UnknownEntityError,
)
from cabinet.shared.models import (
    ContainerConfiguration,
    DisplayConfiguration,
    LaunchConfiguration,
    ResourceUsage,
    RunnerSession,
)
from cabinet.shared.storage import JsonDocumentStore
from cabinet.stats.sink import EventSink


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def launcher() -> AsyncMock:
    mock = AsyncMock()
    mock.start = AsyncMock(return_value="container-abc123456789")
    mock.stop = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(
    headless_resolver: HostResourceResolver, launcher: AsyncMock, sink: EventSink, clock: FakeClock
) -> RunnerSessionManager:
    return RunnerSessionManager(
        resolver=headless_resolver,
        launcher=launcher,
        sink=sink,
        launch_timeout=5,
        stop_timeout=5,
        teardown_attempts=3,
        teardown_backoff=(0.01,),
        heartbeat_timeout=60,
        retention=3600,
        clock=clock,
    )


def _event_types(sink: EventSink, session_id: str) -> list[SessionEventType]:
    return [e.type for e in sink.session_events(session_id=session_id)]


class TestLaunchAndStop:
    async def test_full_lifecycle(
        self,
        manager: RunnerSessionManager,
        launcher: AsyncMock,
        sink: EventSink,
        clock: FakeClock,
        launch_config: LaunchConfiguration,
    ) -> None:
        session_id = await manager.launch("g1", launch_config)

        session = manager.get_session(session_id)
        assert session.status == SessionStatus.STARTING
        assert session.container_id is None

        await manager.wait_idle()
        session = manager.get_session(session_id)
        assert session.status == SessionStatus.RUNNING
        assert session.container_id == "container-abc123456789"
        assert session.start_time is not None

        config = launcher.start.call_args.args[0]
        assert config.image == "runner:base"
        assert config.resources.cpu == 2
        assert config.resources.memory_gb == 4

        clock.advance(120)
        await manager.stop(session_id)
        assert manager.get_session(session_id).status == SessionStatus.STOPPING

        await manager.wait_idle()
        session = manager.get_session(session_id)
        assert session.status == SessionStatus.STOPPED
        assert session.container_id is None
        assert session.end_time is not None
        assert session.end_time >= session.start_time
        launcher.stop.assert_awaited_once_with("container-abc123456789", timeout=5)

        assert _event_types(sink, session_id) == [
            SessionEventType.SESSION_CREATED,
            SessionEventType.GAME_STARTED,
            SessionEventType.SESSION_STOPPING,
            SessionEventType.SESSION_ENDED,
        ]
        ended = sink.session_events(session_id=session_id)[-1]
        assert ended.data["duration_seconds"] == 120

    async def test_metadata_recorded(self, manager: RunnerSessionManager) -> None:
        session_id = await manager.launch(
            "g1", LaunchConfiguration(), client_ip="10.0.0.5", user_agent="cabinet-client/1.0"
        )
        metadata = manager.get_session(session_id).metadata
        assert metadata.client_ip == "10.0.0.5"
        assert metadata.user_agent == "cabinet-client/1.0"
        assert metadata.display_server == DisplayServer.HEADLESS
        await manager.wait_idle()

    async def test_conflict_while_active(self, manager: RunnerSessionManager) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())

        with pytest.raises(ConflictError):
            await manager.launch("g1", LaunchConfiguration())

        await manager.wait_idle()
        await manager.stop(session_id)
        await manager.wait_idle()

        second = await manager.launch("g1", LaunchConfiguration())
        assert second != session_id

    async def test_game_lock_released_with_session(self, manager: RunnerSessionManager) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()
        await manager.stop(session_id)
        await manager.wait_idle()

        assert "g1" not in manager._game_locks

    async def test_configuration_error_is_synchronous(self, manager: RunnerSessionManager) -> None:
        config = LaunchConfiguration(display=DisplayConfiguration(method=DisplayServer.X11))
        with pytest.raises(ConfigurationError):
            await manager.launch("g1", config)
        assert manager.get_sessions("g1") == []

    async def test_launch_failure_becomes_error(
        self, manager: RunnerSessionManager, launcher: AsyncMock, sink: EventSink
    ) -> None:
        launcher.start.side_effect = LaunchError("image runner:base not found")

        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        session = manager.get_session(session_id)
        assert session.status == SessionStatus.ERROR
        assert session.error == "image runner:base not found"
        assert _event_types(sink, session_id)[-1] == SessionEventType.ERROR_OCCURRED
        # The game is free again
        await manager.launch("g1", LaunchConfiguration())

    async def test_unexpected_launch_error_becomes_error(
        self, manager: RunnerSessionManager, launcher: AsyncMock, sink: EventSink
    ) -> None:
        launcher.start.side_effect = ConnectionError("daemon connection reset")

        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        session = manager.get_session(session_id)
        assert session.status == SessionStatus.ERROR
        assert "daemon connection reset" in (session.error or "")
        assert _event_types(sink, session_id)[-1] == SessionEventType.ERROR_OCCURRED

        launcher.start.side_effect = None
        second = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()
        assert manager.get_session(second).status == SessionStatus.RUNNING

    async def test_launch_timeout_becomes_error(
        self, headless_resolver: HostResourceResolver, launcher: AsyncMock, sink: EventSink
    ) -> None:
        async def slow_start(*_args: Any, **_kwargs: Any) -> str:
            await asyncio.sleep(5)
            return "late"

        launcher.start.side_effect = slow_start
        manager = RunnerSessionManager(
            resolver=headless_resolver, launcher=launcher, sink=sink, launch_timeout=0.05, stop_timeout=1
        )

        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        session = manager.get_session(session_id)
        assert session.status == SessionStatus.ERROR
        assert "timed out" in (session.error or "")
        # Stray container is cleaned up by name
        launcher.stop.assert_awaited_once_with(f"cabinet-session-{session_id}", timeout=1)

    async def test_stop_is_idempotent(
        self, manager: RunnerSessionManager, launcher: AsyncMock, sink: EventSink
    ) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        await manager.stop(session_id)
        await manager.stop(session_id)
        await manager.wait_idle()
        await manager.stop(session_id)
        await manager.wait_idle()

        assert manager.get_session(session_id).status == SessionStatus.STOPPED
        assert launcher.stop.await_count == 1
        assert _event_types(sink, session_id).count(SessionEventType.SESSION_ENDED) == 1

    async def test_stop_while_starting_is_deferred(
        self, manager: RunnerSessionManager, launcher: AsyncMock
    ) -> None:
        release = asyncio.Event()

        async def gated_start(*_args: Any, **_kwargs: Any) -> str:
            await release.wait()
            return "container-deferred"

        launcher.start.side_effect = gated_start
        session_id = await manager.launch("g1", LaunchConfiguration())
        await asyncio.sleep(0)

        await manager.stop(session_id)
        assert manager.get_session(session_id).status == SessionStatus.STARTING

        release.set()
        await manager.wait_idle()

        assert manager.get_session(session_id).status == SessionStatus.STOPPED
        launcher.stop.assert_awaited_once_with("container-deferred", timeout=5)

    async def test_stop_unknown_session(self, manager: RunnerSessionManager) -> None:
        with pytest.raises(UnknownEntityError):
            await manager.stop("does-not-exist")


class TestTeardown:
    async def test_transient_stop_failures_are_retried(
        self, manager: RunnerSessionManager, launcher: AsyncMock
    ) -> None:
        launcher.stop.side_effect = [LaunchError("daemon busy"), LaunchError("daemon busy"), None]
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        await manager.stop(session_id)
        await manager.wait_idle()

        assert manager.get_session(session_id).status == SessionStatus.STOPPED
        assert launcher.stop.await_count == 3

    async def test_exhausted_retries_become_error(
        self, manager: RunnerSessionManager, launcher: AsyncMock
    ) -> None:
        launcher.stop.side_effect = LaunchError("daemon unreachable")
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        await manager.stop(session_id)
        await manager.wait_idle()

        session = manager.get_session(session_id)
        assert session.status == SessionStatus.ERROR
        assert "daemon unreachable" in (session.error or "")
        assert launcher.stop.await_count == 3

    async def test_unexpected_stop_error_becomes_error(
        self, manager: RunnerSessionManager, launcher: AsyncMock
    ) -> None:
        launcher.stop.side_effect = ConnectionError("daemon connection reset")
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        await manager.stop(session_id)
        await manager.wait_idle()

        session = manager.get_session(session_id)
        assert session.is_terminal
        assert session.status == SessionStatus.ERROR
        assert "daemon connection reset" in (session.error or "")
        assert session.container_id is None
        assert launcher.stop.await_count == 3

    async def test_unexpected_stop_error_is_retried(
        self, manager: RunnerSessionManager, launcher: AsyncMock
    ) -> None:
        launcher.stop.side_effect = [OSError("socket closed"), None]
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        await manager.stop(session_id)
        await manager.wait_idle()

        assert manager.get_session(session_id).status == SessionStatus.STOPPED
        assert launcher.stop.await_count == 2

    async def test_stop_timeout_counts_as_stopped(
        self,
        headless_resolver: HostResourceResolver,
        launcher: AsyncMock,
        sink: EventSink,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def hanging_stop(*_args: Any, **_kwargs: Any) -> None:
            await asyncio.sleep(30)

        monkeypatch.setattr("cabinet.runner.manager._STOP_SLACK_SECONDS", 0.05)
        launcher.stop.side_effect = hanging_stop
        manager = RunnerSessionManager(resolver=headless_resolver, launcher=launcher, sink=sink, stop_timeout=0)
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        await manager.stop(session_id)
        await manager.wait_idle()

        assert manager.get_session(session_id).status == SessionStatus.STOPPED


class TestPauseResume:
    async def test_pause_and_resume(self, manager: RunnerSessionManager, sink: EventSink) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        paused = await manager.pause(session_id)
        assert paused.status == SessionStatus.PAUSED
        resumed = await manager.resume(session_id)
        assert resumed.status == SessionStatus.RUNNING

        types = _event_types(sink, session_id)
        assert types[-2:] == [SessionEventType.GAME_PAUSED, SessionEventType.GAME_RESUMED]

    async def test_invalid_transitions(self, manager: RunnerSessionManager) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        with pytest.raises(InvalidStateError):
            await manager.pause(session_id)

        await manager.wait_idle()
        with pytest.raises(InvalidStateError):
            await manager.resume(session_id)

        await manager.pause(session_id)
        with pytest.raises(InvalidStateError):
            await manager.pause(session_id)

    async def test_unknown_session_leaves_no_lock(self, manager: RunnerSessionManager) -> None:
        with pytest.raises(UnknownEntityError):
            await manager.pause("does-not-exist")
        with pytest.raises(UnknownEntityError):
            await manager.resume("does-not-exist")

        assert "does-not-exist" not in manager._session_locks

    async def test_paused_session_can_stop(self, manager: RunnerSessionManager) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()
        await manager.pause(session_id)

        await manager.stop(session_id)
        await manager.wait_idle()

        assert manager.get_session(session_id).status == SessionStatus.STOPPED


class TestHeartbeat:
    async def test_heartbeat_updates_resources(self, manager: RunnerSessionManager, clock: FakeClock) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        clock.advance(10)
        await manager.heartbeat(session_id, ResourceUsage(cpu_percent=12.5, memory_bytes=100))
        clock.advance(10)
        updated = await manager.heartbeat(session_id, ResourceUsage(cpu_percent=40.0, memory_bytes=200))

        assert updated.resources.cpu_percent == 40.0
        assert updated.resources.memory_bytes == 200
        assert updated.last_activity == clock.now
        assert manager.get_session(session_id).resources == updated.resources

    async def test_heartbeat_on_terminal_session(self, manager: RunnerSessionManager) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()
        await manager.stop(session_id)
        await manager.wait_idle()

        with pytest.raises(InvalidStateError):
            await manager.heartbeat(session_id)

    async def test_heartbeat_unknown_session(self, manager: RunnerSessionManager) -> None:
        with pytest.raises(UnknownEntityError):
            await manager.heartbeat("nope")

    async def test_silent_session_times_out(
        self, manager: RunnerSessionManager, sink: EventSink, clock: FakeClock
    ) -> None:
        stale = await manager.launch("g1", LaunchConfiguration())
        fresh = await manager.launch("g2", LaunchConfiguration())
        await manager.wait_idle()

        clock.advance(61)
        await manager.heartbeat(fresh)
        stats = await manager.sweep()
        await manager.wait_idle()

        assert stats["timed_out"] == 1
        assert manager.get_session(stale).status == SessionStatus.STOPPED
        assert manager.get_session(fresh).status == SessionStatus.RUNNING
        assert SessionEventType.SESSION_TIMEOUT in _event_types(sink, stale)
        assert SessionEventType.SESSION_STOPPING not in _event_types(sink, stale)

    async def test_sweep_archives_expired_sessions(self, manager: RunnerSessionManager, clock: FakeClock) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()
        await manager.stop(session_id)
        await manager.wait_idle()

        clock.advance(3601)
        stats = await manager.sweep()

        assert stats["archived"] == 1
        with pytest.raises(UnknownEntityError):
            manager.get_session(session_id)


class TestConcurrency:
    @pytest.mark.parametrize("seed", [1, 7, 42])
    async def test_one_active_session_per_game(
        self, manager: RunnerSessionManager, launcher: AsyncMock, seed: int
    ) -> None:
        rng = random.Random(seed)

        async def jittery_start(*_args: Any, **_kwargs: Any) -> str:
            await asyncio.sleep(rng.random() / 100)
            return f"container-{rng.randrange(1_000_000)}"

        launcher.start.side_effect = jittery_start
        games = [rng.choice(["a", "b", "c", "d"]) for _ in range(40)]

        async def attempt(game_id: str) -> str:
            await asyncio.sleep(rng.random() / 100)
            return await manager.launch(game_id, LaunchConfiguration())

        results = await asyncio.gather(*(attempt(g) for g in games), return_exceptions=True)
        await manager.wait_idle()

        winners = Counter(manager.get_session(r).game_id for r in results if isinstance(r, str))
        assert winners == Counter(set(games))
        assert all(isinstance(r, (str, ConflictError)) for r in results)
        for game_id in set(games):
            active = [s for s in manager.get_sessions(game_id) if not s.is_terminal]
            assert len(active) == 1

    async def test_parallel_stops_of_same_session(self, manager: RunnerSessionManager, launcher: AsyncMock) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        await asyncio.gather(*(manager.stop(session_id) for _ in range(10)))
        await manager.wait_idle()

        assert launcher.stop.await_count == 1


class TestStatsAndQueries:
    async def test_get_sessions_newest_first(self, manager: RunnerSessionManager, clock: FakeClock) -> None:
        first = await manager.launch("g1", LaunchConfiguration())
        clock.advance(1)
        second = await manager.launch("g2", LaunchConfiguration())
        await manager.wait_idle()

        assert [s.id for s in manager.get_sessions()] == [second, first]
        assert [s.id for s in manager.get_sessions("g1")] == [first]

    async def test_stats_fold_completed_and_failed(
        self, manager: RunnerSessionManager, launcher: AsyncMock, clock: FakeClock
    ) -> None:
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()
        clock.advance(300)
        await manager.stop(session_id)
        await manager.wait_idle()

        launcher.start.side_effect = LaunchError("no gpu")
        clock.advance(10)
        await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        stats = manager.get_stats("g1")
        assert stats.total_launches == 2
        assert stats.completed_sessions == 1
        assert stats.failed_sessions == 1
        assert stats.total_play_seconds == 300
        assert stats.most_recent_status == SessionStatus.ERROR

    async def test_stats_for_unplayed_game(self, manager: RunnerSessionManager) -> None:
        stats = manager.get_stats("never")
        assert stats.total_launches == 0
        assert stats.most_recent_status is None


class TestPersistence:
    async def test_transitions_written_through(
        self,
        headless_resolver: HostResourceResolver,
        launcher: AsyncMock,
        sink: EventSink,
        tmp_path: Path,
    ) -> None:
        store = JsonDocumentStore(str(tmp_path))
        manager = RunnerSessionManager(resolver=headless_resolver, launcher=launcher, sink=sink, store=store)

        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()
        doc = await store.read_entity("sessions", session_id)
        assert doc is not None
        assert doc["status"] == "running"

        await manager.stop(session_id)
        await manager.wait_idle()
        doc = await store.read_entity("sessions", session_id)
        assert doc is not None
        assert doc["status"] == "stopped"

    async def test_store_failure_does_not_change_state(
        self, headless_resolver: HostResourceResolver, launcher: AsyncMock, sink: EventSink
    ) -> None:
        store = AsyncMock()
        store.write_entity.side_effect = OSError("disk full")
        manager = RunnerSessionManager(resolver=headless_resolver, launcher=launcher, sink=sink, store=store)

        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        assert manager.get_session(session_id).status == SessionStatus.RUNNING

    async def test_start_marks_orphans_as_error(
        self,
        headless_resolver: HostResourceResolver,
        launcher: AsyncMock,
        sink: EventSink,
        tmp_path: Path,
    ) -> None:
        store = JsonDocumentStore(str(tmp_path))
        orphan = RunnerSession(
            game_id="g1",
            status=SessionStatus.RUNNING,
            container_id="container-left-behind",
            configuration=LaunchConfiguration(),
            container_config=ContainerConfiguration(image="runner:base"),
        )
        await store.write_entity("sessions", orphan.id, orphan.model_dump(mode="json"))

        manager = RunnerSessionManager(resolver=headless_resolver, launcher=launcher, sink=sink, store=store)
        await manager.start()
        await manager.shutdown()

        session = manager.get_session(orphan.id)
        assert session.status == SessionStatus.ERROR
        assert "orphaned" in (session.error or "")
        launcher.stop.assert_awaited_once_with("container-left-behind", timeout=30)
        # The game is not blocked by the orphan
        await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

    async def test_shutdown_stops_live_sessions(
        self, manager: RunnerSessionManager, launcher: AsyncMock
    ) -> None:
        await manager.start()
        session_id = await manager.launch("g1", LaunchConfiguration())
        await manager.wait_idle()

        await manager.shutdown()

        assert manager.get_session(session_id).status == SessionStatus.STOPPED
        launcher.stop.assert_awaited_once()
