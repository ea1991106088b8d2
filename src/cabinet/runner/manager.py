"""Runner session lifecycle: launch, pause/resume, heartbeat and teardown."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable, Coroutine
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from cabinet.runner.interfaces import ContainerLauncher
from cabinet.runner.resolver import HostResourceResolver
from cabinet.shared.enums import SessionEventType, SessionStatus, StreamingMethod
from cabinet.shared.exceptions import ConflictError, InvalidStateError, LaunchError, UnknownEntityError
from cabinet.shared.models import (
    GameSessionStats,
    LaunchConfiguration,
    ResourceUsage,
    RunnerSession,
    SessionEvent,
    SessionMetadata,
    utc_now,
)
from cabinet.shared.storage import EntityStore
from cabinet.stats.sink import EventSink

logger = logging.getLogger(__name__)

ENTITY_TYPE = "sessions"

# Extra time on top of the runtime's own stop grace before teardown gives up waiting
_STOP_SLACK_SECONDS = 5.0


class RunnerSessionManager:
    """Owns every runner session and drives its state machine.

    ``starting -> running -> {paused <-> running} -> stopping -> stopped``;
    any non-terminal state may fall to ``error``. Container I/O always runs
    in background tasks, so no public method waits on the runtime.
    """

    def __init__(
        self,
        *,
        resolver: HostResourceResolver,
        launcher: ContainerLauncher,
        sink: EventSink,
        store: EntityStore | None = None,
        name_prefix: str = "cabinet-session",
        launch_timeout: float = 120,
        stop_timeout: float = 30,
        teardown_attempts: int = 3,
        teardown_backoff: tuple[float, ...] = (1, 2, 4),
        heartbeat_timeout: float = 60,
        watchdog_interval: float = 5,
        retention: float = 3600,
        stop_on_shutdown: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._resolver = resolver
        self._launcher = launcher
        self._sink = sink
        self._store = store
        self._name_prefix = name_prefix
        self._launch_timeout = launch_timeout
        self._stop_timeout = stop_timeout
        self._teardown_attempts = max(teardown_attempts, 1)
        self._teardown_backoff = teardown_backoff or (1.0,)
        self._heartbeat_timeout = heartbeat_timeout
        self._watchdog_interval = watchdog_interval
        self._retention = retention
        self._stop_on_shutdown = stop_on_shutdown
        self._clock = clock

        self._sessions: dict[str, RunnerSession] = {}
        self._active_by_game: dict[str, str] = {}
        self._game_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._session_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._stop_requested: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._watchdog: asyncio.Task[None] | None = None

    # ── lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        """Reconcile persisted sessions and start the stall watchdog.

        Sessions left non-terminal by a previous process cannot be reattached;
        they are marked ``error`` and their containers are removed.
        """
        if self._store is not None:
            for document in await self._store.list_entities(ENTITY_TYPE):
                try:
                    session = RunnerSession.model_validate(document)
                except ValidationError as exc:
                    logger.warning("skipping unreadable session document: %s", exc)
                    continue
                if session.is_terminal:
                    continue
                self._sessions[session.id] = session
                if session.container_id:
                    self._spawn(self._remove_container(session.container_id))
                await self._fail(session.id, "orphaned by service restart")

        if self._watchdog is None:
            self._watchdog = asyncio.create_task(self._watchdog_loop())
        logger.info("session manager started")

    async def shutdown(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watchdog
            self._watchdog = None

        if self._stop_on_shutdown:
            for session in list(self._sessions.values()):
                if not session.is_terminal:
                    await self.stop(session.id)
        await self.wait_idle()
        logger.info("session manager stopped")

    async def wait_idle(self) -> None:
        """Wait until no launch or teardown work is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── operations ─────────────────────────────────────────────

    async def launch(
        self,
        game_id: str,
        configuration: LaunchConfiguration,
        *,
        client_ip: str | None = None,
        user_agent: str | None = None,
        streaming_method: StreamingMethod = StreamingMethod.WEBRTC,
    ) -> str:
        """Create a session in ``starting`` and start its container in the background.

        Returns:
            The new session id.

        Raises:
            ConflictError: A non-terminal session already exists for the game.
            ConfigurationError: The configuration cannot be resolved on this host.
        """
        async with self._game_locks[game_id]:
            active = self._active_by_game.get(game_id)
            if active is not None:
                raise ConflictError(f"game {game_id} already has active session {active}")

            session_id = str(uuid.uuid4())
            resolved = self._resolver.resolve(game_id, session_id, configuration)
            now = self._clock()
            session = RunnerSession(
                id=session_id,
                game_id=game_id,
                configuration=configuration,
                container_config=resolved.container_config,
                created_at=now,
                last_activity=now,
                metadata=SessionMetadata(
                    client_ip=client_ip,
                    user_agent=user_agent,
                    streaming_method=streaming_method,
                    display_server=resolved.display_server,
                    audio_method=resolved.audio_method,
                ),
            )
            self._sessions[session_id] = session
            self._active_by_game[game_id] = session_id

            async with self._session_locks[session_id]:
                logger.info("session %s created for game %s", session_id, game_id)
                await self._persist(session)
                await self._emit(session, SessionEventType.SESSION_CREATED, {"image": session.container_config.image})

        self._spawn(self._start_container(session_id))
        return session_id

    async def stop(self, session_id: str) -> None:
        """Request teardown. A no-op for terminal or already stopping sessions."""
        self._require(session_id)
        await self._request_stop(session_id)

    async def pause(self, session_id: str) -> RunnerSession:
        self._require(session_id)
        async with self._session_locks[session_id]:
            session = self._require(session_id)
            if session.status is not SessionStatus.RUNNING:
                raise InvalidStateError(f"cannot pause session {session_id} in state {session.status.value}")
            return await self._transition(session_id, SessionStatus.PAUSED, SessionEventType.GAME_PAUSED)

    async def resume(self, session_id: str) -> RunnerSession:
        self._require(session_id)
        async with self._session_locks[session_id]:
            session = self._require(session_id)
            if session.status is not SessionStatus.PAUSED:
                raise InvalidStateError(f"cannot resume session {session_id} in state {session.status.value}")
            return await self._transition(
                session_id,
                SessionStatus.RUNNING,
                SessionEventType.GAME_RESUMED,
                update={"last_activity": self._clock()},
            )

    async def heartbeat(self, session_id: str, resources: ResourceUsage | None = None) -> RunnerSession:
        """Record liveness and, optionally, a fresh resource snapshot."""
        session = self._require(session_id)
        if session.is_terminal:
            raise InvalidStateError(f"session {session_id} is {session.status.value}")
        update: dict[str, Any] = {"last_activity": self._clock()}
        if resources is not None:
            update["resources"] = resources
        session = session.model_copy(update=update)
        self._sessions[session_id] = session
        return session

    # ── queries ────────────────────────────────────────────────

    def get_session(self, session_id: str) -> RunnerSession:
        return self._require(session_id)

    def get_sessions(self, game_id: str | None = None) -> list[RunnerSession]:
        sessions = [s for s in self._sessions.values() if game_id is None or s.game_id == game_id]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def get_stats(self, game_id: str) -> GameSessionStats:
        """Aggregate stats from the event sink plus the newest session's current status."""
        stats = self._sink.session_stats(game_id)
        newest = self.get_sessions(game_id)
        if newest:
            stats = stats.model_copy(update={"most_recent_status": newest[0].status})
        return stats

    # ── watchdog ───────────────────────────────────────────────

    async def sweep(self) -> dict[str, int]:
        """Stop stalled sessions and archive expired terminal ones.

        Returns:
            Summary dict with counts: timed_out, archived.
        """
        stats = {"timed_out": 0, "archived": 0}
        now = self._clock()
        for session in list(self._sessions.values()):
            if session.status is SessionStatus.RUNNING:
                idle = (now - session.last_activity).total_seconds()
                if idle > self._heartbeat_timeout:
                    logger.warning("session %s silent for %.0fs, forcing stop", session.id, idle)
                    if await self._request_stop(session.id, timed_out=True):
                        stats["timed_out"] += 1
            elif session.is_terminal and session.end_time is not None:
                if (now - session.end_time).total_seconds() > self._retention:
                    self._sessions.pop(session.id, None)
                    self._session_locks.pop(session.id, None)
                    stats["archived"] += 1

        if stats["timed_out"] or stats["archived"]:
            logger.info("session sweep: %s", stats)
        return stats

    async def _watchdog_loop(self) -> None:
        while True:
            await asyncio.sleep(self._watchdog_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("session sweep failed")

    # ── internals ──────────────────────────────────────────────

    def _require(self, session_id: str) -> RunnerSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownEntityError(f"unknown session {session_id}")
        return session

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("session background task failed: %r", task.exception())

    async def _request_stop(self, session_id: str, *, timed_out: bool = False) -> bool:
        async with self._session_locks[session_id]:
            session = self._sessions.get(session_id)
            if session is None or session.is_terminal or session.status is SessionStatus.STOPPING:
                return False
            if session.status is SessionStatus.STARTING:
                self._stop_requested.add(session_id)
                logger.info("session %s still starting, stop deferred", session_id)
                return True
            if timed_out:
                # A heartbeat may have landed while we waited for the lock
                idle = (self._clock() - session.last_activity).total_seconds()
                if session.status is not SessionStatus.RUNNING or idle <= self._heartbeat_timeout:
                    return False
            await self._transition(
                session_id,
                SessionStatus.STOPPING,
                SessionEventType.SESSION_TIMEOUT if timed_out else SessionEventType.SESSION_STOPPING,
            )
        self._spawn(self._teardown(session_id))
        return True

    async def _start_container(self, session_id: str) -> None:
        session = self._sessions[session_id]
        name = f"{self._name_prefix}-{session_id}"
        try:
            container_id = await asyncio.wait_for(
                self._launcher.start(session.container_config, name=name),
                timeout=self._launch_timeout,
            )
        except asyncio.TimeoutError:
            await self._fail(session_id, f"launch timed out after {self._launch_timeout:g}s")
            # The runtime may still create the container after we gave up
            self._spawn(self._remove_container(name))
            return
        except LaunchError as exc:
            await self._fail(session_id, str(exc))
            return
        except Exception as exc:
            logger.exception("unexpected error launching session %s", session_id)
            await self._fail(session_id, f"launch failed: {exc!r}")
            return

        async with self._session_locks[session_id]:
            now = self._clock()
            await self._transition(
                session_id,
                SessionStatus.RUNNING,
                SessionEventType.GAME_STARTED,
                update={"container_id": container_id, "start_time": now, "last_activity": now},
                data={"container_id": container_id},
            )
        if session_id in self._stop_requested:
            await self._request_stop(session_id)

    async def _teardown(self, session_id: str) -> None:
        container_id = self._sessions[session_id].container_id
        last_error = "container id missing"
        for attempt in range(1, self._teardown_attempts + 1):
            if container_id is None:
                break
            try:
                await asyncio.wait_for(
                    self._launcher.stop(container_id, timeout=self._stop_timeout),
                    timeout=self._stop_timeout + _STOP_SLACK_SECONDS,
                )
                break
            except asyncio.TimeoutError:
                logger.warning("stopping container %s timed out, treating it as gone", container_id[:12])
                break
            except Exception as exc:
                last_error = str(exc) if isinstance(exc, LaunchError) else repr(exc)
                if attempt == self._teardown_attempts:
                    await self._fail(session_id, f"teardown failed after {attempt} attempts: {last_error}")
                    return
                delay = self._teardown_backoff[min(attempt - 1, len(self._teardown_backoff) - 1)]
                logger.warning(
                    "teardown attempt %d/%d for session %s failed: %s (retry in %.1fs)",
                    attempt,
                    self._teardown_attempts,
                    session_id,
                    last_error,
                    delay,
                )
                await asyncio.sleep(delay)

        async with self._session_locks[session_id]:
            if self._sessions[session_id].status is not SessionStatus.STOPPING:
                return
            await self._transition(
                session_id,
                SessionStatus.STOPPED,
                SessionEventType.SESSION_ENDED,
                update={"end_time": self._clock(), "container_id": None},
            )

    async def _fail(self, session_id: str, reason: str) -> None:
        async with self._session_locks[session_id]:
            session = self._sessions.get(session_id)
            if session is None or session.is_terminal:
                return
            logger.error("session %s failed: %s", session_id, reason)
            await self._transition(
                session_id,
                SessionStatus.ERROR,
                SessionEventType.ERROR_OCCURRED,
                update={"error": reason, "end_time": self._clock(), "container_id": None},
                data={"error": reason},
            )

    async def _remove_container(self, container_id: str) -> None:
        try:
            await self._launcher.stop(container_id, timeout=self._stop_timeout)
        except Exception as exc:
            logger.warning("failed to remove stray container %s: %s", container_id[:12], exc)

    async def _transition(
        self,
        session_id: str,
        status: SessionStatus,
        event_type: SessionEventType,
        *,
        update: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> RunnerSession:
        """Apply one state change, persist it and emit its event. Caller holds the session lock."""
        previous = self._sessions[session_id]
        session = previous.model_copy(update={"status": status, **(update or {})})
        self._sessions[session_id] = session
        if status.is_terminal:
            self._stop_requested.discard(session_id)
            if self._active_by_game.get(session.game_id) == session_id:
                del self._active_by_game[session.game_id]
            lock = self._game_locks.get(session.game_id)
            if lock is not None and not lock.locked():
                del self._game_locks[session.game_id]

        logger.info("session %s %s -> %s", session_id, previous.status.value, status.value)
        await self._persist(session)

        payload = dict(data or {})
        if status.is_terminal and session.duration_seconds is not None:
            payload["duration_seconds"] = session.duration_seconds
        await self._emit(session, event_type, payload)
        return session

    async def _emit(self, session: RunnerSession, event_type: SessionEventType, data: dict[str, Any]) -> None:
        await self._sink.record(
            SessionEvent(
                type=event_type,
                session_id=session.id,
                game_id=session.game_id,
                timestamp=self._clock(),
                data=data,
            )
        )

    async def _persist(self, session: RunnerSession) -> None:
        if self._store is None:
            return
        try:
            await self._store.write_entity(ENTITY_TYPE, session.id, session.model_dump(mode="json"))
        except Exception as exc:
            logger.warning("failed to persist session %s: %s", session.id, exc)
