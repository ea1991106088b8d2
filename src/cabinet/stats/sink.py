"""Bounded event history and per-game aggregates for sessions and downloads."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from cabinet.shared.enums import DownloadEventType, SessionEventType, SessionStatus
from cabinet.shared.models import DownloadEvent, DownloadStats, GameSessionStats, SessionEvent
from cabinet.stats.publisher import EventPublisher

logger = logging.getLogger(__name__)

Event = SessionEvent | DownloadEvent

_STATUS_AFTER: dict[SessionEventType, SessionStatus] = {
    SessionEventType.SESSION_CREATED: SessionStatus.STARTING,
    SessionEventType.GAME_STARTED: SessionStatus.RUNNING,
    SessionEventType.GAME_PAUSED: SessionStatus.PAUSED,
    SessionEventType.GAME_RESUMED: SessionStatus.RUNNING,
    SessionEventType.SESSION_STOPPING: SessionStatus.STOPPING,
    SessionEventType.SESSION_TIMEOUT: SessionStatus.STOPPING,
    SessionEventType.SESSION_ENDED: SessionStatus.STOPPED,
    SessionEventType.ERROR_OCCURRED: SessionStatus.ERROR,
}


@dataclass(slots=True)
class _SessionTotals:
    launches: int = 0
    completed: int = 0
    failed: int = 0
    play_seconds: float = 0.0
    timed_sessions: int = 0
    last_played: datetime | None = None
    last_status: SessionStatus | None = None


@dataclass(slots=True)
class _DownloadTotals:
    enqueued: int = 0
    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    bytes_completed: int = 0


class EventSink:
    """Record session/download events for observability.

    History is kept in fixed-size ring buffers; counts and durations are
    folded into per-game aggregates as events arrive, so stats stay correct
    after old events have been evicted from the buffers.
    """

    def __init__(
        self,
        *,
        capacity: int = 1000,
        subscriber_queue_size: int = 256,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._session_events: deque[SessionEvent] = deque(maxlen=capacity)
        self._download_events: deque[DownloadEvent] = deque(maxlen=capacity)
        self._session_totals: dict[str, _SessionTotals] = {}
        self._download_totals: dict[str, _DownloadTotals] = {}
        self._all_downloads = _DownloadTotals()
        self._subscribers: set[asyncio.Queue[Event]] = set()
        self._subscriber_queue_size = subscriber_queue_size
        self._publisher = publisher

    def attach_publisher(self, publisher: EventPublisher | None) -> None:
        self._publisher = publisher

    async def record(self, event: Event) -> None:
        """Append an event, update aggregates and fan it out."""
        if isinstance(event, SessionEvent):
            self._session_events.append(event)
            self._fold_session(event)
        else:
            self._download_events.append(event)
            self._fold_download(event)

        for queue in self._subscribers:
            _offer(queue, event)

        if self._publisher is not None:
            await self._publisher.publish(event)

    # ── queries ────────────────────────────────────────────────

    def session_events(
        self,
        *,
        session_id: str | None = None,
        game_id: str | None = None,
        limit: int | None = None,
    ) -> list[SessionEvent]:
        events = [
            e
            for e in self._session_events
            if (session_id is None or e.session_id == session_id) and (game_id is None or e.game_id == game_id)
        ]
        return events[-limit:] if limit else events

    def download_events(self, *, game_id: str | None = None, limit: int | None = None) -> list[DownloadEvent]:
        events = [e for e in self._download_events if game_id is None or e.game_id == game_id]
        return events[-limit:] if limit else events

    def session_stats(self, game_id: str) -> GameSessionStats:
        totals = self._session_totals.get(game_id)
        if totals is None:
            return GameSessionStats(game_id=game_id)
        average = totals.play_seconds / totals.timed_sessions if totals.timed_sessions else 0.0
        return GameSessionStats(
            game_id=game_id,
            total_launches=totals.launches,
            completed_sessions=totals.completed,
            failed_sessions=totals.failed,
            total_play_seconds=totals.play_seconds,
            average_duration_seconds=average,
            last_played=totals.last_played,
            most_recent_status=totals.last_status,
        )

    def download_stats(self, game_id: str | None = None) -> DownloadStats:
        totals = self._all_downloads if game_id is None else self._download_totals.get(game_id, _DownloadTotals())
        return DownloadStats(
            game_id=game_id,
            enqueued=totals.enqueued,
            completed=totals.completed,
            cancelled=totals.cancelled,
            failed=totals.failed,
            bytes_completed=totals.bytes_completed,
        )

    # ── subscriptions ──────────────────────────────────────────

    def subscribe(self) -> asyncio.Queue[Event]:
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._subscriber_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Event]) -> None:
        self._subscribers.discard(queue)

    # ── folding ────────────────────────────────────────────────

    def _fold_session(self, event: SessionEvent) -> None:
        totals = self._session_totals.setdefault(event.game_id, _SessionTotals())
        totals.last_status = _STATUS_AFTER[event.type]

        if event.type is SessionEventType.SESSION_CREATED:
            totals.launches += 1
            totals.last_played = event.timestamp
        elif event.type in (SessionEventType.SESSION_ENDED, SessionEventType.ERROR_OCCURRED):
            if event.type is SessionEventType.SESSION_ENDED:
                totals.completed += 1
            else:
                totals.failed += 1
            duration = event.data.get("duration_seconds")
            if isinstance(duration, (int, float)):
                totals.play_seconds += float(duration)
                totals.timed_sessions += 1

    def _fold_download(self, event: DownloadEvent) -> None:
        per_game = self._download_totals.setdefault(event.game_id, _DownloadTotals())
        for totals in (per_game, self._all_downloads):
            if event.type is DownloadEventType.QUEUED:
                totals.enqueued += 1
            elif event.type is DownloadEventType.COMPLETED:
                totals.completed += 1
                size = event.data.get("bytes")
                if isinstance(size, int):
                    totals.bytes_completed += size
            elif event.type is DownloadEventType.CANCELLED:
                totals.cancelled += 1
            elif event.type is DownloadEventType.FAILED:
                totals.failed += 1


def _offer(queue: asyncio.Queue[Event], event: Event) -> None:
    """Non-blocking put; a lagging subscriber loses its oldest event."""
    if queue.full():
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        logger.debug("subscriber queue full, dropped oldest event")
    queue.put_nowait(event)
