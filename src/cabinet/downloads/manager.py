"""Bounded download queue: admission, retries, cancellation and pause/resume."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, defaultdict, deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError

from cabinet.downloads.interfaces import Transfer
from cabinet.downloads.transfer import part_path
from cabinet.shared.enums import DownloadEventType, DownloadStatus
from cabinet.shared.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    TransferCancelled,
    TransferError,
    UnknownEntityError,
)
from cabinet.shared.gate import ConcurrencyGate
from cabinet.shared.models import Download, DownloadEvent, DownloadFile, utc_now
from cabinet.shared.storage import EntityStore
from cabinet.stats.sink import EventSink

logger = logging.getLogger(__name__)

ENTITY_TYPE = "downloads"
MIN_CONCURRENT = 1
MAX_CONCURRENT = 10

_BUSY = (DownloadStatus.QUEUED, DownloadStatus.DOWNLOADING, DownloadStatus.PAUSED)


@dataclass(slots=True)
class _Worker:
    target_paths: tuple[str, ...]
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    intent: Literal["cancel", "pause"] | None = None
    task: asyncio.Task[None] | None = None
    grace: asyncio.TimerHandle | None = None


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENT, min(MAX_CONCURRENT, value))


class DownloadManager:
    """FIFO download queue drained by at most ``max_concurrent`` workers.

    Completed and cancelled downloads leave the active table for a bounded
    history; failed downloads stay active so their error remains visible
    until cleared or re-enqueued.
    """

    def __init__(
        self,
        *,
        transfer: Transfer,
        sink: EventSink,
        store: EntityStore | None = None,
        max_concurrent: int = 2,
        max_attempts: int = 3,
        backoff: tuple[float, ...] = (2, 5, 15),
        cancel_grace: float = 10,
        history_size: int = 200,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._transfer = transfer
        self._sink = sink
        self._store = store
        self._max_attempts = max(max_attempts, 1)
        self._backoff = backoff or (1.0,)
        self._cancel_grace = cancel_grace
        self._history_size = history_size
        self._clock = clock

        self._gate = ConcurrencyGate(clamp_concurrency(max_concurrent))
        self._downloads: dict[str, Download] = {}
        self._history: OrderedDict[str, Download] = OrderedDict()
        self._queue: deque[str] = deque()
        self._workers: dict[str, _Worker] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def max_concurrent(self) -> int:
        return self._gate.limit

    @property
    def active_transfers(self) -> int:
        return len(self._workers)

    # ── lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        """Reload persisted downloads. Unfinished ones come back paused."""
        if self._store is None:
            return
        restored = 0
        for document in await self._store.list_entities(ENTITY_TYPE):
            try:
                download = Download.model_validate(document)
            except ValidationError as exc:
                logger.warning("skipping unreadable download document: %s", exc)
                continue
            if download.status in (DownloadStatus.COMPLETED, DownloadStatus.CANCELLED):
                self._remember(download)
                continue
            if download.status in (DownloadStatus.QUEUED, DownloadStatus.DOWNLOADING):
                download = download.model_copy(update={"status": DownloadStatus.PAUSED, "updated_at": self._clock()})
                await self._persist(download)
                restored += 1
            self._downloads[download.game_id] = download
        logger.info("download manager started, %d unfinished downloads restored as paused", restored)

    async def shutdown(self) -> None:
        """Pause in-flight transfers so they resume next run."""
        workers = list(self._workers.items())
        for game_id, _ in workers:
            async with self._locks[game_id]:
                download = self._downloads.get(game_id)
                if download is not None and download.status is DownloadStatus.DOWNLOADING:
                    await self._interrupt(game_id, "pause")
                    await self._set_status(game_id, DownloadStatus.PAUSED, DownloadEventType.PAUSED)
        tasks = [w.task for _, w in workers if w.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("download manager stopped")

    # ── operations ─────────────────────────────────────────────

    async def enqueue(
        self,
        game_id: str,
        source_url: str,
        target_path: str,
        *,
        extra_files: Sequence[DownloadFile] = (),
    ) -> Download:
        """Queue an installer download.

        ``extra_files`` are fetched in order after the primary file, as one job.

        Raises:
            ConflictError: A queued, downloading or paused download exists for the game.
            ValueError: Two files of the job share a target path.
        """
        async with self._locks[game_id]:
            existing = self._downloads.get(game_id)
            if existing is not None and existing.status in _BUSY:
                raise ConflictError(f"game {game_id} already has a {existing.status.value} download")

            now = self._clock()
            files = (DownloadFile(url=source_url, target_path=target_path), *extra_files)
            download = Download(
                game_id=game_id,
                source_url=source_url,
                target_path=target_path,
                files=tuple(f.model_copy(update={"bytes_transferred": 0, "completed": False}) for f in files),
                total_bytes=_sum_sizes(files),
                created_at=now,
                updated_at=now,
            )
            self._history.pop(game_id, None)
            self._downloads[game_id] = download
            self._queue.append(game_id)
            logger.info("download %s queued (%s, %d files)", game_id, source_url, download.total_files)
            await self._persist(download)
            await self._emit(
                download, DownloadEventType.QUEUED, {"source_url": source_url, "files": download.total_files}
            )
        self._pump()
        return self._downloads.get(game_id, download)

    async def cancel_download(self, game_id: str) -> Download:
        """Cancel a download. Terminal downloads are returned unchanged."""
        async with self._locks[game_id]:
            download = self._lookup(game_id)
            if download.is_terminal:
                return download

            if download.status is DownloadStatus.QUEUED:
                self._dequeue(game_id)
            else:
                # A paused worker may still be draining; it removes the parts on exit
                await self._interrupt(game_id, "cancel")
                if download.status is DownloadStatus.PAUSED:
                    _discard_parts(f.target_path for f in download.files)
            return await self._set_status(game_id, DownloadStatus.CANCELLED, DownloadEventType.CANCELLED)

    async def pause_download(self, game_id: str) -> Download:
        """Pause a queued or running download, keeping any partial data."""
        async with self._locks[game_id]:
            download = self._lookup(game_id)
            if download.status is DownloadStatus.PAUSED:
                return download
            if download.status is DownloadStatus.QUEUED:
                self._dequeue(game_id)
            elif download.status is DownloadStatus.DOWNLOADING:
                await self._interrupt(game_id, "pause")
            else:
                raise InvalidStateError(f"cannot pause download {game_id} in state {download.status.value}")
            return await self._set_status(game_id, DownloadStatus.PAUSED, DownloadEventType.PAUSED)

    async def resume_download(self, game_id: str) -> Download:
        """Put a paused download back at the tail of the queue."""
        async with self._locks[game_id]:
            download = self._lookup(game_id)
            if download.status is not DownloadStatus.PAUSED:
                raise InvalidStateError(f"cannot resume download {game_id} in state {download.status.value}")
            download = await self._set_status(game_id, DownloadStatus.QUEUED, DownloadEventType.QUEUED)
            self._queue.append(game_id)
        self._pump()
        return self._downloads.get(game_id, download)

    async def clear_download(self, game_id: str) -> None:
        """Forget a terminal download."""
        async with self._locks[game_id]:
            download = self._lookup(game_id)
            if not download.is_terminal:
                raise InvalidStateError(f"download {game_id} is still {download.status.value}")
            await self._forget(game_id)
        logger.info("download %s cleared", game_id)

    async def cleanup_old_downloads(self, days_old: float = 30, *, remove_files: bool = False) -> int:
        """Forget completed downloads finished more than ``days_old`` days ago.

        With ``remove_files`` their installers are deleted from disk as well.

        Returns:
            Number of downloads removed.
        """
        cutoff = self._clock() - timedelta(days=days_old)
        expired = [
            d
            for d in self.get_all_downloads()
            if d.status is DownloadStatus.COMPLETED and d.completed_at is not None and d.completed_at < cutoff
        ]
        removed = 0
        for download in expired:
            async with self._locks[download.game_id]:
                current = self._lookup_optional(download.game_id)
                if current is None or current.status is not DownloadStatus.COMPLETED:
                    continue
                await self._forget(download.game_id)
                if remove_files:
                    for item in current.files:
                        try:
                            Path(item.target_path).unlink(missing_ok=True)
                        except OSError as exc:
                            logger.warning("failed to remove %s: %s", item.target_path, exc)
                removed += 1
        if removed:
            logger.info("cleaned up %d downloads older than %g days", removed, days_old)
        return removed

    def set_max_concurrent_downloads(self, limit: int) -> int:
        """Adjust the ceiling. Running transfers are never pre-empted.

        Returns:
            The effective ceiling after clamping to 1..10.
        """
        effective = clamp_concurrency(limit)
        self._gate.set_limit(effective)
        logger.info("max concurrent downloads set to %d", effective)
        self._pump()
        return effective

    # ── queries ────────────────────────────────────────────────

    def get_download(self, game_id: str) -> Download:
        return self._lookup(game_id)

    def get_all_downloads(self) -> list[Download]:
        downloads = [*self._downloads.values(), *self._history.values()]
        return sorted(downloads, key=lambda d: d.created_at)

    def queued_game_ids(self) -> list[str]:
        return list(self._queue)

    # ── scheduling ─────────────────────────────────────────────

    def _pump(self) -> None:
        """Start queued downloads while the gate has free slots."""
        while self._gate.try_acquire():
            game_id = self._next_ready()
            if game_id is None:
                self._gate.release()
                return
            self._start_worker(game_id)

    def _next_ready(self) -> str | None:
        # A game whose previous worker is still draining waits its turn
        for game_id in self._queue:
            if game_id not in self._workers:
                self._queue.remove(game_id)
                return game_id
        return None

    def _dequeue(self, game_id: str) -> None:
        try:
            self._queue.remove(game_id)
        except ValueError:
            pass

    def _start_worker(self, game_id: str) -> None:
        download = self._downloads[game_id]
        now = self._clock()
        self._downloads[game_id] = download.model_copy(
            update={
                "status": DownloadStatus.DOWNLOADING,
                "started_at": download.started_at or now,
                "updated_at": now,
                "attempts": 0,
            }
        )
        worker = _Worker(target_paths=tuple(f.target_path for f in download.files))
        self._workers[game_id] = worker
        worker.task = asyncio.create_task(self._run(game_id, worker))
        worker.task.add_done_callback(partial(self._worker_done, game_id, worker))
        logger.info("download %s started (%d/%d slots)", game_id, self._gate.in_use, self._gate.limit)

    async def _interrupt(self, game_id: str, intent: Literal["cancel", "pause"]) -> None:
        worker = self._workers.get(game_id)
        if worker is None:
            return
        worker.intent = intent
        worker.cancel_event.set()
        if worker.task is None:
            return
        if intent == "cancel":
            # Cancelled work keeps nothing; free the slot now
            worker.task.cancel()
        elif worker.grace is None:
            loop = asyncio.get_running_loop()
            worker.grace = loop.call_later(self._cancel_grace, worker.task.cancel)

    # ── worker ─────────────────────────────────────────────────

    async def _run(self, game_id: str, worker: _Worker) -> None:
        try:
            started = self._downloads[game_id]
            await self._persist(started)
            await self._emit(
                started, DownloadEventType.STARTED, {"source_url": started.source_url, "files": started.total_files}
            )
            await self._attempt(game_id, worker)
        except Exception as exc:
            logger.exception("download worker for %s crashed", game_id)
            await self._fail(game_id, f"unexpected error: {exc}")

    def _worker_done(self, game_id: str, worker: _Worker, task: asyncio.Task[None]) -> None:
        # Runs even for a task cancelled before its first step
        if worker.grace is not None:
            worker.grace.cancel()
        if worker.intent == "cancel":
            _discard_parts(worker.target_paths)
        if self._workers.get(game_id) is worker:
            del self._workers[game_id]
        if task.cancelled():
            logger.info("download %s worker stopped (%s)", game_id, worker.intent)
        self._gate.release()
        self._pump()

    async def _attempt(self, game_id: str, worker: _Worker) -> None:
        last_error = ""
        for attempt in range(1, self._max_attempts + 1):
            if worker.cancel_event.is_set():
                return
            self._update(game_id, attempts=attempt)
            try:
                await self._fetch_remaining(game_id, worker)
            except TransferCancelled:
                logger.info("download %s interrupted (%s)", game_id, worker.intent)
                return
            except NotFoundError as exc:
                await self._fail(game_id, str(exc))
                return
            except TransferError as exc:
                last_error = str(exc)
                if attempt == self._max_attempts:
                    break
                delay = self._backoff[min(attempt - 1, len(self._backoff) - 1)]
                logger.warning(
                    "download %s attempt %d/%d failed: %s (retry in %.1fs)",
                    game_id,
                    attempt,
                    self._max_attempts,
                    last_error,
                    delay,
                )
                await self._emit(
                    self._downloads[game_id],
                    DownloadEventType.RETRYING,
                    {"attempt": attempt, "error": last_error, "delay": delay},
                )
                if await _wait_or_cancel(worker.cancel_event, delay):
                    return
                continue

            await self._complete(game_id)
            return

        await self._fail(game_id, f"failed after {self._max_attempts} attempts: {last_error}")

    async def _fetch_remaining(self, game_id: str, worker: _Worker) -> None:
        """Fetch every file not yet completed, in job order."""
        for index, item in enumerate(self._downloads[game_id].files):
            if item.completed:
                continue
            if worker.cancel_event.is_set():
                raise TransferCancelled(f"download {game_id} interrupted before {item.target_path}")
            self._update(game_id, current_file=item.target_path)
            size = await self._transfer.fetch(
                item.url,
                item.target_path,
                on_progress=partial(self._on_progress, game_id, index),
                cancel_event=worker.cancel_event,
                expected_size=item.size,
            )
            self._update_file(game_id, index, size=size, bytes_transferred=size, completed=True)
            logger.info(
                "download %s file %d/%d done: %s", game_id, index + 1, len(worker.target_paths), item.target_path
            )

    def _on_progress(self, game_id: str, index: int, transferred: int, total: int | None) -> None:
        download = self._downloads.get(game_id)
        if download is None or download.status is not DownloadStatus.DOWNLOADING:
            return
        item = download.files[index]
        # A restarted transfer reports from zero again; progress never goes back
        self._update_file(
            game_id,
            index,
            bytes_transferred=max(item.bytes_transferred, transferred),
            size=total if total is not None else item.size,
        )

    def _update_file(self, game_id: str, index: int, **changes: Any) -> None:
        download = self._downloads.get(game_id)
        if download is None:
            return
        files = list(download.files)
        files[index] = files[index].model_copy(update=changes)
        self._update(
            game_id,
            files=tuple(files),
            bytes_transferred=sum(f.bytes_transferred for f in files),
            total_bytes=_sum_sizes(files),
        )

    async def _complete(self, game_id: str) -> None:
        async with self._locks[game_id]:
            download = self._downloads.get(game_id)
            if download is None or download.status is not DownloadStatus.DOWNLOADING:
                return
            size = sum(f.size or f.bytes_transferred for f in download.files)
            await self._set_status(
                game_id,
                DownloadStatus.COMPLETED,
                DownloadEventType.COMPLETED,
                update={
                    "bytes_transferred": size,
                    "total_bytes": size,
                    "current_file": None,
                    "completed_at": self._clock(),
                },
                data={"bytes": size, "target_path": download.target_path, "files": download.total_files},
            )

    async def _fail(self, game_id: str, reason: str) -> None:
        async with self._locks[game_id]:
            download = self._downloads.get(game_id)
            if download is None or download.status is not DownloadStatus.DOWNLOADING:
                return
            logger.error("download %s failed: %s", game_id, reason)
            await self._set_status(
                game_id,
                DownloadStatus.ERROR,
                DownloadEventType.FAILED,
                update={"error": reason},
                data={"error": reason, "attempts": download.attempts},
            )

    # ── state helpers ──────────────────────────────────────────

    def _lookup_optional(self, game_id: str) -> Download | None:
        return self._downloads.get(game_id) or self._history.get(game_id)

    def _lookup(self, game_id: str) -> Download:
        download = self._lookup_optional(game_id)
        if download is None:
            raise UnknownEntityError(f"unknown download {game_id}")
        return download

    async def _forget(self, game_id: str) -> None:
        self._downloads.pop(game_id, None)
        self._history.pop(game_id, None)
        if self._store is not None:
            try:
                await self._store.delete_entity(ENTITY_TYPE, game_id)
            except Exception as exc:
                logger.warning("failed to delete download %s from store: %s", game_id, exc)

    def _update(self, game_id: str, **changes: Any) -> Download:
        download = self._downloads[game_id].model_copy(update={**changes, "updated_at": self._clock()})
        self._downloads[game_id] = download
        return download

    async def _set_status(
        self,
        game_id: str,
        status: DownloadStatus,
        event_type: DownloadEventType,
        *,
        update: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Download:
        """Apply one lifecycle transition, persist it and emit its event. Caller holds the game lock."""
        previous = self._downloads[game_id]
        download = self._update(game_id, status=status, **(update or {}))
        if status in (DownloadStatus.COMPLETED, DownloadStatus.CANCELLED):
            del self._downloads[game_id]
            self._remember(download)
        logger.info("download %s %s -> %s", game_id, previous.status.value, status.value)
        await self._persist(download)
        await self._emit(download, event_type, data or {})
        return download

    def _remember(self, download: Download) -> None:
        self._history[download.game_id] = download
        self._history.move_to_end(download.game_id)
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)

    async def _emit(self, download: Download, event_type: DownloadEventType, data: dict[str, Any]) -> None:
        await self._sink.record(
            DownloadEvent(type=event_type, game_id=download.game_id, timestamp=self._clock(), data=data)
        )

    async def _persist(self, download: Download) -> None:
        if self._store is None:
            return
        try:
            await self._store.write_entity(ENTITY_TYPE, download.game_id, download.model_dump(mode="json"))
        except Exception as exc:
            logger.warning("failed to persist download %s: %s", download.game_id, exc)


async def _wait_or_cancel(event: asyncio.Event, delay: float) -> bool:
    """Sleep for ``delay`` seconds; return True early if ``event`` fires."""
    try:
        await asyncio.wait_for(event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


def _sum_sizes(files: Sequence[DownloadFile]) -> int | None:
    """Total job size, or None while any file's size is unknown."""
    if any(f.size is None for f in files):
        return None
    return sum(f.size or 0 for f in files)


def _discard_parts(target_paths: Iterable[str]) -> None:
    for target in target_paths:
        part_path(target).unlink(missing_ok=True)
