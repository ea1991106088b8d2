"""Container health poller feeding session heartbeats."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from cabinet.runner.interfaces import ContainerLauncher
from cabinet.runner.manager import RunnerSessionManager
from cabinet.shared.enums import SessionStatus
from cabinet.shared.exceptions import InvalidStateError, LaunchError, UnknownEntityError

logger = logging.getLogger(__name__)


class ContainerHealthMonitor:
    """Poll the runtime for live sessions.

    A running container's stats count as a heartbeat; a container that
    exited on its own drives the session to teardown.
    """

    def __init__(self, manager: RunnerSessionManager, launcher: ContainerLauncher, *, interval: float = 15) -> None:
        self._manager = manager
        self._launcher = launcher
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    async def poll_once(self) -> dict[str, int]:
        """Run one polling pass.

        Returns:
            Summary dict with counts: polled, exited.
        """
        stats = {"polled": 0, "exited": 0}
        for session in self._manager.get_sessions():
            if session.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED) or session.container_id is None:
                continue

            try:
                state = await self._launcher.inspect(session.container_id)
            except LaunchError as exc:
                logger.warning("cannot inspect container for session %s: %s", session.id, exc)
                continue

            try:
                if state is None or not state.running:
                    exit_code = state.exit_code if state is not None else None
                    logger.warning("container for session %s exited (code=%s), stopping", session.id, exit_code)
                    await self._manager.stop(session.id)
                    stats["exited"] += 1
                    continue

                usage = await self._launcher.stats(session.container_id)
                await self._manager.heartbeat(session.id, usage)
                stats["polled"] += 1
            except (InvalidStateError, UnknownEntityError):
                # Session finished while we were polling
                continue

        logger.debug("health poll: %s", stats)
        return stats

    def start(self) -> None:
        if self._interval <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("container health monitor started (interval=%.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.poll_once()
            except Exception:
                logger.exception("health poll failed")
