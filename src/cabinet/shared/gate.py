"""Admission gate with a runtime-adjustable ceiling."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """Semaphore-like slot counter whose limit can change while slots are held.

    Lowering the limit never revokes held slots; it only makes ``try_acquire``
    fail until enough holders release.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._in_use = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return max(self._limit - self._in_use, 0)

    def set_limit(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if limit < self._in_use:
            logger.info("gate limit lowered to %d with %d slots held; draining naturally", limit, self._in_use)
        self._limit = limit

    def try_acquire(self) -> bool:
        """Take a slot if one is free. Never waits."""
        if self._in_use >= self._limit:
            return False
        self._in_use += 1
        return True

    def release(self) -> None:
        if self._in_use == 0:
            raise RuntimeError("release() called with no slots held")
        self._in_use -= 1
