"""Protocol interfaces for download dependency injection."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol, runtime_checkable

# (bytes written so far, total size if known)
ProgressCallback = Callable[[int, int | None], None]


@runtime_checkable
class Transfer(Protocol):
    """Protocol for fetching one installer to local storage."""

    async def fetch(
        self,
        url: str,
        target_path: str,
        *,
        on_progress: ProgressCallback,
        cancel_event: asyncio.Event,
        expected_size: int | None = None,
    ) -> int:
        """Fetch ``url`` into ``target_path``.

        Partial data lives beside the target until the transfer is complete,
        so ``target_path`` only ever holds a finished file.

        Returns:
            Final size in bytes.

        Raises:
            NotFoundError: If the source no longer exists.
            TransferError: On network, protocol or storage failure.
            TransferCancelled: If ``cancel_event`` was set mid-transfer.
        """
        ...
