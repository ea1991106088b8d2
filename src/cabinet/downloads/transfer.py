"""Streaming HTTP installer transfer via httpx."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

import aiofiles  # type: ignore[import-untyped]
import aiofiles.os  # type: ignore[import-untyped]
import httpx

from cabinet.downloads.interfaces import ProgressCallback
from cabinet.shared.exceptions import NotFoundError, TransferCancelled, TransferError

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"
_USER_AGENT = "cabinet-downloader/0.1"
_CONTENT_RANGE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")


def part_path(target_path: str) -> Path:
    target = Path(target_path)
    return target.with_name(target.name + PART_SUFFIX)


class HttpxTransfer:
    """Resumable HTTP(S) downloader.

    Implements the ``Transfer`` protocol. Bytes are streamed into
    ``<target>.part``; an existing part is continued with a ``Range`` request
    and the part is renamed over the target only after its size checks out.
    """

    def __init__(
        self,
        *,
        chunk_size: int = 1_048_576,
        timeout: float = 30,
        max_redirects: int = 5,
        user_agent: str = _USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._chunk_size = chunk_size
        self._timeout = timeout
        self._max_redirects = max_redirects
        self._user_agent = user_agent
        self._transport = transport

    async def fetch(
        self,
        url: str,
        target_path: str,
        *,
        on_progress: ProgressCallback,
        cancel_event: asyncio.Event,
        expected_size: int | None = None,
    ) -> int:
        part = part_path(target_path)
        try:
            part.parent.mkdir(parents=True, exist_ok=True)
            offset = part.stat().st_size if part.exists() else 0
        except OSError as exc:
            raise TransferError(f"cannot prepare {part}: {exc}") from exc

        headers = {"User-Agent": self._user_agent, "Accept-Encoding": "identity"}
        if offset:
            headers["Range"] = f"bytes={offset}-"

        total: int | None = None
        written = 0
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                max_redirects=self._max_redirects,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url, headers=headers) as resp:
                    if resp.status_code in (404, 410):
                        raise NotFoundError(f"{url} returned {resp.status_code}")
                    if resp.status_code == 416 and offset:
                        # Stale part the server cannot continue; start over next attempt
                        part.unlink(missing_ok=True)
                        raise TransferError(f"{url} rejected resume at byte {offset}")
                    if resp.status_code >= 400:
                        raise TransferError(f"{url} returned {resp.status_code}")

                    if resp.status_code == 206 and offset:
                        mode = "ab"
                        total = _total_from_range(resp, offset)
                        logger.info("resuming %s at byte %d", url, offset)
                    else:
                        offset = 0
                        mode = "wb"
                        total = _content_length(resp)
                    if total is None:
                        total = expected_size

                    written = offset
                    on_progress(written, total)
                    async with aiofiles.open(part, mode) as fh:
                        async for chunk in resp.aiter_bytes(self._chunk_size):
                            if cancel_event.is_set():
                                raise TransferCancelled(f"transfer of {url} cancelled at byte {written}")
                            await fh.write(chunk)
                            written += len(chunk)
                            on_progress(written, total)
        except httpx.HTTPError as exc:
            raise TransferError(f"transfer of {url} failed: {exc}") from exc
        except OSError as exc:
            raise TransferError(f"cannot write {part}: {exc}") from exc

        if cancel_event.is_set():
            raise TransferCancelled(f"transfer of {url} cancelled at byte {written}")

        if total is not None and written != total:
            part.unlink(missing_ok=True)
            raise TransferError(f"size mismatch for {url}: expected {total} bytes, got {written}")

        try:
            await aiofiles.os.replace(part, target_path)
        except OSError as exc:
            raise TransferError(f"cannot move {part} into place: {exc}") from exc
        logger.info("downloaded %s -> %s (%d bytes)", url, target_path, written)
        return written


def _content_length(resp: httpx.Response) -> int | None:
    raw = resp.headers.get("Content-Length")
    if raw is None or not raw.isdigit():
        return None
    return int(raw)


def _total_from_range(resp: httpx.Response, offset: int) -> int | None:
    match = _CONTENT_RANGE.match(resp.headers.get("Content-Range", ""))
    if match and match.group(3) != "*":
        return int(match.group(3))
    remaining = _content_length(resp)
    return offset + remaining if remaining is not None else None
