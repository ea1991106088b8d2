"""JSON document store used as a write-through cache for live state.

One file per entity under ``<root>/<type>/<id>.json``. Writes go to a temp
file first and are renamed into place, so readers never see half a document.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from functools import partial
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from cabinet.shared.models import SCHEMA_VERSION

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9._-]+$")


@runtime_checkable
class EntityStore(Protocol):
    """Durable key-value contract with last-writer-wins semantics."""

    async def read_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None: ...

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]]: ...

    async def write_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> None: ...

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool: ...


class JsonDocumentStore:
    """File-backed implementation of the ``EntityStore`` protocol."""

    def __init__(self, root: str) -> None:
        self._root = Path(root)

    def _path(self, entity_type: str, entity_id: str) -> Path:
        if not _SAFE_KEY.match(entity_type) or not _SAFE_KEY.match(entity_id) or entity_id in (".", ".."):
            raise ValueError(f"unsafe entity key: {entity_type}/{entity_id}")
        return self._root / entity_type / f"{entity_id}.json"

    async def read_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        path = self._path(entity_type, entity_id)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(_read_document, path))

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]]:
        directory = self._root / entity_type
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(_read_directory, directory))

    async def write_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> None:
        path = self._path(entity_type, entity_id)
        document = {**data, "schema_version": data.get("schema_version") or SCHEMA_VERSION}
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, partial(_write_document, path, document))

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        path = self._path(entity_type, entity_id)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(_delete_document, path))


def _read_document(path: Path) -> dict[str, Any] | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        document = json.loads(raw)
    except json.JSONDecodeError:
        logger.error("corrupt document %s, ignoring", path)
        return None
    if not isinstance(document, dict):
        logger.error("document %s is not an object, ignoring", path)
        return None
    # Documents written before versioning are 1.0
    document.setdefault("schema_version", SCHEMA_VERSION)
    return document


def _read_directory(directory: Path) -> list[dict[str, Any]]:
    if not directory.is_dir():
        return []
    documents: list[dict[str, Any]] = []
    for path in sorted(directory.glob("*.json")):
        document = _read_document(path)
        if document is not None:
            documents.append(document)
    return documents


def _write_document(path: Path, document: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(document, fh, indent=2, default=str)
        os.replace(tmp_path, path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def _delete_document(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
