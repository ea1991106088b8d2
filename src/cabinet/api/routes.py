"""API routes for sessions, downloads, stats and scrapers."""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import urlparse

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from cabinet.runtime import CabinetRuntime
from cabinet.shared.enums import StreamingMethod
from cabinet.shared.models import (
    Download,
    DownloadEvent,
    DownloadFile,
    DownloadStats,
    GameDetail,
    GameSearchResult,
    GameSessionStats,
    LaunchConfiguration,
    ResourceUsage,
    RunnerSession,
    SessionEvent,
)

router = APIRouter()


class LaunchRequest(BaseModel):
    game_id: str = Field(min_length=1)
    configuration: LaunchConfiguration = Field(default_factory=LaunchConfiguration)
    streaming_method: StreamingMethod = StreamingMethod.WEBRTC


class HeartbeatRequest(BaseModel):
    resources: ResourceUsage | None = None


class FileRequest(BaseModel):
    url: str = Field(min_length=1)
    target_path: str | None = None
    size: int | None = Field(default=None, ge=0)


class EnqueueRequest(BaseModel):
    game_id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9._-]+$")
    source_url: str = Field(min_length=1)
    target_path: str | None = None
    files: list[FileRequest] = Field(default_factory=list)


class CleanupRequest(BaseModel):
    days_old: float = Field(default=30, ge=0)
    remove_files: bool = False


class ConcurrencyRequest(BaseModel):
    limit: int


def _runtime(request: Request) -> CabinetRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="runtime unavailable")
    return runtime


def _target(runtime: CabinetRuntime, game_id: str, source_url: str, target_path: str | None) -> str:
    """Resolve where a file lands; it must stay inside the download directory."""
    root = Path(runtime.settings.download_dir).resolve()
    if target_path is None:
        name = PurePosixPath(urlparse(source_url).path).name or "installer"
        path = root / game_id / name
    else:
        path = root / target_path
    resolved = path.resolve()
    if resolved == root or not resolved.is_relative_to(root):
        raise HTTPException(status_code=422, detail=f"target path must be a file inside {root}")
    return str(resolved)


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return {"status": "starting"}
    return {
        "status": "ok",
        "sessions": sum(1 for s in runtime.sessions.get_sessions() if not s.is_terminal),
        "downloads": runtime.downloads.active_transfers,
        "scrapers": [t.value for t in runtime.scrapers.available()],
    }


# ── sessions ───────────────────────────────────────────────────


@router.post("/sessions", status_code=202)
async def launch_session(body: LaunchRequest, request: Request) -> dict[str, str]:
    runtime = _runtime(request)
    session_id = await runtime.sessions.launch(
        body.game_id,
        body.configuration,
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        streaming_method=body.streaming_method,
    )
    return {"session_id": session_id}


@router.get("/sessions")
async def list_sessions(request: Request, game_id: str | None = None) -> list[RunnerSession]:
    return _runtime(request).sessions.get_sessions(game_id)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request) -> RunnerSession:
    return _runtime(request).sessions.get_session(session_id)


@router.post("/sessions/{session_id}/stop", status_code=202)
async def stop_session(session_id: str, request: Request) -> RunnerSession:
    sessions = _runtime(request).sessions
    await sessions.stop(session_id)
    return sessions.get_session(session_id)


@router.post("/sessions/{session_id}/pause")
async def pause_session(session_id: str, request: Request) -> RunnerSession:
    return await _runtime(request).sessions.pause(session_id)


@router.post("/sessions/{session_id}/resume")
async def resume_session(session_id: str, request: Request) -> RunnerSession:
    return await _runtime(request).sessions.resume(session_id)


@router.post("/sessions/{session_id}/heartbeat")
async def heartbeat(session_id: str, request: Request, body: HeartbeatRequest | None = None) -> RunnerSession:
    resources = body.resources if body is not None else None
    return await _runtime(request).sessions.heartbeat(session_id, resources)


@router.get("/games/{game_id}/stats")
async def game_stats(game_id: str, request: Request) -> GameSessionStats:
    return _runtime(request).sessions.get_stats(game_id)


# ── downloads ──────────────────────────────────────────────────


@router.post("/downloads", status_code=202)
async def enqueue_download(body: EnqueueRequest, request: Request) -> Download:
    runtime = _runtime(request)
    target = _target(runtime, body.game_id, body.source_url, body.target_path)
    extra = [
        DownloadFile(url=f.url, target_path=_target(runtime, body.game_id, f.url, f.target_path), size=f.size)
        for f in body.files
    ]
    try:
        return await runtime.downloads.enqueue(body.game_id, body.source_url, target, extra_files=extra)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/downloads")
async def list_downloads(request: Request) -> list[Download]:
    return _runtime(request).downloads.get_all_downloads()


@router.put("/downloads/concurrency")
async def set_concurrency(body: ConcurrencyRequest, request: Request) -> dict[str, int]:
    return {"limit": _runtime(request).downloads.set_max_concurrent_downloads(body.limit)}


@router.post("/downloads/cleanup")
async def cleanup_downloads(request: Request, body: CleanupRequest | None = None) -> dict[str, int]:
    body = body or CleanupRequest()
    removed = await _runtime(request).downloads.cleanup_old_downloads(body.days_old, remove_files=body.remove_files)
    return {"removed": removed}


@router.get("/downloads/stats")
async def download_stats(request: Request, game_id: str | None = None) -> DownloadStats:
    return _runtime(request).sink.download_stats(game_id)


@router.get("/downloads/{game_id}")
async def get_download(game_id: str, request: Request) -> Download:
    return _runtime(request).downloads.get_download(game_id)


@router.post("/downloads/{game_id}/cancel")
async def cancel_download(game_id: str, request: Request) -> Download:
    return await _runtime(request).downloads.cancel_download(game_id)


@router.post("/downloads/{game_id}/pause")
async def pause_download(game_id: str, request: Request) -> Download:
    return await _runtime(request).downloads.pause_download(game_id)


@router.post("/downloads/{game_id}/resume")
async def resume_download(game_id: str, request: Request) -> Download:
    return await _runtime(request).downloads.resume_download(game_id)


@router.delete("/downloads/{game_id}", status_code=204)
async def clear_download(game_id: str, request: Request) -> None:
    await _runtime(request).downloads.clear_download(game_id)


# ── events ─────────────────────────────────────────────────────


@router.get("/events/sessions")
async def session_events(
    request: Request,
    session_id: str | None = None,
    game_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[SessionEvent]:
    return _runtime(request).sink.session_events(session_id=session_id, game_id=game_id, limit=limit)


@router.get("/events/downloads")
async def download_events(
    request: Request,
    game_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[DownloadEvent]:
    return _runtime(request).sink.download_events(game_id=game_id, limit=limit)


# ── scrapers ───────────────────────────────────────────────────


@router.get("/scrapers")
async def list_scrapers(request: Request) -> list[str]:
    return [t.value for t in _runtime(request).scrapers.available()]


@router.get("/scrapers/{scraper_type}/search")
async def search_games(
    scraper_type: str,
    request: Request,
    q: str = Query(min_length=1),
    limit: int = Query(default=10, ge=1, le=50),
) -> list[GameSearchResult]:
    return await _runtime(request).scrapers.get(scraper_type).search(q, limit=limit)


@router.get("/scrapers/{scraper_type}/games/{scraper_id}")
async def game_detail(scraper_type: str, scraper_id: str, request: Request) -> GameDetail:
    return await _runtime(request).scrapers.get(scraper_type).get_game_detail(scraper_id)
