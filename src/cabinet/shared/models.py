"""Frozen Pydantic domain models shared by all modules."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from cabinet.shared.enums import (
    AudioMethod,
    DisplayServer,
    DownloadEventType,
    DownloadStatus,
    NetworkMode,
    ScraperType,
    SessionEventType,
    SessionStatus,
    StreamingMethod,
)

SCHEMA_VERSION = "1.0"


def utc_now() -> datetime:
    """Return timezone-aware UTC timestamps for model defaults."""
    return datetime.now(timezone.utc)


# ── Container configuration ─────────────────────────────────────


class ResourceLimits(BaseModel):
    """CPU / memory / GPU ceilings for a runner container."""

    model_config = {"frozen": True}

    cpu: float | None = Field(default=None, gt=0)
    memory_gb: float | None = Field(default=None, gt=0)
    # -1 requests every GPU on the host
    gpu_count: int = Field(default=0, ge=-1)


class VolumeMount(BaseModel):
    model_config = {"frozen": True}

    source: str = Field(min_length=1)
    target: str = Field(min_length=1, pattern=r"^/")
    read_only: bool = False


class PortMapping(BaseModel):
    model_config = {"frozen": True}

    host: int = Field(ge=1, le=65535)
    container: int = Field(ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"


class DeviceMapping(BaseModel):
    model_config = {"frozen": True}

    host: str = Field(min_length=1)
    container: str = Field(min_length=1)
    permissions: str = "rwm"


class ContainerConfiguration(BaseModel):
    """Declarative container spec handed to the launcher. Immutable once built."""

    model_config = {"frozen": True}

    image: str = Field(min_length=1)
    command: tuple[str, ...] | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    volumes: tuple[VolumeMount, ...] = ()
    ports: tuple[PortMapping, ...] = ()
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    network_mode: NetworkMode = NetworkMode.BRIDGE
    devices: tuple[DeviceMapping, ...] = ()
    labels: dict[str, str] = Field(default_factory=dict)
    ipc_mode: str | None = None
    security_opt: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _check_consistency(self) -> ContainerConfiguration:
        targets = [v.target for v in self.volumes]
        if len(targets) != len(set(targets)):
            raise ValueError("volume targets must be unique")

        host_ports = [(p.host, p.protocol) for p in self.ports]
        if len(host_ports) != len(set(host_ports)):
            raise ValueError("host port mappings must be unique")

        if self.ports and self.network_mode is not NetworkMode.BRIDGE:
            raise ValueError(f"port mappings are not allowed with network mode {self.network_mode.value}")
        return self


# ── Launch request ──────────────────────────────────────────────


class DisplayConfiguration(BaseModel):
    model_config = {"frozen": True}

    width: int = Field(default=1920, gt=0)
    height: int = Field(default=1080, gt=0)
    refresh_rate: int = Field(default=60, gt=0)
    # None auto-detects: X11, then Wayland, then headless
    method: DisplayServer | None = None


class LaunchConfiguration(BaseModel):
    """Client-facing launch settings; resolved into a ContainerConfiguration."""

    model_config = {"frozen": True}

    image: str | None = None
    command: tuple[str, ...] | None = None
    display: DisplayConfiguration = Field(default_factory=DisplayConfiguration)
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    environment: dict[str, str] = Field(default_factory=dict)
    game_path: str | None = None
    volumes: tuple[VolumeMount, ...] = ()
    ports: tuple[PortMapping, ...] = ()
    network_mode: NetworkMode = NetworkMode.BRIDGE
    audio: AudioMethod = AudioMethod.PULSEAUDIO
    gpu: bool = True
    input_devices: bool = True


# ── Sessions ────────────────────────────────────────────────────


class ResourceUsage(BaseModel):
    """Point-in-time resource snapshot; not guaranteed monotonic."""

    model_config = {"frozen": True}

    cpu_percent: float = 0.0
    memory_bytes: int = 0
    gpu_memory_bytes: int | None = None
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0


class SessionMetadata(BaseModel):
    model_config = {"frozen": True}

    client_ip: str | None = None
    user_agent: str | None = None
    streaming_method: StreamingMethod = StreamingMethod.WEBRTC
    display_server: DisplayServer = DisplayServer.HEADLESS
    audio_method: AudioMethod = AudioMethod.NONE


class RunnerSession(BaseModel):
    """One attempt to run a game inside a container-backed runtime."""

    model_config = {"frozen": True}

    schema_version: str = SCHEMA_VERSION
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    game_id: str
    container_id: str | None = None
    status: SessionStatus = SessionStatus.STARTING
    configuration: LaunchConfiguration
    container_config: ContainerConfiguration
    created_at: datetime = Field(default_factory=utc_now)
    start_time: datetime | None = None
    last_activity: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    resources: ResourceUsage = Field(default_factory=ResourceUsage)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time is None or self.end_time is None:
            return None
        return max((self.end_time - self.start_time).total_seconds(), 0.0)


# ── Downloads ───────────────────────────────────────────────────


class DownloadFile(BaseModel):
    """One file within a download job."""

    model_config = {"frozen": True}

    url: str
    target_path: str
    size: int | None = None
    bytes_transferred: int = 0
    completed: bool = False


class Download(BaseModel):
    """One installer job, keyed by the source-side game id.

    ``source_url`` and ``target_path`` name the primary file; a job may carry
    further files, fetched in order after it.
    """

    model_config = {"frozen": True}

    schema_version: str = SCHEMA_VERSION
    game_id: str
    source_url: str
    target_path: str
    files: tuple[DownloadFile, ...] = ()
    current_file: str | None = None
    total_bytes: int | None = None
    bytes_transferred: int = 0
    status: DownloadStatus = DownloadStatus.QUEUED
    error: str | None = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _primary_file(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("files"):
            primary = {"url": data.get("source_url"), "target_path": data.get("target_path")}
            if data.get("total_bytes") is not None:
                primary["size"] = data["total_bytes"]
            data = {**data, "files": (primary,)}
        return data

    @model_validator(mode="after")
    def _check_files(self) -> Download:
        targets = [f.target_path for f in self.files]
        if len(targets) != len(set(targets)):
            raise ValueError("file target paths must be unique")
        if self.files[0].url != self.source_url or self.files[0].target_path != self.target_path:
            raise ValueError("the first file must match source_url and target_path")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def total_files(self) -> int:
        return len(self.files)

    @property
    def completed_files(self) -> int:
        return sum(1 for f in self.files if f.completed)

    @property
    def progress(self) -> float | None:
        """Fraction complete in [0, 1], or None while the size is unknown."""
        if not self.total_bytes:
            return None
        return min(self.bytes_transferred / self.total_bytes, 1.0)


# ── Events & stats ──────────────────────────────────────────────


class SessionEvent(BaseModel):
    model_config = {"frozen": True}

    type: SessionEventType
    session_id: str
    game_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)


class DownloadEvent(BaseModel):
    model_config = {"frozen": True}

    type: DownloadEventType
    game_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)


class GameSessionStats(BaseModel):
    model_config = {"frozen": True}

    game_id: str
    total_launches: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    total_play_seconds: float = 0.0
    average_duration_seconds: float = 0.0
    last_played: datetime | None = None
    most_recent_status: SessionStatus | None = None


class DownloadStats(BaseModel):
    model_config = {"frozen": True}

    game_id: str | None = None
    enqueued: int = 0
    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    bytes_completed: int = 0


# ── Catalog ─────────────────────────────────────────────────────


class GameSearchResult(BaseModel):
    model_config = {"frozen": True}

    scraper_id: str
    scraper_type: ScraperType
    title: str
    release_date: str | None = None
    platforms: tuple[str, ...] = ()
    cover_url: str | None = None
    summary: str | None = None


class GameDetail(BaseModel):
    model_config = {"frozen": True}

    scraper_id: str
    scraper_type: ScraperType
    title: str
    slug: str | None = None
    summary: str | None = None
    storyline: str | None = None
    release_date: str | None = None
    platforms: tuple[str, ...] = ()
    genres: tuple[str, ...] = ()
    developers: tuple[str, ...] = ()
    publishers: tuple[str, ...] = ()
    rating: float | None = None
    cover_url: str | None = None
    screenshots: tuple[str, ...] = ()
