"""Domain enumerations used across all modules."""

from __future__ import annotations

from enum import Enum, unique


@unique
class SessionStatus(str, Enum):
    """Lifecycle states for a runner session."""

    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.STOPPED, SessionStatus.ERROR)

    @property
    def has_container(self) -> bool:
        return self in (SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.STOPPING)


@unique
class DownloadStatus(str, Enum):
    """Lifecycle states for an installer download."""

    QUEUED = "queued"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (DownloadStatus.COMPLETED, DownloadStatus.CANCELLED, DownloadStatus.ERROR)


@unique
class NetworkMode(str, Enum):
    """Container network attachment."""

    BRIDGE = "bridge"
    HOST = "host"
    NONE = "none"


@unique
class StreamingMethod(str, Enum):
    """Transport the client uses to receive the game stream."""

    WEBRTC = "webrtc"
    WEBSOCKET = "websocket"
    DIRECT = "direct"


@unique
class DisplayServer(str, Enum):
    """Display server exposed to the runner container."""

    X11 = "x11"
    WAYLAND = "wayland"
    HEADLESS = "headless"


@unique
class AudioMethod(str, Enum):
    """Audio path exposed to the runner container."""

    PULSEAUDIO = "pulseaudio"
    ALSA = "alsa"
    NONE = "none"


@unique
class SessionEventType(str, Enum):
    """One event type per session state transition."""

    SESSION_CREATED = "session_created"
    GAME_STARTED = "game_started"
    GAME_PAUSED = "game_paused"
    GAME_RESUMED = "game_resumed"
    SESSION_STOPPING = "session_stopping"
    SESSION_TIMEOUT = "session_timeout"
    SESSION_ENDED = "session_ended"
    ERROR_OCCURRED = "error_occurred"


@unique
class DownloadEventType(str, Enum):
    """Download lifecycle events."""

    QUEUED = "download_queued"
    STARTED = "download_started"
    RETRYING = "download_retrying"
    PAUSED = "download_paused"
    COMPLETED = "download_completed"
    CANCELLED = "download_cancelled"
    FAILED = "download_failed"


@unique
class ScraperType(str, Enum):
    """Metadata sources known at startup."""

    IGDB = "igdb"
