"""Centralised configuration via Pydantic Settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide configuration loaded from environment variables."""

    model_config = {"env_prefix": "CABINET_", "frozen": True}

    # Storage
    data_root: str = "./data"
    download_dir: str = "./data/downloads"

    # Runner sessions
    runner_image: str = "cabinet/runner:base"
    container_name_prefix: str = "cabinet-session"
    launch_timeout_seconds: float = 120
    stop_timeout_seconds: float = 30
    teardown_max_attempts: int = 3
    teardown_backoff_seconds: str = "1,2,4"
    heartbeat_timeout_seconds: float = 60
    watchdog_interval_seconds: float = 5
    session_retention_seconds: float = 3600
    # 0 disables the container stats poller; heartbeats then come from clients only.
    health_poll_seconds: float = 15
    stop_sessions_on_shutdown: bool = True

    # Host resources exposed to runner containers
    x11_socket_dir: str = "/tmp/.X11-unix"
    pulse_sink: str = ""
    container_user_runtime_dir: str = "/run/user/1000"
    container_home: str = "/home/gameuser"

    # Downloads
    download_max_concurrent: int = 2
    download_max_attempts: int = 3
    download_backoff_seconds: str = "2,5,15"
    download_chunk_size: int = 1_048_576
    download_timeout_seconds: float = 30
    download_cancel_grace_seconds: float = 10
    download_history_size: int = 200

    # Events
    event_log_capacity: int = 1000
    subscriber_queue_size: int = 256
    # Leave blank to keep events in-process only.
    redis_url: str = ""
    event_channel: str = "cabinet:events"
    event_history_key: str = "cabinet:events:history"
    event_history_max: int = 1000

    # HTTP surface
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    # Scrapers
    igdb_client_id: str = ""
    igdb_client_secret: str = ""

    @property
    def storage_dir(self) -> str:
        return f"{self.data_root.rstrip('/')}/storage"


def get_settings() -> Settings:
    """Factory; tests override it."""
    return Settings()


def parse_backoff_seconds(raw: str, *, default: tuple[float, ...]) -> tuple[float, ...]:
    """Parse a comma separated backoff curve such as ``"1,5,15"``."""
    values: list[float] = []
    for token in raw.split(","):
        stripped = token.strip()
        if not stripped:
            continue
        try:
            parsed = float(stripped)
        except ValueError:
            continue
        if parsed > 0:
            values.append(parsed)
    if not values:
        return default
    return tuple(values)
