"""Protocol interfaces for runner dependency injection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from cabinet.shared.models import ContainerConfiguration, ResourceUsage


@dataclass(frozen=True, slots=True)
class ContainerState:
    """Runtime-reported state of one container."""

    status: str
    running: bool
    exit_code: int | None = None


@runtime_checkable
class ContainerLauncher(Protocol):
    """Protocol for starting and stopping runner containers."""

    async def start(self, configuration: ContainerConfiguration, *, name: str) -> str:
        """Start a detached container.

        Args:
            configuration: Fully resolved container configuration.
            name: Container name, unique per session.

        Returns:
            Runtime-assigned container id.

        Raises:
            LaunchError: If the runtime is unreachable or rejects the configuration.
        """
        ...

    async def stop(self, container_id: str, *, timeout: float) -> None:
        """Stop and remove a container.

        Idempotent: unknown or already stopped containers succeed silently.

        Raises:
            LaunchError: If the runtime fails while stopping.
        """
        ...

    async def inspect(self, container_id: str) -> ContainerState | None:
        """Return the container state, or None if it no longer exists."""
        ...

    async def stats(self, container_id: str) -> ResourceUsage | None:
        """Return a resource snapshot, or None if it is unavailable."""
        ...
