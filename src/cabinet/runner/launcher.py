"""Runner container management implementation using Docker SDK."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, cast

import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import DeviceRequest

import docker
from cabinet.runner.interfaces import ContainerState
from cabinet.shared.exceptions import LaunchError
from cabinet.shared.models import ContainerConfiguration, ResourceUsage

logger = logging.getLogger(__name__)

# Docker answers 304 when stopping a container that is already stopped
_NOT_MODIFIED = 304

# docker-py lets transport failures from requests escape unwrapped
_RUNTIME_ERRORS = (DockerException, requests.exceptions.RequestException)


class DockerLauncher:
    """Docker-based implementation of the ContainerLauncher protocol.

    A pure adapter: it owns no session state and never retries.
    """

    def __init__(self, client: Any | None = None) -> None:
        self._docker: Any | None = client

    def _client(self) -> Any:
        if self._docker is None:
            try:
                self._docker = cast(Any, docker).from_env()
            except DockerException as exc:
                raise LaunchError(f"container runtime unreachable: {exc}") from exc
        return self._docker

    async def start(self, configuration: ContainerConfiguration, *, name: str) -> str:
        """Start a detached container for a runner session.

        Raises:
            LaunchError: If the runtime is unreachable, the image is missing
                or the configuration is rejected.
        """
        loop = asyncio.get_running_loop()
        kwargs = run_kwargs(configuration, name=name)
        try:
            container = await loop.run_in_executor(
                None,
                partial(self._client().containers.run, configuration.image, **kwargs),
            )
        except ImageNotFound as exc:
            raise LaunchError(f"image {configuration.image} not found: {exc}") from exc
        except APIError as exc:
            raise LaunchError(f"failed to start container {name}: {exc}") from exc
        except _RUNTIME_ERRORS as exc:
            raise LaunchError(f"container runtime unreachable: {exc}") from exc

        cid = container.id
        logger.info("started container %s (%s) from %s", name, cid[:12], configuration.image)
        return cid

    async def stop(self, container_id: str, *, timeout: float) -> None:
        """Stop and force-remove a container. Missing containers are fine."""
        loop = asyncio.get_running_loop()
        client = self._client()
        try:
            container = await loop.run_in_executor(None, partial(client.containers.get, container_id))
        except NotFound:
            logger.info("container %s already gone", container_id[:12])
            return
        except APIError as exc:
            raise LaunchError(f"failed to look up container {container_id[:12]}: {exc}") from exc
        except _RUNTIME_ERRORS as exc:
            raise LaunchError(f"container runtime unreachable: {exc}") from exc

        try:
            await loop.run_in_executor(None, partial(container.stop, timeout=max(int(timeout), 0)))
        except NotFound:
            logger.info("container %s vanished while stopping", container_id[:12])
            return
        except APIError as exc:
            if getattr(exc, "status_code", None) != _NOT_MODIFIED:
                raise LaunchError(f"failed to stop container {container_id[:12]}: {exc}") from exc
            logger.debug("container %s was already stopped", container_id[:12])
        except _RUNTIME_ERRORS as exc:
            raise LaunchError(f"container runtime unreachable: {exc}") from exc

        try:
            await loop.run_in_executor(None, partial(container.remove, force=True))
        except NotFound:
            pass
        except APIError as exc:
            raise LaunchError(f"failed to remove container {container_id[:12]}: {exc}") from exc
        except _RUNTIME_ERRORS as exc:
            raise LaunchError(f"container runtime unreachable: {exc}") from exc
        logger.info("stopped container %s", container_id[:12])

    async def inspect(self, container_id: str) -> ContainerState | None:
        loop = asyncio.get_running_loop()
        try:
            container = await loop.run_in_executor(None, partial(self._client().containers.get, container_id))
        except NotFound:
            return None
        except _RUNTIME_ERRORS as exc:
            raise LaunchError(f"failed to inspect container {container_id[:12]}: {exc}") from exc

        state = container.attrs.get("State", {})
        exit_code = state.get("ExitCode")
        return ContainerState(
            status=container.status,
            running=bool(state.get("Running", container.status == "running")),
            exit_code=exit_code if container.status in ("exited", "dead") else None,
        )

    async def stats(self, container_id: str) -> ResourceUsage | None:
        loop = asyncio.get_running_loop()
        try:
            container = await loop.run_in_executor(None, partial(self._client().containers.get, container_id))
            raw = await loop.run_in_executor(None, partial(container.stats, stream=False))
        except NotFound:
            return None
        except _RUNTIME_ERRORS as exc:
            logger.debug("stats unavailable for %s: %s", container_id[:12], exc)
            return None
        return usage_from_stats(raw)


def run_kwargs(configuration: ContainerConfiguration, *, name: str) -> dict[str, Any]:
    """Translate a ContainerConfiguration into ``containers.run`` arguments."""
    kwargs: dict[str, Any] = {
        "name": name,
        "detach": True,
        "environment": dict(configuration.environment),
        "labels": dict(configuration.labels),
        "network_mode": configuration.network_mode.value,
    }
    if configuration.command is not None:
        kwargs["command"] = list(configuration.command)
    if configuration.volumes:
        kwargs["volumes"] = {
            v.source: {"bind": v.target, "mode": "ro" if v.read_only else "rw"} for v in configuration.volumes
        }
    if configuration.ports:
        kwargs["ports"] = {f"{p.container}/{p.protocol}": p.host for p in configuration.ports}
    if configuration.devices:
        kwargs["devices"] = [f"{d.host}:{d.container}:{d.permissions}" for d in configuration.devices]
    if configuration.ipc_mode:
        kwargs["ipc_mode"] = configuration.ipc_mode
    if configuration.security_opt:
        kwargs["security_opt"] = list(configuration.security_opt)

    resources = configuration.resources
    if resources.cpu is not None:
        kwargs["nano_cpus"] = int(resources.cpu * 1e9)
    if resources.memory_gb is not None:
        kwargs["mem_limit"] = f"{int(resources.memory_gb * 1024)}m"
    if resources.gpu_count != 0:
        kwargs["device_requests"] = [DeviceRequest(count=resources.gpu_count, capabilities=[["gpu"]])]
    return kwargs


def usage_from_stats(raw: dict[str, Any]) -> ResourceUsage:
    """Build a ResourceUsage snapshot from a one-shot ``docker stats`` payload."""
    cpu_stats = raw.get("cpu_stats", {})
    precpu = raw.get("precpu_stats", {})
    cpu_delta = cpu_stats.get("cpu_usage", {}).get("total_usage", 0) - precpu.get("cpu_usage", {}).get(
        "total_usage", 0
    )
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    online = cpu_stats.get("online_cpus") or len(cpu_stats.get("cpu_usage", {}).get("percpu_usage") or []) or 1
    cpu_percent = (cpu_delta / system_delta) * online * 100.0 if cpu_delta > 0 and system_delta > 0 else 0.0

    networks = raw.get("networks") or {}
    return ResourceUsage(
        cpu_percent=round(cpu_percent, 2),
        memory_bytes=int(raw.get("memory_stats", {}).get("usage", 0)),
        network_rx_bytes=sum(int(n.get("rx_bytes", 0)) for n in networks.values()),
        network_tx_bytes=sum(int(n.get("tx_bytes", 0)) for n in networks.values()),
    )
