"""Translate a launch request into a declarative container configuration.

Host probing (environment variables, socket and device paths) is injected so
resolution stays a pure function of its inputs and can be tested without a
display server or sound card.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from pydantic import ValidationError

from cabinet.shared.enums import AudioMethod, DisplayServer
from cabinet.shared.exceptions import ConfigurationError
from cabinet.shared.models import (
    ContainerConfiguration,
    DeviceMapping,
    LaunchConfiguration,
    VolumeMount,
)

logger = logging.getLogger(__name__)

GAME_MOUNT = "/game"
HOST_INPUT_DEVICES_TARGET = "/tmp/host-input-devices"
SESSION_LABEL = "cabinet.session-id"
GAME_LABEL = "cabinet.game-id"

_PULSE_FALLBACK_DIRS = ("/run/user/1000/pulse", "/tmp/pulse-socket")
_JOYSTICKS = tuple(f"/dev/input/js{i}" for i in range(10))


def _is_nonempty_file(path: str) -> bool:
    try:
        return os.path.isfile(path) and os.path.getsize(path) > 0
    except OSError:
        return False


@dataclass(frozen=True, slots=True)
class ResolvedLaunch:
    container_config: ContainerConfiguration
    display_server: DisplayServer
    audio_method: AudioMethod


@dataclass(slots=True)
class _Fragment:
    """Mounts, devices and variables contributed by one host resource."""

    environment: dict[str, str]
    volumes: list[VolumeMount]
    devices: list[DeviceMapping]


def _fragment() -> _Fragment:
    return _Fragment(environment={}, volumes=[], devices=[])


class HostResourceResolver:
    """Builds ``ContainerConfiguration`` objects for runner sessions."""

    def __init__(
        self,
        *,
        default_image: str,
        x11_socket_dir: str = "/tmp/.X11-unix",
        pulse_sink: str = "",
        container_runtime_dir: str = "/run/user/1000",
        container_home: str = "/home/gameuser",
        environ: Mapping[str, str] | None = None,
        path_exists: Callable[[str], bool] = os.path.exists,
        is_nonempty_file: Callable[[str], bool] = _is_nonempty_file,
    ) -> None:
        self._default_image = default_image
        self._x11_socket_dir = x11_socket_dir
        self._pulse_sink = pulse_sink
        self._container_runtime_dir = container_runtime_dir
        self._container_home = container_home
        self._environ = environ if environ is not None else os.environ
        self._exists = path_exists
        self._is_nonempty_file = is_nonempty_file

    def resolve(self, game_id: str, session_id: str, configuration: LaunchConfiguration) -> ResolvedLaunch:
        """Resolve host resources for a launch.

        Raises:
            ConfigurationError: If the request is malformed or asks for a
                display server this host does not provide.
        """
        if configuration.game_path is not None and not self._exists(configuration.game_path):
            raise ConfigurationError(f"game path does not exist: {configuration.game_path}")

        display_server, display = self._resolve_display(configuration)
        audio_method, audio = self._resolve_audio(configuration.audio)
        devices = self._resolve_devices(configuration)

        environment: dict[str, str] = {
            "GAME_ID": game_id,
            "SESSION_ID": session_id,
            "DISPLAY_WIDTH": str(configuration.display.width),
            "DISPLAY_HEIGHT": str(configuration.display.height),
            "DISPLAY_REFRESH_RATE": str(configuration.display.refresh_rate),
        }
        environment.update(display.environment)
        environment.update(audio.environment)
        environment.update(configuration.environment)

        volumes: list[VolumeMount] = []
        if configuration.game_path is not None:
            volumes.append(VolumeMount(source=configuration.game_path, target=GAME_MOUNT, read_only=True))
        volumes.extend(display.volumes)
        volumes.extend(audio.volumes)
        volumes.extend(devices.volumes)
        volumes.extend(configuration.volumes)

        resources = configuration.resources
        if not configuration.gpu and resources.gpu_count != 0:
            resources = resources.model_copy(update={"gpu_count": 0})

        x11 = display_server is DisplayServer.X11
        try:
            container_config = ContainerConfiguration(
                image=configuration.image or self._default_image,
                command=configuration.command,
                environment=environment,
                volumes=tuple(volumes),
                ports=configuration.ports,
                resources=resources,
                network_mode=configuration.network_mode,
                devices=_dedupe_devices(display.devices + audio.devices + devices.devices),
                labels={SESSION_LABEL: session_id, GAME_LABEL: game_id},
                ipc_mode="host" if x11 else None,
                security_opt=("seccomp=unconfined",) if x11 else (),
            )
        except ValidationError as exc:
            raise ConfigurationError(f"invalid container configuration: {exc}") from exc

        logger.debug(
            "resolved session %s: display=%s audio=%s devices=%d volumes=%d",
            session_id,
            display_server.value,
            audio_method.value,
            len(container_config.devices),
            len(container_config.volumes),
        )
        return ResolvedLaunch(
            container_config=container_config,
            display_server=display_server,
            audio_method=audio_method,
        )

    # ── display ────────────────────────────────────────────────

    def _resolve_display(self, configuration: LaunchConfiguration) -> tuple[DisplayServer, _Fragment]:
        requested = configuration.display.method

        if requested is DisplayServer.HEADLESS:
            return DisplayServer.HEADLESS, _fragment()

        if requested in (None, DisplayServer.X11):
            x11 = self._x11()
            if x11 is not None:
                return DisplayServer.X11, x11
            if requested is DisplayServer.X11:
                raise ConfigurationError("x11 display requested but no X server is available")

        wayland = self._wayland()
        if wayland is not None:
            return DisplayServer.WAYLAND, wayland
        if requested is DisplayServer.WAYLAND:
            raise ConfigurationError("wayland display requested but no compositor socket is available")

        logger.info("no display server found on host, running headless")
        return DisplayServer.HEADLESS, _fragment()

    def _x11(self) -> _Fragment | None:
        display = self._environ.get("DISPLAY")
        if not display or not self._exists(self._x11_socket_dir):
            return None

        fragment = _fragment()
        fragment.environment["DISPLAY"] = display
        fragment.volumes.append(VolumeMount(source=self._x11_socket_dir, target="/tmp/.X11-unix"))

        xauthority = self._environ.get("XAUTHORITY") or f"{self._environ.get('HOME', '')}/.Xauthority"
        if self._is_nonempty_file(xauthority):
            target = f"{self._container_home}/.Xauthority"
            fragment.volumes.append(VolumeMount(source=xauthority, target=target, read_only=True))
            fragment.environment["XAUTHORITY"] = target
        return fragment

    def _wayland(self) -> _Fragment | None:
        wayland_display = self._environ.get("WAYLAND_DISPLAY")
        runtime_dir = self._environ.get("XDG_RUNTIME_DIR")
        if not wayland_display or not runtime_dir:
            return None
        socket = f"{runtime_dir.rstrip('/')}/{wayland_display}"
        if not self._exists(socket):
            return None

        fragment = _fragment()
        fragment.volumes.append(
            VolumeMount(source=socket, target=f"{self._container_runtime_dir}/{wayland_display}")
        )
        fragment.environment.update(
            {
                "WAYLAND_DISPLAY": wayland_display,
                "XDG_RUNTIME_DIR": self._container_runtime_dir,
                "QT_QPA_PLATFORM": "wayland",
                "GDK_BACKEND": "wayland",
                "SDL_VIDEODRIVER": "wayland",
            }
        )
        return fragment

    # ── audio ──────────────────────────────────────────────────

    def _resolve_audio(self, method: AudioMethod) -> tuple[AudioMethod, _Fragment]:
        if method is AudioMethod.NONE:
            return AudioMethod.NONE, _fragment()

        if method is AudioMethod.ALSA:
            if not self._exists("/dev/snd"):
                logger.warning("alsa requested but /dev/snd is missing, audio disabled")
                return AudioMethod.NONE, _fragment()
            fragment = _fragment()
            fragment.devices.append(DeviceMapping(host="/dev/snd", container="/dev/snd"))
            return AudioMethod.ALSA, fragment

        socket_dir = next((d for d in self._pulse_candidates() if self._exists(d)), None)
        if socket_dir is None:
            logger.warning("no pulseaudio socket found on host, audio disabled")
            return AudioMethod.NONE, _fragment()

        container_pulse = f"{self._container_runtime_dir}/pulse"
        fragment = _fragment()
        fragment.volumes.append(VolumeMount(source=socket_dir, target=container_pulse))
        fragment.environment["PULSE_SERVER"] = f"unix:{container_pulse}/native"

        home = self._environ.get("HOME")
        cookie = f"{home}/.config/pulse/cookie" if home else None
        if cookie and self._is_nonempty_file(cookie):
            target = f"{self._container_home}/.config/pulse/cookie"
            fragment.volumes.append(VolumeMount(source=cookie, target=target, read_only=True))
            fragment.environment["PULSE_COOKIE"] = target
        if self._pulse_sink:
            fragment.environment["PULSE_SINK"] = self._pulse_sink
        return AudioMethod.PULSEAUDIO, fragment

    def _pulse_candidates(self) -> list[str]:
        candidates: list[str] = []
        runtime_dir = self._environ.get("XDG_RUNTIME_DIR")
        if runtime_dir:
            candidates.append(f"{runtime_dir.rstrip('/')}/pulse")
        candidates.extend(d for d in _PULSE_FALLBACK_DIRS if d not in candidates)
        return candidates

    # ── devices ────────────────────────────────────────────────

    def _resolve_devices(self, configuration: LaunchConfiguration) -> _Fragment:
        fragment = _fragment()

        if configuration.gpu and self._exists("/dev/dri"):
            fragment.devices.append(DeviceMapping(host="/dev/dri", container="/dev/dri"))

        if not configuration.input_devices:
            return fragment

        if self._exists("/dev/input"):
            fragment.devices.append(DeviceMapping(host="/dev/input", container="/dev/input"))
        if self._exists("/proc/bus/input/devices"):
            fragment.volumes.append(
                VolumeMount(source="/proc/bus/input/devices", target=HOST_INPUT_DEVICES_TARGET, read_only=True)
            )
        if self._exists("/run/udev"):
            fragment.volumes.append(VolumeMount(source="/run/udev", target="/run/udev", read_only=True))
        for joystick in _JOYSTICKS:
            if self._exists(joystick):
                fragment.devices.append(DeviceMapping(host=joystick, container=joystick))
        if self._exists("/dev/uinput"):
            fragment.devices.append(DeviceMapping(host="/dev/uinput", container="/dev/uinput"))
        return fragment


def _dedupe_devices(devices: list[DeviceMapping]) -> tuple[DeviceMapping, ...]:
    seen: set[str] = set()
    unique: list[DeviceMapping] = []
    for device in devices:
        if device.host in seen:
            continue
        seen.add(device.host)
        unique.append(device)
    return tuple(unique)
