from __future__ import annotations

import enum
import json
import logging
import math
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Mapping, Sequence, Union

from toolchain_proxy.config import ProxySettings
from toolchain_proxy.errors import (
    AttachError,
    BootError,
    BootTimeoutError,
    ContainerNotFoundError,
    ResolutionError,
    UnsupportedStateError,
)
from toolchain_proxy.identity import ContainerIdentity


LOGGER = logging.getLogger(__name__)

LXC_CONFIG_FILE_NAME = "config"
METADATA_FILE_NAME = "config-lm"
ROOTFS_CONFIG_KEYS = ("lxc.rootfs.path", "lxc.rootfs")
ROOTFS_DIR_BACKEND_PREFIX = "dir:"

StreamTarget = Union[int, IO[Any], None]


class ContainerState(enum.Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    ABORTING = "ABORTING"
    FREEZING = "FREEZING"
    FROZEN = "FROZEN"
    THAWED = "THAWED"


# Transitional states settle into these before a start is attempted.
SETTLED_STATE_FOR = {
    ContainerState.STARTING: ContainerState.RUNNING,
    ContainerState.STOPPING: ContainerState.STOPPED,
    ContainerState.FREEZING: ContainerState.FROZEN,
}
UNSUPPORTED_BOOT_STATES = {
    ContainerState.ABORTING,
    ContainerState.THAWED,
    ContainerState.FROZEN,
}


@dataclass(frozen=True)
class ContainerMetadata:
    name: str
    architecture: str = ""
    distribution: str = ""
    version: str = ""
    updates_enabled: bool = False

    @classmethod
    def from_json(cls, name: str, payload: Any) -> "ContainerMetadata":
        if not isinstance(payload, dict):
            raise ResolutionError(f"Unable to parse container config file for {name}: expected a JSON object")
        return cls(
            name=name,
            architecture=str(payload.get("architecture") or ""),
            distribution=str(payload.get("distribution") or ""),
            version=str(payload.get("version") or ""),
            updates_enabled=payload.get("updatesEnabled") is True,
        )


def wait_status_from_returncode(returncode: int) -> int:
    """Re-encode a ``Popen.returncode`` as the POSIX wait status it was decoded from."""
    if returncode < 0:
        return (-returncode) & 0x7F
    return (returncode & 0xFF) << 8


def _read_lxc_config(config_path: Path) -> dict[str, str]:
    try:
        raw = config_path.read_text(encoding="utf-8")
    except (OSError, UnicodeError) as exc:
        raise ResolutionError(f"Unable to read container config {config_path}: {exc}") from exc

    values: dict[str, str] = {}
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        values[key.strip()] = value.strip()
    return values


class ContainerHandle:
    def __init__(
        self,
        name: str,
        lxc_path: Path,
        metadata: ContainerMetadata,
        settings: ProxySettings | None = None,
    ) -> None:
        self.name = name
        self.lxc_path = lxc_path
        self.metadata = metadata
        self.settings = settings or ProxySettings()

    @property
    def container_dir(self) -> Path:
        return self.lxc_path / self.name

    @property
    def config_path(self) -> Path:
        return self.container_dir / LXC_CONFIG_FILE_NAME

    @property
    def distribution(self) -> str:
        return self.metadata.distribution

    @classmethod
    def load(cls, name: str, lxc_path: Path, settings: ProxySettings | None = None) -> "ContainerHandle":
        container_dir = lxc_path / name
        if not (container_dir / LXC_CONFIG_FILE_NAME).is_file():
            raise ContainerNotFoundError(f"Container {name} does not exist in {lxc_path}")

        metadata_path = container_dir / METADATA_FILE_NAME
        try:
            payload = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeError) as exc:
            raise ResolutionError(f"Unable to read container config file {metadata_path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ResolutionError(f"Unable to parse container config file {metadata_path}: {exc}") from exc

        return cls(name, lxc_path, ContainerMetadata.from_json(name, payload), settings)

    def rootfs(self) -> str:
        values = _read_lxc_config(self.config_path)
        for key in ROOTFS_CONFIG_KEYS:
            value = values.get(key, "")
            if not value:
                continue
            if value.startswith(ROOTFS_DIR_BACKEND_PREFIX):
                value = value[len(ROOTFS_DIR_BACKEND_PREFIX):]
            return value.rstrip("/") or "/"
        raise ResolutionError(f"Container {self.name} has no rootfs configured in {self.config_path}")

    def _lxc_args(self, tool: str) -> list[str]:
        return [self.settings.lxc_command(tool), "-P", str(self.lxc_path), "-n", self.name]

    def state(self) -> ContainerState:
        cmd = [*self._lxc_args("lxc-info"), "-s", "-H"]
        try:
            result = subprocess.run(cmd, check=False, text=True, capture_output=True)
        except OSError as exc:
            raise BootError(f"Unable to query state of container {self.name}: {exc}") from exc
        if result.returncode != 0:
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            raise BootError(f"Unable to query state of container {self.name}: {detail}")
        raw = result.stdout.strip().upper()
        try:
            return ContainerState(raw)
        except ValueError as exc:
            raise BootError(f"Container {self.name} reported an unknown state: {raw!r}") from exc

    def is_running(self) -> bool:
        return self.state() is ContainerState.RUNNING

    def wait_for(self, state: ContainerState, timeout: float) -> bool:
        seconds = max(1, math.ceil(timeout))
        cmd = [*self._lxc_args("lxc-wait"), "-s", state.value, "-t", str(seconds)]
        try:
            result = subprocess.run(cmd, check=False, text=True, capture_output=True)
        except OSError as exc:
            raise BootError(f"Unable to wait for container {self.name}: {exc}") from exc
        return result.returncode == 0

    def start(self) -> None:
        cmd = self._lxc_args("lxc-start")
        try:
            result = subprocess.run(cmd, check=False, text=True, capture_output=True)
        except OSError as exc:
            raise BootError(f"Error while starting the container {self.name}: {exc}") from exc
        if result.returncode != 0:
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            raise BootError(f"Error while starting the container {self.name}: {detail}")

    def _boot_once(self, timeout: float) -> None:
        state = self.state()
        settled = SETTLED_STATE_FOR.get(state)
        if settled is not None:
            LOGGER.debug("Container %s is %s, waiting for %s.", self.name, state.value, settled.value)
            self.wait_for(settled, timeout)
            state = self.state()

        if state in UNSUPPORTED_BOOT_STATES:
            raise UnsupportedStateError(f"Container {self.name} is in unsupported state {state.value}")
        if state is ContainerState.RUNNING:
            return

        LOGGER.debug("Starting container %s.", self.name)
        self.start()
        if not self.wait_for(ContainerState.RUNNING, timeout):
            raise BootTimeoutError(f"Timed out after {timeout:g}s waiting for container {self.name} to run")

    def boot_if_needed(
        self,
        timeout: float | None = None,
        *,
        attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        timeout = self.settings.boot_timeout if timeout is None else timeout
        attempts = max(1, self.settings.boot_attempts if attempts is None else attempts)
        retry_delay = self.settings.boot_retry_delay if retry_delay is None else retry_delay

        for attempt in range(1, attempts + 1):
            try:
                self._boot_once(timeout)
                return
            except UnsupportedStateError:
                raise
            except BootError as exc:
                LOGGER.warning(
                    "Boot attempt %d/%d for container %s failed: %s", attempt, attempts, self.name, exc.message
                )
                if attempt == attempts:
                    raise
            time.sleep(retry_delay)

    def attach_command(
        self,
        command: Sequence[str],
        *,
        identity: ContainerIdentity | None = None,
        env: Mapping[str, str] | None = None,
        clear_env: bool = False,
    ) -> list[str]:
        cmd = self._lxc_args("lxc-attach")
        if clear_env:
            cmd.append("--clear-env")
        if identity is not None:
            cmd.extend(["--uid", str(identity.uid), "--gid", str(identity.gid)])
        for key, value in (env or {}).items():
            cmd.extend(["--set-var", f"{key}={value}"])
        cmd.append("--")
        cmd.extend(str(part) for part in command)
        return cmd

    def attach_run(
        self,
        command: Sequence[str],
        *,
        identity: ContainerIdentity | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        clear_env: bool = False,
        stdin: StreamTarget = None,
        stdout: StreamTarget = None,
        stderr: StreamTarget = None,
    ) -> int:
        """Run ``command`` inside the container and return its POSIX wait status.

        The attached process gets its own session so terminal-generated signals
        reach only the proxy; forwarding them is the caller's job. Each call is
        an independent ``lxc-attach`` process, so a second call may run while
        the first one is still blocked.
        """
        cmd = self.attach_command(command, identity=identity, env=env, clear_env=clear_env)
        LOGGER.debug("Attaching to container %s: %s", self.name, cmd)
        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(cwd) if cwd else None,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            raise AttachError(f"Unable to attach to container {self.name}: {exc}") from exc
        returncode = process.wait()
        LOGGER.debug("Attached command in container %s returned %d.", self.name, returncode)
        return wait_status_from_returncode(returncode)
