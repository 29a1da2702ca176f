from __future__ import annotations

import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import click

from toolchain_proxy.errors import ConfigError


PROG_NAME = "toolchain-proxy"
CONFIG_FILE_ENV = "TOOLCHAIN_PROXY_CONFIG"
LXC_PATH_ENV = "TOOLCHAIN_PROXY_LXC_PATH"
LXC_BIN_DIR_ENV = "TOOLCHAIN_PROXY_LXC_BIN_DIR"
BOOT_TIMEOUT_ENV = "TOOLCHAIN_PROXY_BOOT_TIMEOUT"
BOOT_ATTEMPTS_ENV = "TOOLCHAIN_PROXY_BOOT_ATTEMPTS"
BOOT_RETRY_DELAY_ENV = "TOOLCHAIN_PROXY_BOOT_RETRY_DELAY"
COORDINATION_DIR_ENV = "TOOLCHAIN_PROXY_COORDINATION_DIR"
LOG_LEVEL_ENV = "TOOLCHAIN_PROXY_LOG_LEVEL"
LOG_FILE_ENV = "TOOLCHAIN_PROXY_LOG_FILE"

DEFAULT_BOOT_TIMEOUT_SECONDS = 5.0
DEFAULT_BOOT_ATTEMPTS = 3
DEFAULT_BOOT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_COORDINATION_DIR = "/tmp"
DEFAULT_LOG_LEVEL = "warning"
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LOGGER = logging.getLogger("toolchain_proxy")
LOGGER.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class ProxySettings:
    lxc_path: Path | None = None
    lxc_command_dir: Path | None = None
    boot_timeout: float = DEFAULT_BOOT_TIMEOUT_SECONDS
    boot_attempts: int = DEFAULT_BOOT_ATTEMPTS
    boot_retry_delay: float = DEFAULT_BOOT_RETRY_DELAY_SECONDS
    coordination_dir: str = DEFAULT_COORDINATION_DIR
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Path | None = None
    extra_env: Mapping[str, str] = field(default_factory=dict)

    def lxc_command(self, name: str) -> str:
        if self.lxc_command_dir is None:
            return name
        return str(self.lxc_command_dir / name)


def _default_config_file(environ: Mapping[str, str]) -> Path:
    explicit = str(environ.get(CONFIG_FILE_ENV, "")).strip()
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".config" / PROG_NAME / "config.toml"


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeError) as exc:
        click.echo(f"Warning: unable to read {PROG_NAME} config {path}: {exc}", err=True)
        return {}

    try:
        parsed = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        click.echo(f"Warning: unable to parse {PROG_NAME} config {path}: {exc}", err=True)
        return {}
    return parsed


def _parse_float(value: Any, label: str, *, minimum: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}: {value!r} (expected a number)") from exc
    if parsed < minimum:
        raise ConfigError(f"Invalid {label}: {value!r} (must be >= {minimum:g})")
    return parsed


def _parse_int(value: Any, label: str, *, minimum: int) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid {label}: {value!r} (expected an integer)")
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid {label}: {value!r} (expected an integer)") from exc
    if parsed < minimum:
        raise ConfigError(f"Invalid {label}: {value!r} (must be >= {minimum})")
    return parsed


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return DEFAULT_LOG_LEVEL


def _parse_env_table(raw_value: object) -> dict[str, str]:
    if raw_value is None:
        return {}
    if not isinstance(raw_value, dict):
        raise ConfigError("Invalid [env] table in config (expected KEY = \"VALUE\" entries)")
    env: dict[str, str] = {}
    for key, value in raw_value.items():
        name = str(key).strip()
        if not name or any(ch.isspace() for ch in name) or "=" in name:
            raise ConfigError(f"Invalid environment variable name in config: {key!r}")
        if name == "HOME":
            continue
        env[name] = str(value)
    return env


def load_settings(
    environ: Mapping[str, str] | None = None,
    *,
    config_file: Path | None = None,
) -> ProxySettings:
    source = os.environ if environ is None else environ
    values = _read_config_file(config_file or _default_config_file(source))

    settings = ProxySettings()
    file_overrides: dict[str, Any] = {}
    if "lxc_path" in values:
        file_overrides["lxc_path"] = Path(str(values["lxc_path"])).expanduser()
    if "lxc_command_dir" in values:
        file_overrides["lxc_command_dir"] = Path(str(values["lxc_command_dir"])).expanduser()
    if "boot_timeout" in values:
        file_overrides["boot_timeout"] = _parse_float(values["boot_timeout"], "boot_timeout", minimum=0.0)
    if "boot_attempts" in values:
        file_overrides["boot_attempts"] = _parse_int(values["boot_attempts"], "boot_attempts", minimum=1)
    if "boot_retry_delay" in values:
        file_overrides["boot_retry_delay"] = _parse_float(
            values["boot_retry_delay"], "boot_retry_delay", minimum=0.0
        )
    if "coordination_dir" in values:
        file_overrides["coordination_dir"] = str(values["coordination_dir"])
    if "log_level" in values:
        file_overrides["log_level"] = _normalize_log_level(values["log_level"])
    if "log_file" in values:
        file_overrides["log_file"] = Path(str(values["log_file"])).expanduser()
    file_overrides["extra_env"] = _parse_env_table(values.get("env"))
    settings = replace(settings, **file_overrides)

    env_overrides: dict[str, Any] = {}
    lxc_path = str(source.get(LXC_PATH_ENV, "")).strip()
    if lxc_path:
        env_overrides["lxc_path"] = Path(lxc_path).expanduser()
    lxc_bin_dir = str(source.get(LXC_BIN_DIR_ENV, "")).strip()
    if lxc_bin_dir:
        env_overrides["lxc_command_dir"] = Path(lxc_bin_dir).expanduser()
    boot_timeout = str(source.get(BOOT_TIMEOUT_ENV, "")).strip()
    if boot_timeout:
        env_overrides["boot_timeout"] = _parse_float(boot_timeout, BOOT_TIMEOUT_ENV, minimum=0.0)
    boot_attempts = str(source.get(BOOT_ATTEMPTS_ENV, "")).strip()
    if boot_attempts:
        env_overrides["boot_attempts"] = _parse_int(boot_attempts, BOOT_ATTEMPTS_ENV, minimum=1)
    boot_retry_delay = str(source.get(BOOT_RETRY_DELAY_ENV, "")).strip()
    if boot_retry_delay:
        env_overrides["boot_retry_delay"] = _parse_float(boot_retry_delay, BOOT_RETRY_DELAY_ENV, minimum=0.0)
    coordination_dir = str(source.get(COORDINATION_DIR_ENV, "")).strip()
    if coordination_dir:
        env_overrides["coordination_dir"] = coordination_dir
    log_level = str(source.get(LOG_LEVEL_ENV, "")).strip()
    if log_level:
        env_overrides["log_level"] = _normalize_log_level(log_level)
    log_file = str(source.get(LOG_FILE_ENV, "")).strip()
    if log_file:
        env_overrides["log_file"] = Path(log_file).expanduser()
    return replace(settings, **env_overrides)


def configure_logging(level: str, log_file: Path | None = None) -> None:
    normalized = _normalize_log_level(level)
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            click.echo(f"Warning: unable to open log file {log_file}: {exc}", err=True)
            handler = logging.StreamHandler(sys.__stderr__)
    else:
        handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    for existing in list(LOGGER.handlers):
        LOGGER.removeHandler(existing)
        if not isinstance(existing, logging.NullHandler):
            existing.close()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.WARNING))
    LOGGER.propagate = False
