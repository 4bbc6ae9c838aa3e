"""Persistent sbenv settings helpers."""

from __future__ import annotations

import json
import logging
import os
import shlex
from pathlib import Path
from typing import Any, Mapping

from platformdirs import user_data_dir
from pydantic import BaseModel

from sbenv.contracts import DAEMON_BIN_ENV_VAR, HOME_ENV_VAR

logger = logging.getLogger("sbenv.supervisor.settings")

SETTINGS_FILENAME = "config.json"
REGISTRY_FILENAME = "registry.json"
LOCK_FILENAME = "registry.lock"
ENVS_DIRNAME = "envs"

MIN_PORT = 1024
MAX_PORT = 65535


class SbenvSettings(BaseModel):
    home: Path
    base_port: int = 8000
    port_range: int = 1000
    daemon_command: list[str] = ["syftbox"]
    default_server_url: str = "https://syftbox.net"
    dev_server_url: str = "http://localhost:8080"
    start_grace_seconds: float = 2.0
    stop_timeout_seconds: float = 10.0
    kill_timeout_seconds: float = 5.0
    lock_timeout_seconds: float = 10.0
    http_probe_timeout_seconds: float = 1.0

    @property
    def registry_path(self) -> Path:
        return self.home / REGISTRY_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.home / LOCK_FILENAME

    @property
    def envs_dir(self) -> Path:
        return self.home / ENVS_DIRNAME


_TIMEOUT_KEYS = (
    "start_grace_seconds",
    "stop_timeout_seconds",
    "kill_timeout_seconds",
    "lock_timeout_seconds",
    "http_probe_timeout_seconds",
)


def default_settings() -> dict[str, Any]:
    defaults = SbenvSettings(home=Path("."))
    return defaults.model_dump(mode="json", exclude={"home"})


def validate_settings(settings: dict[str, Any]) -> dict[str, Any]:
    """Validate settings values and fill in defaults for missing keys."""
    if not isinstance(settings, dict):
        raise ValueError("settings must be object")
    validated = default_settings()

    base_port = int(settings.get("base_port", validated["base_port"]))
    if not MIN_PORT <= base_port <= MAX_PORT:
        raise ValueError(f"base_port must be between {MIN_PORT} and {MAX_PORT}")
    port_range = int(settings.get("port_range", validated["port_range"]))
    if port_range < 1:
        raise ValueError("port_range must be positive")
    validated["base_port"] = base_port
    validated["port_range"] = port_range

    daemon_command = settings.get("daemon_command", validated["daemon_command"])
    if isinstance(daemon_command, str):
        daemon_command = shlex.split(daemon_command)
    if not isinstance(daemon_command, list) or not daemon_command:
        raise ValueError("daemon_command must be non-empty list")
    validated["daemon_command"] = [str(part) for part in daemon_command]

    for key in ("default_server_url", "dev_server_url"):
        value = str(settings.get(key, validated[key])).strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"{key} must be an http(s) URL")
        validated[key] = value.rstrip("/")

    for key in _TIMEOUT_KEYS:
        value = float(settings.get(key, validated[key]))
        if value < 0:
            raise ValueError(f"{key} must not be negative")
        validated[key] = value
    return validated


def resolve_home(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    override = str(env.get(HOME_ENV_VAR, "")).strip()
    if override:
        return Path(override).expanduser()
    return Path(user_data_dir("sbenv"))


def load_settings(
    home: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> SbenvSettings:
    """Load settings from ``<home>/config.json`` or fall back to defaults."""
    env = os.environ if environ is None else environ
    root = home if home is not None else resolve_home(env)
    path = root / SETTINGS_FILENAME
    values = default_settings()
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            values = validate_settings(raw)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Ignoring unusable settings file %s: %s", path, exc)
    daemon_override = str(env.get(DAEMON_BIN_ENV_VAR, "")).strip()
    if daemon_override:
        values["daemon_command"] = shlex.split(daemon_override)
    return SbenvSettings(home=root, **values)


def save_settings(settings: dict[str, Any], home: Path) -> dict[str, Any]:
    """Validate and persist settings to disk."""
    validated = validate_settings(settings)
    path = home / SETTINGS_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(validated, indent=2), encoding="utf-8")
    return validated
