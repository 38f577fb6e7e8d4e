"""Static configuration for the gateway server and the presence client."""
from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from heartgate.errors import ConfigError

DEFAULT_PORT = "2884"
HEARTBEAT = b"!\n"

LOG_LEVELS: Dict[str, int] = {"error": 0, "info": 1, "debug": 2}


@dataclass(slots=True)
class ServerConfig:
    """Settings for :class:`heartgate.server.EventLoop`."""

    port: str = DEFAULT_PORT
    host: Optional[str] = None
    drop_after: float = 10.0
    backlog: int = 10
    poll_interval: float = 1.0
    read_size: int = 128
    log_level: str = "debug"
    log_file: Optional[str] = "auth.log"
    allow_hook: Optional[str] = "/usr/local/sbin/ip_allow"
    revoke_hook: Optional[str] = "/usr/local/sbin/ip_block"
    audit_log: Optional[str] = None
    revoke_on_shutdown: bool = False

    def __post_init__(self) -> None:
        self.port = str(self.port)
        self.log_level = normalize_level(self.log_level)
        self.allow_hook = self.allow_hook or None
        self.revoke_hook = self.revoke_hook or None
        _require_positive("drop_after", self.drop_after)
        _require_positive("poll_interval", self.poll_interval)
        _require_count("backlog", self.backlog)
        _require_count("read_size", self.read_size)


@dataclass(slots=True)
class ClientConfig:
    """Settings for :class:`heartgate.supervisor.ConnectionSupervisor`."""

    host: str = ""
    port: str = DEFAULT_PORT
    interval: float = 5.0
    read_size: int = 100
    log_level: str = "info"
    log_file: Optional[str] = None
    audit_log: Optional[str] = None

    def __post_init__(self) -> None:
        self.port = str(self.port)
        self.log_level = normalize_level(self.log_level)
        _require_positive("interval", self.interval)
        _require_count("read_size", self.read_size)


def normalize_level(level: Union[str, int]) -> str:
    """Accept ``error``/``info``/``debug`` or their numeric forms 0-2."""
    if isinstance(level, bool):
        raise ConfigError(f"invalid log level: {level!r}")
    if isinstance(level, int) or (isinstance(level, str) and level.strip().isdigit()):
        number = int(level)
        for name, value in LOG_LEVELS.items():
            if value == number:
                return name
        raise ConfigError(f"invalid log level: {level!r}")
    if isinstance(level, str) and level.strip().lower() in LOG_LEVELS:
        return level.strip().lower()
    raise ConfigError(f"invalid log level: {level!r}")


def _require_positive(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")


def _require_count(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    _require_positive(name, value)


def load_config_file(path: Union[str, Path, None]) -> Dict[str, Any]:
    if path is None:
        return {}
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid config JSON in {path}: {exc}") from exc
    if not isinstance(value, dict):
        raise ConfigError("config file must hold a JSON object")
    return value


def build_config(cls, *layers: Optional[Mapping[str, Any]]):
    """Merge mappings over ``cls`` defaults; later layers win, ``None`` values are skipped."""
    known = {f.name for f in fields(cls)}
    merged: Dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        unknown = sorted(set(layer) - known)
        if unknown:
            raise ConfigError(f"unknown {cls.__name__} option(s): {', '.join(unknown)}")
        merged.update({key: value for key, value in layer.items() if value is not None})
    try:
        return cls(**merged)
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc


__all__ = [
    "ServerConfig",
    "ClientConfig",
    "DEFAULT_PORT",
    "HEARTBEAT",
    "LOG_LEVELS",
    "normalize_level",
    "load_config_file",
    "build_config",
]
