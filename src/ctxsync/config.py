"""Explicit configuration object shared by the client, server and CLI."""

from __future__ import annotations

import copy
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "TRACE",
    "ClientSettings",
    "ConfigError",
    "ModelSettings",
    "ServerSettings",
    "Settings",
    "load_settings",
    "write_default_config",
]

DEFAULT_CONFIG_NAME = "ctxsync.yaml"
DEFAULT_BASE_URL = "https://api.openai.com/v1/responses"

# Finer than DEBUG; used for per-file parse chatter.
TRACE = 5

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_ENV_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "server": {
        "host": "localhost",
        "port": 8000,
        "path": "/data",
    },
    "client": {
        "client_id": "",
        "root": ".",
        "ignore_file": ".ctxignore",
    },
    "model": {
        "name": "gpt-5-mini",
        "base_url": DEFAULT_BASE_URL,
        "api_key": "",
        "timeout": 120,
        "temperature": 0.8,
        "max_attempts": 3,
        "retry_delay": 0.5,
        "offline": False,
    },
    "logging": {
        "level": "info",
    },
    "debug": {
        "snapshot_path": "",
    },
}


class ConfigError(ValueError):
    """Raised when the configuration file cannot be parsed."""


@dataclass(slots=True)
class ServerSettings:
    """Where the server listens and which path carries session traffic."""

    host: str = "localhost"
    port: int = 8000
    path: str = "/data"

    def url(self) -> str:
        """Return the WebSocket URL clients connect to."""
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"ws://{self.host}:{self.port}{path}"


@dataclass(slots=True)
class ClientSettings:
    """Client-side snapshot and identity settings."""

    client_id: str = ""
    root: Path = field(default_factory=lambda: Path("."))
    ignore_file: str = ".ctxignore"

    def ignore_path(self) -> Path:
        """Return the absolute path of the ignore-pattern file."""
        candidate = Path(self.ignore_file)
        if candidate.is_absolute():
            return candidate
        return self.root / candidate


@dataclass(slots=True)
class ModelSettings:
    """Model backend selection and call options."""

    name: str = "gpt-5-mini"
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    timeout: float = 120.0
    temperature: float = 0.8
    max_attempts: int = 3
    retry_delay: float = 0.5
    offline: bool = False


@dataclass(slots=True)
class Settings:
    """Top-level configuration passed explicitly to every component."""

    server: ServerSettings = field(default_factory=ServerSettings)
    client: ClientSettings = field(default_factory=ClientSettings)
    model: ModelSettings = field(default_factory=ModelSettings)
    log_level: str = "info"
    debug_snapshot_path: Optional[Path] = None

    def resolved_log_level(self) -> int:
        """Return the numeric log level, honouring the ``CTX_LOG`` override."""
        override = os.getenv("CTX_LOG")
        if override:
            level = _ENV_LEVELS.get(override.strip().lower())
            if level is not None:
                return level
        return _ENV_LEVELS.get(self.log_level.strip().lower(), logging.INFO)

    def build_logger(self, name: str = "ctxsync") -> logging.Logger:
        """Configure and return the logger handed to sessions and builders."""
        logging.addLevelName(TRACE, "TRACE")
        logger = logging.getLogger(name)
        logger.setLevel(self.resolved_log_level())
        if not any(getattr(handler, "_ctxsync", False) for handler in logger.handlers):
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            handler._ctxsync = True  # type: ignore[attr-defined]
            logger.addHandler(handler)
        return logger

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, base_path: Optional[Path] = None) -> "Settings":
        """Build settings from a parsed configuration mapping."""
        base = base_path if base_path is not None else Path.cwd()

        server_cfg = _section(data, "server")
        client_cfg = _section(data, "client")
        model_cfg = _section(data, "model")
        logging_cfg = _section(data, "logging")
        debug_cfg = _section(data, "debug")

        server = ServerSettings(
            host=str(server_cfg.get("host") or "localhost"),
            port=_positive_int(server_cfg.get("port"), 8000),
            path=str(server_cfg.get("path") or "/data"),
        )

        root_value = client_cfg.get("root") or "."
        root = Path(str(root_value))
        if not root.is_absolute():
            root = (base / root).resolve()
        client = ClientSettings(
            client_id=str(client_cfg.get("client_id") or ""),
            root=root,
            ignore_file=str(client_cfg.get("ignore_file") or ".ctxignore"),
        )

        model = ModelSettings(
            name=str(model_cfg.get("name") or "gpt-5-mini"),
            base_url=str(model_cfg.get("base_url") or DEFAULT_BASE_URL),
            api_key=str(model_cfg.get("api_key") or ""),
            timeout=_positive_float(model_cfg.get("timeout"), 120.0),
            temperature=_float(model_cfg.get("temperature"), 0.8),
            max_attempts=_positive_int(model_cfg.get("max_attempts"), 3),
            retry_delay=_float(model_cfg.get("retry_delay"), 0.5),
            offline=bool(model_cfg.get("offline", False)),
        )

        snapshot_value = debug_cfg.get("snapshot_path")
        snapshot_path: Optional[Path] = None
        if isinstance(snapshot_value, str) and snapshot_value.strip():
            snapshot_path = Path(snapshot_value.strip())
            if not snapshot_path.is_absolute():
                snapshot_path = base / snapshot_path

        return cls(
            server=server,
            client=client,
            model=model,
            log_level=str(logging_cfg.get("level") or "info"),
            debug_snapshot_path=snapshot_path,
        )


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load settings from YAML; a missing file yields the defaults."""
    if config_path is None or not config_path.exists():
        base = config_path.parent if config_path is not None else None
        return Settings.from_mapping(DEFAULT_CONFIG_TEMPLATE, base_path=base)

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
    except OSError as error:
        raise ConfigError(f"Failed to read config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    merged = _merge(copy.deepcopy(DEFAULT_CONFIG_TEMPLATE), data)
    return Settings.from_mapping(merged, base_path=config_path.parent.resolve())


def write_default_config(config_path: Path) -> None:
    """Persist the default configuration template with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(copy.deepcopy(DEFAULT_CONFIG_TEMPLATE), handle, sort_keys=False)


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            base[key] = _merge(current, value)
        else:
            base[key] = value
    return base


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name)
    if isinstance(value, Mapping):
        return value
    return {}


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int) and value > 0:
        return value
    return default


def _positive_float(value: Any, default: float) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    return default


def _float(value: Any, default: float) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
        return float(value)
    return default
