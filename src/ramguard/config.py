"""Configuration loading for ramguard."""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

WEBHOOK_ENV = "RAMGUARD_WEBHOOK_URL"

PROCESS_SOURCES = ("psutil", "ps")
PROBE_SOURCES = ("proc", "psutil")

# nested section -> {yaml key: field name}
_SECTIONS = {
    "ram": {
        "threshold": "threshold",
        "monitor_interval_ms": "monitor_interval_ms",
        "cooldown_base_ms": "cooldown_base_ms",
        "enable_auto_kill": "enable_auto_kill",
        "probe_source": "probe_source",
    },
    "processes": {
        "protected": "protected_process_names",
        "min_memory_mb": "min_process_memory_mb",
        "source": "process_source",
    },
    "database": {"path": "database_path"},
    "logging": {"level": "log_level"},
    "notify": {"webhook_url": "webhook_url"},
}


class ConfigError(Exception):
    """Raised when a configuration file is unreadable or invalid."""


@dataclass(slots=True)
class WatchdogConfig:
    """Runtime configuration."""

    threshold: float = 90.0  # percent
    monitor_interval_ms: int = 5000
    cooldown_base_ms: int = 120_000
    enable_auto_kill: bool = False
    protected_process_names: list[str] = field(default_factory=lambda: ["systemd", "dbus-daemon"])
    min_process_memory_mb: float = 100.0
    database_path: str = "./data/activity.db"
    webhook_url: str | None = None
    log_level: str = "info"
    process_source: str = "psutil"
    probe_source: str = "proc"

    def validate(self) -> None:
        if not 0 < self.threshold < 100:
            raise ConfigError(f"threshold must be between 0 and 100, got {self.threshold}")
        if self.monitor_interval_ms <= 0:
            raise ConfigError("monitor_interval_ms must be positive")
        if self.cooldown_base_ms < 0:
            raise ConfigError("cooldown_base_ms must not be negative")
        if self.min_process_memory_mb < 0:
            raise ConfigError("min_process_memory_mb must not be negative")
        if self.process_source not in PROCESS_SOURCES:
            raise ConfigError(f"process_source must be one of {PROCESS_SOURCES}")
        if self.probe_source not in PROBE_SOURCES:
            raise ConfigError(f"probe_source must be one of {PROBE_SOURCES}")

    def as_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _flatten(data: dict[str, Any]) -> dict[str, Any]:
    """Accept both the nested section layout and flat field names."""
    known = {f.name for f in fields(WatchdogConfig)}
    flat: dict[str, Any] = {}
    for key, value in data.items():
        if key in _SECTIONS:
            if not isinstance(value, dict):
                raise ConfigError(f"section '{key}' must be a mapping")
            for sub_key, sub_value in value.items():
                name = _SECTIONS[key].get(sub_key)
                if name is None:
                    raise ConfigError(f"unknown option '{key}.{sub_key}'")
                flat[name] = sub_value
        elif key in known:
            flat[key] = value
        else:
            raise ConfigError(f"unknown option '{key}'")
    return flat


def _coerce(flat: dict[str, Any]) -> dict[str, Any]:
    try:
        for name in ("threshold", "min_process_memory_mb"):
            if name in flat:
                flat[name] = float(flat[name])
        for name in ("monitor_interval_ms", "cooldown_base_ms"):
            if name in flat:
                flat[name] = int(flat[name])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid numeric option: {exc}") from exc

    if "enable_auto_kill" in flat and not isinstance(flat["enable_auto_kill"], bool):
        raise ConfigError("enable_auto_kill must be true or false")
    if "protected_process_names" in flat:
        names = flat["protected_process_names"]
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise ConfigError("protected process names must be a list of strings")
    return flat


def load_config(path: str | Path | None = None) -> WatchdogConfig:
    """
    Load configuration from a YAML file.

    A missing file yields the defaults. The webhook URL may be overridden
    with the RAMGUARD_WEBHOOK_URL environment variable.

    Raises:
        ConfigError: If the file cannot be parsed or holds invalid values.
    """
    data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            try:
                with config_path.open("r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as exc:
                raise ConfigError(f"cannot read {config_path}: {exc}") from exc
            if not isinstance(data, dict):
                raise ConfigError(f"{config_path} must contain a mapping")
        else:
            logger.warning("Config file %s not found, using defaults", config_path)

    config = WatchdogConfig(**_coerce(_flatten(data)))
    env_url = os.environ.get(WEBHOOK_ENV)
    if env_url:
        config.webhook_url = env_url
    config.validate()
    return config
