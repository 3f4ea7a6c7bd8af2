"""
keystone.config — YAML Configuration Loader
===========================================

``config.yaml`` carries **infrastructure-only** settings: the platform's
display name, the API port and the log level.  Everything that tunes the
engine itself (level table, capability rules, milestone deadlines, billing
windows) lives in the ``settings`` table and is read through
:class:`~keystone.engine.cache.ConfigCache`.

Usage::

    from keystone.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.platform_name)     # "Keystone"
    print(cfg.api_port)          # 8000
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import yaml

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True, slots=True)
class KeystoneConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    platform_name: str
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)


def load_config(path: str | Path = "config.yaml") -> KeystoneConfig:
    """Read *path* and return a :class:`KeystoneConfig`.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If ``platform_name`` is missing.
    ValueError
        If ``log_level`` is not a standard logging level name.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    log_level = str(raw.get("log_level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}, got {log_level!r}")

    return KeystoneConfig(
        platform_name=raw["platform_name"],
        api_host=str(raw.get("api_host", "0.0.0.0")),
        api_port=int(raw.get("api_port", 8000)),
        log_level=log_level,
    )
