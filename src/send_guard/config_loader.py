# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service settings from an INI file with environment variable fallbacks.

The file defaults to ``config.ini`` in the working directory and can be
pointed elsewhere with ``SG_CONFIG``. A value found in the file wins; the
``SG_<OPTION>`` environment variable is the fallback; the built-in default
applies when neither is set.

Example:
    Configuration file format (config.ini)::

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret
        admin_token = admin-secret

        [storage]
        db_path = /data/send_guard.db

        [scheduler]
        tick_interval = 0.5
        health_interval = 30
        start_active = true

        [queue]
        messages_per_minute = 10
        burst_limit = 3
        min_delay_ms = 1000
        max_delay_ms = 10000

        [health]
        hourly_cap = 60
        auto_warmup = true

        [device]
        url = http://devices:3000/api
        token = device-secret

        [logging]
        level = INFO

    Loading it::

        settings = load_settings()
        core = DispatchCore(client=HttpAccountClient(settings.device_url), **settings.core_kwargs())
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .logger import get_logger
from .models import HealthSettings, QueueConfig

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

# (section, option, environment variable)
_SCALAR_OPTIONS = {
    "host": ("server", "host", "SG_HOST"),
    "port": ("server", "port", "SG_PORT"),
    "api_token": ("server", "api_token", "SG_API_TOKEN"),
    "admin_token": ("server", "admin_token", "SG_ADMIN_TOKEN"),
    "db_path": ("storage", "db_path", "SG_DB_PATH"),
    "tick_interval": ("scheduler", "tick_interval", "SG_TICK_INTERVAL"),
    "health_interval": ("scheduler", "health_interval", "SG_HEALTH_INTERVAL"),
    "start_active": ("scheduler", "start_active", "SG_START_ACTIVE"),
    "test_mode": ("scheduler", "test_mode", "SG_TEST_MODE"),
    "history_size": ("scheduler", "history_size", "SG_HISTORY_SIZE"),
    "device_url": ("device", "url", "SG_DEVICE_URL"),
    "device_token": ("device", "token", "SG_DEVICE_TOKEN"),
    "device_timeout": ("device", "timeout", "SG_DEVICE_TIMEOUT"),
    "log_level": ("logging", "level", "SG_LOG_LEVEL"),
}


@dataclass
class Settings:
    """Resolved service settings.

    Attributes:
        queue: Initial queue configuration (a persisted one wins at start-up).
        health: Health score constants.
    """

    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    admin_token: str | None = None
    db_path: str | None = None
    tick_interval: float = 0.5
    health_interval: float = 30.0
    start_active: bool = True
    test_mode: bool = False
    history_size: int = 1000
    device_url: str = "http://localhost:3000/api"
    device_token: str | None = None
    device_timeout: float = 30.0
    log_level: str = "INFO"
    queue: QueueConfig = field(default_factory=QueueConfig)
    health: HealthSettings = field(default_factory=HealthSettings)

    def core_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for :class:`DispatchCore`, minus the client."""
        return {
            "db_path": self.db_path,
            "queue_config": self.queue,
            "health_settings": self.health,
            "start_active": self.start_active,
            "tick_interval": self.tick_interval,
            "health_interval": self.health_interval,
            "history_size": self.history_size,
            "test_mode": self.test_mode,
        }


def _to_bool(name: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    raise ConfigError(f"{name}: expected a boolean, got '{value}'")


def _convert(name: str, value: str, target: Any) -> Any:
    try:
        if isinstance(target, bool):
            return _to_bool(name, value)
        if isinstance(target, int):
            return int(value)
        if isinstance(target, float):
            return float(value)
    except ValueError:
        raise ConfigError(f"{name}: invalid value '{value}'") from None
    value = value.strip()
    return value or None


def load_settings(
    config_path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from an INI file with ``SG_*`` environment fallbacks.

    Args:
        config_path: INI file to read; defaults to ``$SG_CONFIG`` or ``config.ini``.
            A missing file is not an error.
        environ: Environment mapping, defaults to ``os.environ``.

    Raises:
        ConfigError: If any value cannot be parsed or the queue/health
            options are invalid.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("SG_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    read = parser.read(path)
    logger = get_logger("config")
    if read:
        logger.debug("Loaded configuration from %s", path)

    def get(section: str, option: str, env_name: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(env_name)

    defaults = Settings()
    values: dict[str, Any] = {}
    for name, (section, option, env_name) in _SCALAR_OPTIONS.items():
        raw = get(section, option, env_name)
        if raw is None:
            continue
        values[name] = _convert(name, raw, getattr(defaults, name))

    queue_values = _section_options(parser, env, "queue", QueueConfig.model_fields)
    values["queue"] = QueueConfig.from_mapping(queue_values)
    health_values = _section_options(parser, env, "health", HealthSettings.model_fields)
    values["health"] = HealthSettings.from_mapping(health_values)

    if values.get("db_path"):
        values["db_path"] = os.path.expanduser(values["db_path"])
    if values.get("log_level"):
        values["log_level"] = str(values["log_level"]).upper()
    return Settings(**values)


def _section_options(
    parser: configparser.ConfigParser,
    env: Mapping[str, str],
    section: str,
    fields: Mapping[str, Any],
) -> dict[str, str]:
    result: dict[str, str] = {}
    if parser.has_section(section):
        for option, value in parser.items(section):
            if option not in fields:
                raise ConfigError(f"unknown option '{option}' in [{section}]")
            result[option] = value
    for name in fields:
        env_name = f"SG_{name.upper()}"
        if name not in result and env_name in env:
            result[name] = env[env_name]
    return result
