"""Bridge configuration: optional YAML file overlaid with TESY_* environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Self

import yaml
from pydantic import BaseModel, ValidationError, model_validator

from tesy_bridge.const import (
    ACCESSORY_CACHE_FILE,
    DEFAULT_API_TIMEOUT,
    DEFAULT_MAX_TEMP,
    DEFAULT_MIN_TEMP,
    DEFAULT_PERSISTENT_DIR,
    DEFAULT_PULL_INTERVAL_MS,
)
from tesy_bridge.exceptions import ConfigError
from tesy_bridge.logging_abstraction import get_logger

logger = get_logger(__name__)

# field name -> environment variable
ENV_FIELDS: dict[str, str] = {
    "user_id": "TESY_USER_ID",
    "username": "TESY_USERNAME",
    "password": "TESY_PASSWORD",
    "pull_interval": "TESY_PULL_INTERVAL",
    "min_temp": "TESY_MIN_TEMP",
    "max_temp": "TESY_MAX_TEMP",
    "api_timeout": "TESY_API_TIMEOUT",
    "persistent_dir": "TESY_PERSISTENT_DIR",
    "hass_mqtt_host": "TESY_HASS_MQTT_HOST",
    "hass_mqtt_port": "TESY_HASS_MQTT_PORT",
    "hass_mqtt_user": "TESY_HASS_MQTT_USER",
    "hass_mqtt_pass": "TESY_HASS_MQTT_PASS",
    "hass_topic": "TESY_HASS_TOPIC",
    "hass_status_topic": "TESY_HASS_STATUS_TOPIC",
    "topic": "TESY_TOPIC",
    "metrics_port": "TESY_METRICS_PORT",
}

# Homebridge-style keys accepted in the YAML file
LEGACY_KEYS: dict[str, str] = {
    "userid": "user_id",
    "pullInterval": "pull_interval",
    "minTemp": "min_temp",
    "maxTemp": "max_temp",
}

REQUIRED_FIELDS = ("user_id", "username", "password")


class BridgeConfig(BaseModel):
    """Validated bridge settings."""

    user_id: int
    username: str
    password: str
    pull_interval: int = DEFAULT_PULL_INTERVAL_MS
    min_temp: float = DEFAULT_MIN_TEMP
    max_temp: float = DEFAULT_MAX_TEMP
    api_timeout: float = DEFAULT_API_TIMEOUT
    persistent_dir: str = DEFAULT_PERSISTENT_DIR
    hass_mqtt_host: str | None = None
    hass_mqtt_port: int = 1883
    hass_mqtt_user: str | None = None
    hass_mqtt_pass: str | None = None
    hass_topic: str = "homeassistant"
    hass_status_topic: str = "homeassistant/status"
    topic: str = "tesy_bridge"
    metrics_port: int | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> Self:
        if self.min_temp >= self.max_temp:
            msg = f"min_temp ({self.min_temp}) must be lower than max_temp ({self.max_temp})"
            raise ValueError(msg)
        if self.pull_interval <= 0:
            msg = f"pull_interval must be positive, got {self.pull_interval}"
            raise ValueError(msg)
        return self

    @property
    def pull_interval_seconds(self) -> float:
        return self.pull_interval / 1000.0

    @property
    def hass_enabled(self) -> bool:
        return bool(self.hass_mqtt_host)

    @property
    def accessory_cache_path(self) -> Path:
        return Path(self.persistent_dir).expanduser() / ACCESSORY_CACHE_FILE


def _read_config_file(config_file: Path) -> dict[str, Any]:
    try:
        with config_file.open() as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        msg = f"Failed to read config file {config_file}: {e}"
        raise ConfigError(msg) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Config file {config_file} must contain a mapping, got {type(data).__name__}"
        raise ConfigError(msg)

    values: dict[str, Any] = {}
    for key, value in data.items():
        # falsy values fall back to defaults, as the Homebridge config did
        if value is None or value == "":
            continue
        values[LEGACY_KEYS.get(key, key)] = value
    return values


def load_config(
    config_file: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> BridgeConfig:
    """Build a BridgeConfig from an optional YAML file and the environment.

    Environment variables take precedence over file values.

    Raises:
        ConfigError: credentials are missing or a value is invalid

    """
    env = os.environ if env is None else env
    lp = "config:load:"
    values: dict[str, Any] = {}

    if config_file is None and env.get("TESY_CONFIG_FILE"):
        config_file = Path(env["TESY_CONFIG_FILE"])

    if config_file is not None:
        config_file = config_file.expanduser().resolve()
        values.update(_read_config_file(config_file))
        logger.debug("%s read config file", lp, extra={"path": str(config_file)})

    for field_name, env_name in ENV_FIELDS.items():
        raw = env.get(env_name)
        if raw:
            values[field_name] = raw

    missing = [name for name in REQUIRED_FIELDS if not values.get(name)]
    if missing:
        env_names = ", ".join(ENV_FIELDS[name] for name in missing)
        msg = f"Missing required credentials: {', '.join(missing)} (set {env_names})"
        raise ConfigError(msg)

    try:
        config = BridgeConfig(**values)
    except ValidationError as e:
        msg = f"Invalid configuration: {e}"
        raise ConfigError(msg) from e

    logger.debug(
        "%s configuration loaded",
        lp,
        extra={
            "user_id": config.user_id,
            "pull_interval_ms": config.pull_interval,
            "temp_range": f"{config.min_temp}-{config.max_temp}",
            "hass_enabled": config.hass_enabled,
        },
    )
    return config
