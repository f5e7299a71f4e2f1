"""Options for the sync service and the device agent.

Options come from an optional YAML file, then environment overrides, and are
validated with voluptuous before being turned into dataclasses.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import voluptuous as vol
import yaml

from .const import (
    CONF_BASE_URL,
    CONF_CACHE_PATH,
    CONF_CALLER_ID,
    CONF_CODE_LENGTH,
    CONF_DB_PATH,
    CONF_DISPLAY_NAME,
    CONF_HOST,
    CONF_LOG_LEVEL,
    CONF_MAX_CODE_ATTEMPTS,
    CONF_PORT,
    CONF_SYNC_INTERVAL,
    CONF_TIMEOUT,
    DEFAULT_CACHE_PATH,
    DEFAULT_CODE_LENGTH,
    DEFAULT_DB_PATH,
    DEFAULT_HOST,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_CODE_ATTEMPTS,
    DEFAULT_PORT,
    DEFAULT_SYNC_INTERVAL,
    DEFAULT_TIMEOUT,
    ENV_BASE_URL,
    ENV_CALLER_ID,
    ENV_DB_PATH,
)

_LOGGER = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

ENV_OVERRIDES: dict[str, str] = {
    ENV_DB_PATH: CONF_DB_PATH,
    ENV_BASE_URL: CONF_BASE_URL,
    ENV_CALLER_ID: CONF_CALLER_ID,
}


class ConfigError(ValueError):
    """Raised when options fail validation."""


def _non_blank(value: Any) -> str:
    text = str(value).strip()
    if not text:
        raise vol.Invalid("must not be blank")
    return text


def _log_level(value: Any) -> str:
    level = str(value).strip().upper()
    if level not in LOG_LEVELS:
        raise vol.Invalid(f"unknown log level {value}")
    return level


SERVER_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_DB_PATH, default=DEFAULT_DB_PATH): _non_blank,
        vol.Optional(CONF_HOST, default=DEFAULT_HOST): _non_blank,
        vol.Optional(CONF_PORT, default=DEFAULT_PORT): vol.All(vol.Coerce(int), vol.Range(min=1, max=65535)),
        vol.Optional(CONF_MAX_CODE_ATTEMPTS, default=DEFAULT_MAX_CODE_ATTEMPTS): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional(CONF_CODE_LENGTH, default=DEFAULT_CODE_LENGTH): vol.All(
            vol.Coerce(int), vol.Range(min=4, max=32)
        ),
        vol.Optional(CONF_LOG_LEVEL, default=DEFAULT_LOG_LEVEL): _log_level,
    },
    extra=vol.REMOVE_EXTRA,
)

CLIENT_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_BASE_URL): vol.All(_non_blank, vol.Match(r"^https?://")),
        vol.Required(CONF_CALLER_ID): _non_blank,
        vol.Optional(CONF_DISPLAY_NAME): vol.Any(None, str),
        vol.Optional(CONF_CACHE_PATH, default=DEFAULT_CACHE_PATH): _non_blank,
        vol.Optional(CONF_TIMEOUT, default=DEFAULT_TIMEOUT): vol.All(vol.Coerce(float), vol.Range(min=1)),
        vol.Optional(CONF_SYNC_INTERVAL, default=DEFAULT_SYNC_INTERVAL): vol.All(
            vol.Coerce(int), vol.Range(min=15)
        ),
        vol.Optional(CONF_LOG_LEVEL, default=DEFAULT_LOG_LEVEL): _log_level,
    },
    extra=vol.REMOVE_EXTRA,
)


def _validate(schema: vol.Schema, options: Mapping[str, Any]) -> dict[str, Any]:
    cleaned = {key: value for key, value in options.items() if value is not None}
    try:
        return schema(cleaned)
    except vol.Invalid as err:
        raise ConfigError(str(err)) from err


def load_options(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Read YAML options from ``path`` (if given) and apply environment overrides."""

    options: dict[str, Any] = {}
    if path is not None:
        file_path = Path(path)
        try:
            loaded = yaml.safe_load(file_path.read_text()) or {}
        except FileNotFoundError as err:
            raise ConfigError(f"options file not found: {file_path}") from err
        except yaml.YAMLError as err:
            raise ConfigError(f"options file {file_path} is not valid YAML: {err}") from err
        if not isinstance(loaded, Mapping):
            raise ConfigError(f"options file {file_path} must contain a mapping")
        options.update(loaded)

    environ = os.environ if env is None else env
    for variable, key in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            _LOGGER.debug("Option %s overridden from %s", key, variable)
            options[key] = value
    return options


@dataclass(slots=True)
class ServerConfig:
    db_path: str = DEFAULT_DB_PATH
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_code_attempts: int = DEFAULT_MAX_CODE_ATTEMPTS
    code_length: int = DEFAULT_CODE_LENGTH
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> ServerConfig:
        data = _validate(SERVER_SCHEMA, options)
        return cls(
            db_path=data[CONF_DB_PATH],
            host=data[CONF_HOST],
            port=data[CONF_PORT],
            max_code_attempts=data[CONF_MAX_CODE_ATTEMPTS],
            code_length=data[CONF_CODE_LENGTH],
            log_level=data[CONF_LOG_LEVEL],
        )


@dataclass(slots=True)
class ClientConfig:
    """Settings for one device talking to the sync service."""

    base_url: str
    caller_id: str
    display_name: str | None = None
    cache_path: str = DEFAULT_CACHE_PATH
    timeout: float = DEFAULT_TIMEOUT
    interval: int = DEFAULT_SYNC_INTERVAL
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> ClientConfig:
        data = _validate(CLIENT_SCHEMA, options)
        display_name = (data.get(CONF_DISPLAY_NAME) or "").strip() or None
        return cls(
            base_url=data[CONF_BASE_URL].rstrip("/"),
            caller_id=data[CONF_CALLER_ID],
            display_name=display_name,
            cache_path=data[CONF_CACHE_PATH],
            timeout=data[CONF_TIMEOUT],
            interval=data[CONF_SYNC_INTERVAL],
            log_level=data[CONF_LOG_LEVEL],
        )


__all__ = [
    "CLIENT_SCHEMA",
    "ClientConfig",
    "ConfigError",
    "SERVER_SCHEMA",
    "ServerConfig",
    "load_options",
]
