"""Client configuration loading.

Configuration is read from a YAML file. Either a flat mapping or a mapping
nested under a top-level ``gateway:`` key is accepted:

    gateway:
      url: ws://localhost:8080/ws
      token: secret
      retry_base_delay: 1
      retry_max_delay: 30
      max_reconnect_attempts: 5

``HIVECLAW_URL`` and ``HIVECLAW_TOKEN`` override the file values.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import yaml

from .errors import ConfigLoadError

DEFAULT_URL = "ws://localhost:8080/ws"
DEFAULT_SESSION = "main"

ENV_URL = "HIVECLAW_URL"
ENV_TOKEN = "HIVECLAW_TOKEN"


@dataclass(frozen=True)
class ClientConfig:
    """Settings for one gateway client.

    Attributes:
        url: WebSocket endpoint of the gateway.
        http_url: Base URL of the gateway REST API (derived from ``url`` if unset).
        token: Optional bearer token for REST calls.
        ping_interval: WebSocket keepalive ping interval (seconds, None disables).
        connect_timeout: Timeout for one connection attempt (seconds).
        retry_base_delay: First reconnection delay (seconds).
        retry_max_delay: Reconnection delay cap (seconds).
        max_reconnect_attempts: Reconnections scheduled before giving up.
        request_timeout: Seconds before a pending request expires (None disables).
        default_session: Session token used for chat when none is active.
    """

    url: str = DEFAULT_URL
    http_url: str | None = None
    token: str | None = None
    ping_interval: int | None = 20
    connect_timeout: float = 15.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    max_reconnect_attempts: int = 5
    request_timeout: float | None = None
    default_session: str = DEFAULT_SESSION

    def __post_init__(self) -> None:
        if urlsplit(self.url).scheme not in ("ws", "wss"):
            raise ConfigLoadError(f"url must be a ws:// or wss:// address: {self.url}")
        if self.connect_timeout <= 0:
            raise ConfigLoadError("connect_timeout must be positive")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ConfigLoadError("retry delays must not be negative")
        if self.retry_max_delay < self.retry_base_delay:
            raise ConfigLoadError("retry_max_delay must be >= retry_base_delay")
        if self.max_reconnect_attempts < 0:
            raise ConfigLoadError("max_reconnect_attempts must not be negative")
        if self.request_timeout is not None and self.request_timeout <= 0:
            raise ConfigLoadError("request_timeout must be positive")
        if not self.default_session:
            raise ConfigLoadError("default_session must not be empty")

    @property
    def rest_url(self) -> str:
        """Base URL for the REST API."""
        if self.http_url:
            return self.http_url.rstrip("/")
        parts = urlsplit(self.url)
        scheme = "https" if parts.scheme == "wss" else "http"
        return urlunsplit((scheme, parts.netloc, "", "", ""))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ClientConfig:
        """Build a config from a parsed mapping, ignoring unknown keys.

        Raises:
            ConfigLoadError: On wrongly typed or out-of-range values.
        """
        section = data.get("gateway", data)
        if not isinstance(section, Mapping):
            raise ConfigLoadError("gateway section must be a mapping")

        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in section.items():
            if key not in known:
                continue
            values[key] = _coerce(key, value)

        return cls(**values)


_STR_FIELDS = {"url", "http_url", "token", "default_session"}
_INT_FIELDS = {"ping_interval", "max_reconnect_attempts"}
_FLOAT_FIELDS = {"connect_timeout", "retry_base_delay", "retry_max_delay", "request_timeout"}
_NULLABLE_FIELDS = {"http_url", "token", "ping_interval", "request_timeout"}


def _coerce(key: str, value: Any) -> Any:
    """Validate the type of a single config value."""
    if value is None:
        if key in _NULLABLE_FIELDS:
            return None
        raise ConfigLoadError(f"{key} must not be null")
    # bool is a subclass of int and is never a valid number here
    if isinstance(value, bool):
        raise ConfigLoadError(f"{key} must not be a boolean")
    if key in _STR_FIELDS:
        if not isinstance(value, str):
            raise ConfigLoadError(f"{key} must be a string")
        return value
    if key in _INT_FIELDS:
        if not isinstance(value, int):
            raise ConfigLoadError(f"{key} must be an integer")
        return value
    if key in _FLOAT_FIELDS:
        if not isinstance(value, (int, float)):
            raise ConfigLoadError(f"{key} must be a number")
        return float(value)
    return value


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigLoadError(f"File not found: {path}")
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as err:
        raise ConfigLoadError(f"Invalid YAML in {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Config root must be a mapping: {path}")
    return data


def load_config(
    path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> ClientConfig:
    """Load client configuration.

    Args:
        path: YAML file to read. Defaults are used when omitted.
        environ: Environment mapping for overrides (defaults to ``os.environ``).

    Returns:
        Validated ClientConfig.

    Raises:
        ConfigLoadError: If the file is missing, unparsable or invalid.
    """
    config = ClientConfig()
    if path is not None:
        config = ClientConfig.from_mapping(_load_yaml(Path(path)))

    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    if env.get(ENV_URL):
        overrides["url"] = env[ENV_URL]
    if env.get(ENV_TOKEN):
        overrides["token"] = env[ENV_TOKEN]
    if overrides:
        config = replace(config, **overrides)

    return config
