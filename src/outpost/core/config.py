"""Configuration types with environment variable support.

All settings can be configured via environment variables with the OUTPOST_ prefix.
Example: OUTPOST_REQUEST_TIMEOUT=60 sets the relay's request timeout to 60 seconds.
"""

from __future__ import annotations

import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from outpost.observability.logging import LOG_LEVELS


def _check_log_level(value: str) -> str:
    value = value.lower()
    if value not in LOG_LEVELS:
        raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
    return value


class TransportMode(str, Enum):
    """Transport strategy between relay and agent."""

    PUSH = "push"
    PULL = "pull"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class ServerConfig(BaseSettings):
    """Relay server configuration.

    An unset ``api_key`` puts the relay in open mode: every endpoint is
    reachable without a credential and a warning is logged at startup.
    """

    model_config = SettingsConfigDict(
        env_prefix="OUTPOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = Field(default="0.0.0.0", description="Bind address.")
    port: int = Field(default=3000, ge=1, le=65535, description="Listening port.")
    api_key: str | None = Field(
        default=None,
        repr=False,
        description="Shared credential for callers and agents. None for open mode.",
    )
    transport: str = Field(
        default="both",
        description="Mounted transports: 'push', 'pull' or 'both'.",
    )
    socket_path: str = Field(
        default="/ws",
        description="Path of the WebSocket endpoint agents connect to (push mode).",
    )
    ping_interval: float = Field(
        default=30.0,
        gt=0,
        description="Liveness probe period (seconds).",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="How long a public request waits for its response (seconds).",
    )
    poll_timeout: float = Field(
        default=25.0,
        gt=0,
        description="Longest time a pull agent's poll is parked (seconds).",
    )
    heartbeat_interval: float = Field(
        default=10.0,
        gt=0,
        description="Expected pull agent heartbeat period; silence beyond twice this evicts.",
    )
    rate_limit_enabled: bool = Field(
        default=True,
        description="Enable per-IP rate limiting of the proxy path.",
    )
    rate_limit_window: float = Field(
        default=60.0,
        gt=0,
        description="Rate limit window (seconds).",
    )
    rate_limit_max: int = Field(
        default=100,
        ge=1,
        description="Maximum proxied requests per IP per window.",
    )
    log_level: str = Field(default="info", description="Minimum log level.")
    max_body_size: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum buffered request body (bytes). Default 10MB.",
    )

    @field_validator("transport")
    @classmethod
    def _check_transport(cls, value: str) -> str:
        value = value.lower()
        if value not in ("push", "pull", "both"):
            raise ValueError("transport must be 'push', 'pull' or 'both'")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        return _check_log_level(value)

    @field_validator("socket_path")
    @classmethod
    def _check_socket_path(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @property
    def open_mode(self) -> bool:
        return not self.api_key

    @property
    def transports(self) -> tuple[TransportMode, ...]:
        if self.transport == "both":
            return (TransportMode.PUSH, TransportMode.PULL)
        return (TransportMode(self.transport),)


class AgentConfig(BaseSettings):
    """Relay agent configuration (the private-network side)."""

    model_config = SettingsConfigDict(
        env_prefix="OUTPOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server_url: str = Field(
        default="ws://localhost:3000/ws",
        description="Relay URL: the WebSocket endpoint (push) or the relay base URL (pull).",
    )
    target_url: str = Field(
        default="http://localhost:8088",
        description="Base URL of the internal API requests are forwarded to.",
    )
    api_key: str | None = Field(default=None, repr=False)
    transport: TransportMode = Field(default=TransportMode.PUSH)
    reconnect_interval: float = Field(
        default=5.0,
        gt=0,
        description="Constant delay between reconnection attempts (seconds).",
    )
    request_timeout: float = Field(
        default=25.0,
        gt=0,
        description="Timeout for calls against the internal target (seconds).",
    )
    poll_wait: float = Field(
        default=25.0,
        gt=0,
        description="Requested long-poll wait (seconds); the relay may cap it.",
    )
    heartbeat_interval: float = Field(
        default=10.0,
        gt=0,
        description="Pull mode heartbeat period (seconds).",
    )
    verify_tls: bool = Field(
        default=True,
        description="Verify TLS certificates of the internal target.",
    )
    log_level: str = Field(default="info")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        return _check_log_level(value)
