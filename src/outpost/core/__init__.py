"""Core."""

from .config import AgentConfig, ServerConfig, TransportMode, load_config_from_file
from .exceptions import OutpostError
from .registry import Connection, ConnectionRegistry

__all__ = [
    "AgentConfig",
    "Connection",
    "ConnectionRegistry",
    "OutpostError",
    "ServerConfig",
    "TransportMode",
    "load_config_from_file",
]
