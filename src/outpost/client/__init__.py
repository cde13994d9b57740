"""Relay agent."""

from .agent import ConnectionState, RelayAgent
from .outbound import OutboundForwarder

__all__ = ["ConnectionState", "OutboundForwarder", "RelayAgent"]
