"""Relay server."""

from .relay import RelayServer

__all__ = ["RelayServer"]
