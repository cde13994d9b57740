"""Outpost - expose a private HTTP API through a public relay."""

__version__ = "0.1.0"
