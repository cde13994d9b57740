"""Logging and Prometheus metrics."""

from .logging import LOG_LEVELS, configure_logging
from .metrics import generate_metrics, get_content_type

__all__ = [
    "LOG_LEVELS",
    "configure_logging",
    "generate_metrics",
    "get_content_type",
]
