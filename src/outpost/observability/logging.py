"""structlog setup shared by the relay and agent entry points."""

from __future__ import annotations

import logging

import structlog

LOG_LEVELS = ("debug", "info", "warning", "error")


def configure_logging(level: str = "info", json_output: bool = False) -> None:
    """Configure structlog with a minimum level and console or JSON rendering."""
    level_no = getattr(logging, level.upper(), None)
    if not isinstance(level_no, int):
        raise ValueError(f"Unknown log level: {level}")

    processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        cache_logger_on_first_use=False,
    )
