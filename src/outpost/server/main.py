"""Outpost relay server - main entry point."""

from __future__ import annotations

import asyncio
import sys

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from outpost.core.config import ServerConfig, TransportMode
from outpost.observability.logging import LOG_LEVELS, configure_logging
from outpost.server.relay import RelayServer

console = Console()

BANNER = """
 ╔═╗╦ ╦╔╦╗╔═╗╔═╗╔═╗╔╦╗
 ║ ║║ ║ ║ ╠═╝║ ║╚═╗ ║
 ╚═╝╚═╝ ╩ ╩  ╚═╝╚═╝ ╩
     RELAY SERVER
"""


@click.command()
@click.option("--host", default=None, help="Bind address (default: 0.0.0.0)")
@click.option("--port", "-p", type=int, default=None, help="Listening port (default: 3000)")
@click.option("--api-key", default=None, help="Shared API key; omit for open mode")
@click.option(
    "--transport",
    type=click.Choice(["push", "pull", "both"], case_sensitive=False),
    default=None,
    help="Transports to accept (default: both)",
)
@click.option("--socket-path", default=None, help="WebSocket path for push agents (default: /ws)")
@click.option(
    "--ping-interval",
    type=float,
    default=None,
    help="Liveness check period in seconds (default: 30)",
)
@click.option(
    "--request-timeout",
    type=float,
    default=None,
    help="Seconds a public request waits for its agent (default: 30)",
)
@click.option(
    "--poll-timeout",
    type=float,
    default=None,
    help="Longest long-poll wait in seconds (default: 25)",
)
@click.option(
    "--heartbeat-interval",
    type=float,
    default=None,
    help="Expected pull agent heartbeat period in seconds (default: 10)",
)
@click.option(
    "--rate-limit/--no-rate-limit",
    default=None,
    help="Per-IP rate limiting of proxied requests (default: on)",
)
@click.option(
    "--rate-limit-window",
    type=float,
    default=None,
    help="Rate limit window in seconds (default: 60)",
)
@click.option(
    "--rate-limit-max",
    type=int,
    default=None,
    help="Requests per IP per window (default: 100)",
)
@click.option(
    "--max-body-size",
    type=int,
    default=None,
    help="Largest accepted request body in bytes (default: 10MB)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Log level (default: info)",
)
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
def main(
    host: str | None,
    port: int | None,
    api_key: str | None,
    transport: str | None,
    socket_path: str | None,
    ping_interval: float | None,
    request_timeout: float | None,
    poll_timeout: float | None,
    heartbeat_interval: float | None,
    rate_limit: bool | None,
    rate_limit_window: float | None,
    rate_limit_max: int | None,
    max_body_size: int | None,
    log_level: str | None,
    json_logs: bool,
):
    """Run the Outpost relay server.

    Every option can also be set through an OUTPOST_* environment variable
    (for example OUTPOST_API_KEY) or a .env file.
    """
    console.print(BANNER, style="cyan")

    overrides = {
        "host": host,
        "port": port,
        "api_key": api_key,
        "transport": transport,
        "socket_path": socket_path,
        "ping_interval": ping_interval,
        "request_timeout": request_timeout,
        "poll_timeout": poll_timeout,
        "heartbeat_interval": heartbeat_interval,
        "rate_limit_enabled": rate_limit,
        "rate_limit_window": rate_limit_window,
        "rate_limit_max": rate_limit_max,
        "max_body_size": max_body_size,
        "log_level": log_level,
    }
    try:
        config = ServerConfig(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{escape(str(e))}")
        sys.exit(1)

    configure_logging(config.log_level, json_output=json_logs)

    console.print(f"Starting relay server on {config.host}:{config.port}...", style="yellow")
    console.print(f"Transports: {', '.join(mode.value for mode in config.transports)}", style="dim")
    if TransportMode.PUSH in config.transports:
        console.print(f"WebSocket path: {config.socket_path}", style="dim")
    console.print(f"Request timeout: {config.request_timeout}s", style="dim")
    console.print(f"Ping interval: {config.ping_interval}s", style="dim")
    if config.rate_limit_enabled:
        console.print(
            f"Rate limit: {config.rate_limit_max} requests per {config.rate_limit_window}s per IP",
            style="dim",
        )
    if config.open_mode:
        console.print("API key: not set, relay is open to everyone", style="bold red")
    else:
        console.print("API key: required", style="green")

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        console.print("\nShutting down...", style="yellow")


async def run_server(config: ServerConfig):
    """Run the relay server."""
    server = RelayServer(config)

    try:
        await server.start()
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    finally:
        await server.stop()


if __name__ == "__main__":
    main()
