"""Outpost CLI - command line interface for the relay agent."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
import httpx
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from outpost.client.agent import ConnectionState, RelayAgent
from outpost.core.config import AgentConfig, flatten_config, load_config_from_file
from outpost.observability.logging import LOG_LEVELS, configure_logging

console = Console()

BANNER = """
 ╔═╗╦ ╦╔╦╗╔═╗╔═╗╔═╗╔╦╗
 ║ ║║ ║ ║ ╠═╝║ ║╚═╗ ║
 ╚═╝╚═╝ ╩ ╩  ╚═╝╚═╝ ╩
  Reach the API behind the firewall
"""

STATE_STYLES = {
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.CONNECTED: "green",
    ConnectionState.RECONNECTING: "yellow",
    ConnectionState.DISCONNECTED: "red",
    ConnectionState.CLOSED: "dim",
}


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context):
    """Outpost - expose a private HTTP API through a public relay.

    Examples:

        outpost connect --server ws://relay.example.com:3000/ws --target http://localhost:8088

        outpost connect --transport pull --server https://relay.example.com

        outpost status --server http://relay.example.com:3000

    Use 'outpost COMMAND --help' for more info on specific commands.
    """
    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("Usage: outpost connect --server URL --target URL", style="yellow")
        console.print("\nCommands:", style="bold")
        console.print("  outpost connect  Run the relay agent", style="dim")
        console.print("  outpost status   Show relay status", style="dim")
        console.print("  outpost version  Show version information", style="dim")


def load_agent_file_config(path: str) -> dict[str, Any]:
    """Agent settings from a YAML/TOML file, top-level or under an ``agent`` table."""
    flat = flatten_config(load_config_from_file(path))
    result: dict[str, Any] = {}
    for key, value in flat.items():
        name = key.removeprefix("agent_")
        if name in AgentConfig.model_fields:
            result[name] = value
    return result


@main.command()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--server", "-s", default=None, help="Relay URL (ws://host:3000/ws or https://host)")
@click.option("--target", "-t", default=None, help="Internal API base URL")
@click.option("--api-key", default=None, help="Relay API key (or OUTPOST_API_KEY)")
@click.option(
    "--transport",
    type=click.Choice(["push", "pull"], case_sensitive=False),
    default=None,
    help="push (WebSocket) or pull (HTTP long-poll), default: push",
)
@click.option(
    "--reconnect-interval",
    type=float,
    default=None,
    help="Seconds between reconnection attempts (default: 5)",
)
@click.option(
    "--request-timeout",
    type=float,
    default=None,
    help="Timeout for calls to the internal API in seconds (default: 25)",
)
@click.option("--insecure", is_flag=True, help="Skip TLS verification of the internal API")
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Log level (default: info)",
)
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
def connect(
    config_file: str | None,
    server: str | None,
    target: str | None,
    api_key: str | None,
    transport: str | None,
    reconnect_interval: float | None,
    request_timeout: float | None,
    insecure: bool,
    log_level: str | None,
    json_logs: bool,
):
    """Run the relay agent until interrupted.

    Command line options override the config file, which overrides
    OUTPOST_* environment variables.
    """
    settings: dict[str, Any] = {}
    if config_file:
        try:
            settings.update(load_agent_file_config(config_file))
            console.print(f"Loaded config from {config_file}", style="dim")
        except (OSError, ValueError) as e:
            console.print(f"[red]Failed to load config: {escape(str(e))}[/red]")
            sys.exit(1)

    overrides = {
        "server_url": server,
        "target_url": target,
        "api_key": api_key,
        "transport": transport,
        "reconnect_interval": reconnect_interval,
        "request_timeout": request_timeout,
        "log_level": log_level,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})
    if insecure:
        settings["verify_tls"] = False

    try:
        config = AgentConfig(**settings)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{escape(str(e))}")
        sys.exit(1)

    configure_logging(config.log_level, json_output=json_logs)

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Relay:[/bold] {config.server_url} ({config.transport.value})")
    console.print(f"[bold]Target:[/bold] {config.target_url}")
    if not config.api_key:
        console.print("No API key set, the relay must be running in open mode", style="yellow")

    try:
        asyncio.run(run_agent(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


async def run_agent(config: AgentConfig) -> None:
    """Run an agent, printing its state changes."""
    agent = RelayAgent(config)

    def show_state(state: ConnectionState) -> None:
        console.print(f"[{STATE_STYLES[state]}]{state.value}[/{STATE_STYLES[state]}]")

    agent.add_state_hook(show_state)
    try:
        await agent.run()
    finally:
        await agent.close()


@main.command()
@click.option("--server", "-s", default="http://localhost:3000", help="Relay base URL")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(server: str, json_output: bool):
    """Show relay health and connected agents."""
    base_url = server.rstrip("/")

    try:
        with httpx.Client(timeout=5.0) as client:
            health = client.get(f"{base_url}/health").json()
            clients = client.get(f"{base_url}/clients").json()
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"[red]Error connecting to relay:[/red] {escape(str(e))}")
        sys.exit(1)

    if json_output:
        console.print(json.dumps({"health": health, "clients": clients}, indent=2))
        return

    console.print(f"\n[bold]Relay:[/bold] {base_url}")
    console.print(f"[bold]Status:[/bold] [green]{health.get('status', 'unknown')}[/green]")
    console.print(f"[bold]Connected agents:[/bold] {health.get('connectedClients', 0)}")
    if health.get("message"):
        console.print(f"[dim]{health['message']}[/dim]")

    agents = clients.get("connectedClients", [])
    if agents:
        table = Table()
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("Transport")
        table.add_column("Pending", justify="right")
        table.add_column("Queued", justify="right")
        table.add_column("Parked polls", justify="right")
        table.add_column("Connected At")
        table.add_column("Idle (s)", justify="right")

        for agent in agents:
            table.add_row(
                str(agent.get("id", "")),
                agent.get("transport", ""),
                str(agent.get("pendingRequests", 0)),
                str(agent.get("queuedRequests", 0)),
                str(agent.get("parkedPolls", 0)),
                str(agent.get("connectedAt", ""))[:19],
                str(agent.get("idleSeconds", "")),
            )

        console.print(table)


@main.command()
def version():
    """Show version information."""
    from outpost import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


if __name__ == "__main__":
    main()
