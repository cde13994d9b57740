"""Tests for Outpost CLI."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from click.testing import CliRunner

from outpost import __version__
from outpost.cli import load_agent_file_config, main
from outpost.core.config import TransportMode
from outpost.server.main import main as server_main


def mock_http_client(responses: list[dict]) -> MagicMock:
    mock_client = MagicMock()
    mock_client.get.side_effect = [
        MagicMock(json=MagicMock(return_value=payload)) for payload in responses
    ]
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    return mock_client


class TestCLIBasics:
    """Basic CLI tests."""

    def test_main_without_arguments_shows_banner(self):
        """Test that running without arguments shows banner and usage."""
        runner = CliRunner()
        result = runner.invoke(main)

        assert result.exit_code == 0
        assert "Reach the API behind the firewall" in result.output
        assert "Usage:" in result.output
        assert "outpost connect" in result.output

    def test_main_with_help(self):
        runner = CliRunner()
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("connect", "status", "version"):
            assert command in result.output

    def test_version_command(self):
        runner = CliRunner()
        result = runner.invoke(main, ["version"])

        assert result.exit_code == 0
        assert "Version:" in result.output
        assert __version__ in result.output
        assert "Python:" in result.output


class TestStatusCommand:
    """Tests for status command."""

    def test_status_with_json_output(self):
        runner = CliRunner()
        with patch.object(httpx, "Client") as mock_client_class:
            mock_client_class.return_value = mock_http_client(
                [
                    {"status": "ok", "connectedClients": 0, "message": "Waiting"},
                    {"connectedClients": []},
                ]
            )

            result = runner.invoke(main, ["status", "--json"])

        assert result.exit_code == 0
        assert '"status": "ok"' in result.output
        assert '"connectedClients": 0' in result.output

    def test_status_table(self):
        runner = CliRunner()
        with patch.object(httpx, "Client") as mock_client_class:
            mock_client_class.return_value = mock_http_client(
                [
                    {"status": "ok", "connectedClients": 1, "message": "Ready to proxy requests"},
                    {
                        "connectedClients": [
                            {
                                "id": 7,
                                "transport": "pull",
                                "pendingRequests": 2,
                                "queuedRequests": 1,
                                "parkedPolls": 0,
                                "connectedAt": "2026-01-01T00:00:00+00:00",
                                "idleSeconds": 0.5,
                            }
                        ]
                    },
                ]
            )

            result = runner.invoke(main, ["status", "--server", "http://relay:3000/"])

        assert result.exit_code == 0
        assert "http://relay:3000" in result.output
        assert "Ready to proxy requests" in result.output
        assert "pull" in result.output
        mock_client_class.return_value.get.assert_any_call("http://relay:3000/health")

    def test_status_handles_connection_error(self):
        """Test status command handles connection errors gracefully."""
        runner = CliRunner()
        with patch.object(httpx, "Client") as mock_client_class:
            mock_client_class.side_effect = httpx.ConnectError("Connection refused")

            result = runner.invoke(main, ["status"])

        assert result.exit_code == 1
        assert "Error" in result.output


class TestConnectCommand:
    """Tests for connect command."""

    def test_connect_help(self):
        runner = CliRunner()
        result = runner.invoke(main, ["connect", "--help"])

        assert result.exit_code == 0
        for option in ("--server", "--target", "--api-key", "--transport", "--config"):
            assert option in result.output

    def test_connect_builds_config_from_options(self):
        runner = CliRunner()
        with (
            patch("outpost.cli.run_agent", new_callable=AsyncMock) as mock_run,
            patch("outpost.cli.configure_logging"),
        ):
            result = runner.invoke(
                main,
                [
                    "connect",
                    "--server", "https://relay.example.com",
                    "--target", "http://localhost:9000",
                    "--api-key", "secret",
                    "--transport", "pull",
                    "--reconnect-interval", "2",
                    "--insecure",
                ],
            )

        assert result.exit_code == 0, result.output
        config = mock_run.call_args.args[0]
        assert config.server_url == "https://relay.example.com"
        assert config.target_url == "http://localhost:9000"
        assert config.api_key == "secret"
        assert config.transport is TransportMode.PULL
        assert config.reconnect_interval == 2
        assert config.verify_tls is False

    def test_connect_precedence(self, tmp_path):
        """Options beat the config file, which beats the environment."""
        config_file = tmp_path / "agent.yaml"
        config_file.write_text(
            "agent:\n  target_url: http://from-file\n  server_url: ws://file-relay/ws\n"
        )
        runner = CliRunner()
        with (
            patch("outpost.cli.run_agent", new_callable=AsyncMock) as mock_run,
            patch("outpost.cli.configure_logging"),
        ):
            result = runner.invoke(
                main,
                ["connect", "-c", str(config_file), "--server", "ws://cli-relay/ws"],
                env={
                    "OUTPOST_TARGET_URL": "http://from-env",
                    "OUTPOST_REQUEST_TIMEOUT": "7",
                },
            )

        assert result.exit_code == 0, result.output
        config = mock_run.call_args.args[0]
        assert config.server_url == "ws://cli-relay/ws"
        assert config.target_url == "http://from-file"
        assert config.request_timeout == 7

    def test_connect_rejects_invalid_config(self):
        runner = CliRunner()
        with patch("outpost.cli.run_agent", new_callable=AsyncMock) as mock_run:
            result = runner.invoke(main, ["connect", "--reconnect-interval", "0"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
        mock_run.assert_not_called()

    def test_connect_rejects_bad_config_file(self, tmp_path):
        config_file = tmp_path / "agent.ini"
        config_file.write_text("[agent]\n")
        runner = CliRunner()

        result = runner.invoke(main, ["connect", "-c", str(config_file)])

        assert result.exit_code == 1
        assert "Failed to load config" in result.output


class TestAgentFileConfig:
    """Tests for load_agent_file_config."""

    def test_nested_and_flat_keys(self, tmp_path):
        config_file = tmp_path / "agent.toml"
        config_file.write_text(
            'poll_wait = 5\nunrelated = "x"\n\n[agent]\ntransport = "pull"\n'
        )

        assert load_agent_file_config(str(config_file)) == {
            "poll_wait": 5,
            "transport": "pull",
        }


class TestServerCommand:
    """Tests for the outpost-server entry point."""

    def test_help(self):
        runner = CliRunner()
        result = runner.invoke(server_main, ["--help"])

        assert result.exit_code == 0
        for option in ("--port", "--api-key", "--transport", "--ping-interval"):
            assert option in result.output

    def test_invalid_port(self):
        runner = CliRunner()
        with patch("outpost.server.main.run_server", new_callable=AsyncMock) as mock_run:
            result = runner.invoke(server_main, ["--port", "0"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
        mock_run.assert_not_called()

    def test_starts_with_overrides(self):
        runner = CliRunner()
        with (
            patch("outpost.server.main.run_server", new_callable=AsyncMock) as mock_run,
            patch("outpost.server.main.configure_logging"),
        ):
            result = runner.invoke(
                server_main,
                ["--port", "4000", "--transport", "pull", "--no-rate-limit", "--api-key", "k"],
            )

        assert result.exit_code == 0, result.output
        config = mock_run.call_args.args[0]
        assert config.port == 4000
        assert config.transports == (TransportMode.PULL,)
        assert config.rate_limit_enabled is False
        assert config.open_mode is False
        assert "API key: required" in result.output
