"""Tests for CLI commands."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner
from conftest import make_event

from sql_profiler.cli import _format_event_line, main
from sql_profiler.config import Config


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def send_command():
    """Patch the socket round-trip with a successful reply."""
    mock = AsyncMock(return_value={"type": "reply", "id": "x", "ok": True, "error": None})
    with (
        patch("sql_profiler.config.Config.load", return_value=Config()),
        patch("sql_profiler.cli._send_command", mock),
    ):
        yield mock


class TestCommands:
    """Tests for the connect/disconnect/start/stop commands."""

    def test_connect_sends_only_given_fields(self, runner: CliRunner, send_command) -> None:
        """Options left unset fall back to the daemon's configured connection."""
        result = runner.invoke(main, ["connect", "--host", "db01", "-p", "14330", "--trust-cert"])

        assert result.exit_code == 0, result.output
        assert "Connected" in result.output
        _, command = send_command.call_args.args
        assert command == "connect"
        assert send_command.call_args.kwargs == {
            "config": {"host": "db01", "port": 14330, "trust_cert": True}
        }

    def test_connect_password_from_env(self, runner: CliRunner, send_command) -> None:
        """The password can come from SQL_PROFILER_PASSWORD."""
        result = runner.invoke(main, ["connect"], env={"SQL_PROFILER_PASSWORD": "s3cret"})

        assert result.exit_code == 0, result.output
        assert send_command.call_args.kwargs["config"] == {"password": "s3cret"}

    def test_connect_error_exits_1(self, runner: CliRunner, send_command) -> None:
        """A failed command prints the daemon's error and exits 1."""
        send_command.return_value = {
            "type": "reply",
            "id": "x",
            "ok": False,
            "error": "TCP connection failed: timeout",
        }

        result = runner.invoke(main, ["connect"])

        assert result.exit_code == 1
        assert "TCP connection failed: timeout" in result.output

    def test_start_with_backend(self, runner: CliRunner, send_command) -> None:
        """start passes the chosen backend."""
        result = runner.invoke(main, ["start", "--backend", "live_requests"])

        assert result.exit_code == 0, result.output
        assert send_command.call_args.args[1] == "start_capture"
        assert send_command.call_args.kwargs == {"backend": "live_requests"}

    def test_start_default_backend(self, runner: CliRunner, send_command) -> None:
        """Without --backend the daemon picks the configured one."""
        result = runner.invoke(main, ["start"])

        assert result.exit_code == 0, result.output
        assert send_command.call_args.kwargs == {}

    def test_start_rejects_unknown_backend(self, runner: CliRunner, send_command) -> None:
        """Backend names are validated before anything is sent."""
        result = runner.invoke(main, ["start", "--backend", "profiler"])

        assert result.exit_code == 2
        send_command.assert_not_called()

    def test_stop_and_disconnect(self, runner: CliRunner, send_command) -> None:
        """stop and disconnect map to their commands."""
        assert runner.invoke(main, ["stop"]).exit_code == 0
        assert send_command.call_args.args[1] == "stop_capture"
        assert runner.invoke(main, ["disconnect"]).exit_code == 0
        assert send_command.call_args.args[1] == "disconnect"

    def test_daemon_not_running(self, runner: CliRunner, send_command) -> None:
        """A missing socket gives a helpful message."""
        send_command.side_effect = FileNotFoundError("Socket not found")

        result = runner.invoke(main, ["stop"])

        assert result.exit_code == 1
        assert "Daemon not running" in result.output
        assert "sql-profiler daemon" in result.output


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_daemon_stopped(self, runner: CliRunner) -> None:
        """status reports a stopped daemon."""
        with (
            patch("sql_profiler.config.Config.load", return_value=Config()),
            patch("sql_profiler.daemon.read_daemon_pid", return_value=None),
        ):
            result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Daemon: stopped" in result.output

    def test_status_shows_profiler_state(self, runner: CliRunner) -> None:
        """status prints the daemon's latest profiler status."""
        state = {
            "type": "initial_state",
            "status": {"connected": True, "capturing": False, "error": "Not connected"},
            "events": [make_event().to_dict()],
        }
        with (
            patch("sql_profiler.config.Config.load", return_value=Config()),
            patch("sql_profiler.daemon.read_daemon_pid", return_value=4321),
            patch("sql_profiler.cli._read_initial_state", AsyncMock(return_value=state)),
        ):
            result = runner.invoke(main, ["status"])

        assert result.exit_code == 0, result.output
        assert "running (PID 4321)" in result.output
        assert "Connected: yes" in result.output
        assert "Capturing: no" in result.output
        assert "Last error: Not connected" in result.output
        assert "Recent events: 1" in result.output


class TestTailCommand:
    """Tests for the tail command."""

    def test_bad_filter(self, runner: CliRunner) -> None:
        """An unparseable --where is a usage error."""
        result = runner.invoke(main, ["tail", "--where", "nonsense"])
        assert result.exit_code == 2
        assert "Cannot parse filter" in result.output

    def test_tail_daemon_not_running(self, runner: CliRunner, tmp_path: Path) -> None:
        """tail without a daemon exits with a message."""
        mock_config = MagicMock(spec=Config)
        mock_config.socket_path = tmp_path / "missing.sock"
        with patch("sql_profiler.config.Config.load", return_value=mock_config):
            result = runner.invoke(main, ["tail"])

        assert result.exit_code == 1
        assert "Daemon not running" in result.output

    def test_event_line(self) -> None:
        """Event lines show time, session, timings and one-line SQL."""
        line = _format_event_line(
            make_event(
                start_time="2024-01-01T12:34:56.1234567",
                elapsed_time=1500,
                logical_reads=12345,
                sql_text="SELECT *\n  FROM dbo.t",
            ).to_dict()
        )
        assert line.startswith("12:34:56.123")
        assert "1.5s" in line
        assert "12,345" in line
        assert line.endswith("SELECT * FROM dbo.t")


class TestConfigCommands:
    """Tests for config subcommands."""

    def test_config_show_masks_password(self, runner: CliRunner, tmp_path: Path) -> None:
        """config show never prints the password."""
        from sql_profiler.config import ConnectionConfig

        cfg = Config(connection=ConnectionConfig(password="hunter2"))
        with (
            patch("sql_profiler.config.Config.load", return_value=cfg),
            patch.object(Config, "config_path", tmp_path / "config.toml"),
        ):
            result = runner.invoke(main, ["config", "show"])

        assert result.exit_code == 0, result.output
        assert "hunter2" not in result.output
        assert "password = ********" in result.output
        assert "backend = extended_events" in result.output

    def test_config_reset_writes_defaults(self, runner: CliRunner, tmp_path: Path) -> None:
        """config reset saves a default config after confirmation."""
        config_path = tmp_path / "config.toml"
        with patch.object(Config, "config_path", config_path):
            result = runner.invoke(main, ["config", "reset"], input="y\n")

        assert result.exit_code == 0, result.output
        assert config_path.exists()
        assert Config.load(config_path) == Config()
