# tests/test_tui_connection.py
"""Tests for TUI socket connection logic."""

import asyncio
import json
from contextlib import ExitStack
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from conftest import wait_until
from textual.css.query import NoMatches

from sql_profiler.config import Config


def _patch_paths(stack: ExitStack, base_path: Path) -> None:
    """Patch Config socket and config file paths to use base_path."""
    stack.enter_context(
        patch.object(
            Config,
            "socket_path",
            new_callable=lambda: property(lambda self: base_path / "daemon.sock"),
        )
    )
    stack.enter_context(
        patch.object(
            Config,
            "config_path",
            new_callable=lambda: property(lambda self: base_path / "config.toml"),
        )
    )


@pytest.mark.asyncio
async def test_tui_connects_and_logs_to_daemon(short_tmp_path: Path):
    """TUI connects via socket and announces itself in the daemon log."""
    from sql_profiler.tui.app import SqlProfilerApp

    received = []

    async def handle_client(reader, writer):
        while line := await reader.readline():
            received.append(json.loads(line))
        writer.close()
        await writer.wait_closed()

    with ExitStack() as stack:
        _patch_paths(stack, short_tmp_path)
        server = await asyncio.start_unix_server(
            handle_client, path=str(short_tmp_path / "daemon.sock")
        )

        app = SqlProfilerApp(Config())
        app.query_one = MagicMock(side_effect=NoMatches("no widgets"))
        try:
            assert await app._try_socket_connect() is True
            assert app._use_socket is True
            assert "(live)" in app.sub_title

            await wait_until(lambda: received)
            assert received[0]["type"] == "log"
            assert received[0]["event"] == "tui_connected"
        finally:
            app._stopping = True
            if app._socket_read_task:
                app._socket_read_task.cancel()
            if app._socket_client:
                await app._socket_client.disconnect()
            server.close()
            await server.wait_closed()


@pytest.mark.asyncio
async def test_tui_sends_command_and_tracks_reply(short_tmp_path: Path):
    """An action sends a command whose id is tracked until the reply arrives."""
    from sql_profiler.tui.app import SqlProfilerApp

    commands = []

    async def handle_client(reader, writer):
        while line := await reader.readline():
            msg = json.loads(line)
            if msg["type"] == "command":
                commands.append(msg)
                reply = {"type": "reply", "id": msg["id"], "ok": True, "error": None}
                writer.write((json.dumps(reply) + "\n").encode())
                await writer.drain()
        writer.close()
        await writer.wait_closed()

    with ExitStack() as stack:
        _patch_paths(stack, short_tmp_path)
        server = await asyncio.start_unix_server(
            handle_client, path=str(short_tmp_path / "daemon.sock")
        )

        app = SqlProfilerApp(Config())
        # Replies are only handled once the widgets exist
        app.query_one = MagicMock()
        app.notify = MagicMock()
        try:
            await app._try_socket_connect()
            await app.action_connect()

            await wait_until(lambda: commands and not app._pending)
            assert commands[0]["command"] == "connect"
            app.notify.assert_not_called()
        finally:
            app._stopping = True
            if app._socket_read_task:
                app._socket_read_task.cancel()
            if app._socket_client:
                await app._socket_client.disconnect()
            server.close()
            await server.wait_closed()


@pytest.mark.asyncio
async def test_tui_shows_disconnected_state_when_no_daemon(short_tmp_path: Path):
    """TUI should show disconnected state when daemon not running."""
    from sql_profiler.tui.app import SqlProfilerApp

    with ExitStack() as stack:
        _patch_paths(stack, short_tmp_path)
        assert not (short_tmp_path / "daemon.sock").exists()

        app = SqlProfilerApp(Config())
        app.query_one = MagicMock(side_effect=NoMatches("no widgets"))
        app.notify = MagicMock()

        assert await app._try_socket_connect() is False

        assert app._use_socket is False
        assert "disconnected" in app.sub_title.lower()
        assert "Daemon not running" in app.notify.call_args.args[0]


def test_tui_set_disconnected_clears_pending(short_tmp_path: Path):
    """Losing the daemon drops outstanding requests."""
    from sql_profiler.tui.app import SqlProfilerApp

    with ExitStack() as stack:
        _patch_paths(stack, short_tmp_path)
        app = SqlProfilerApp(Config())
        app.query_one = MagicMock(side_effect=NoMatches("no widgets"))
        app.sub_title = "Query Feed (live)"
        app._use_socket = True
        app._pending["r1"] = "connect"

        app._set_disconnected(start_reconnect=False)

        assert app._use_socket is False
        assert app._pending == {}
        assert "disconnected" in app.sub_title.lower()
