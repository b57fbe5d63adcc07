"""Tests for Unix socket server module."""

import asyncio
import json
import stat
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import make_event, wait_until

from sql_profiler.config import ConnectionConfig
from sql_profiler.events import PROFILER_STATUS_TOPIC, QUERY_EVENT_TOPIC
from sql_profiler.ringbuffer import RecentEvents
from sql_profiler.socket_server import SocketServer
from sql_profiler.supervisor import ProfilerError


def make_commands():
    """Stand-in for ProfilerClient."""
    commands = MagicMock()
    commands.connect = AsyncMock()
    commands.disconnect = AsyncMock()
    commands.start_capture = AsyncMock()
    commands.stop_capture = AsyncMock()
    return commands


async def read_json(reader, timeout=2.0):
    data = await asyncio.wait_for(reader.readline(), timeout=timeout)
    return json.loads(data.decode())


async def send_json(writer, msg):
    writer.write(json.dumps(msg).encode() + b"\n")
    await writer.drain()


@pytest.mark.asyncio
async def test_socket_server_starts_and_stops(short_tmp_path):
    """SocketServer should start listening and stop cleanly."""
    socket_path = short_tmp_path / "test.sock"
    server = SocketServer(socket_path=socket_path, recent_events=RecentEvents(10))

    await server.start()
    assert socket_path.exists()
    assert stat.S_IMODE(socket_path.stat().st_mode) == 0o600

    await server.stop()
    assert not socket_path.exists()


@pytest.mark.asyncio
async def test_socket_server_removes_stale_socket(short_tmp_path):
    """A leftover socket file from a crashed daemon is replaced."""
    socket_path = short_tmp_path / "test.sock"
    socket_path.write_text("stale")
    server = SocketServer(socket_path=socket_path, recent_events=RecentEvents(10))

    await server.start()
    try:
        reader, writer = await asyncio.open_unix_connection(str(socket_path))
        message = await read_json(reader)
        assert message["type"] == "initial_state"
        writer.close()
        await writer.wait_closed()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_initial_state_replays_status_and_recent_events(short_tmp_path):
    """A new client gets the latest status and recent events."""
    socket_path = short_tmp_path / "test.sock"
    recent = RecentEvents(10)
    server = SocketServer(socket_path=socket_path, recent_events=recent)
    await server.publish(PROFILER_STATUS_TOPIC, {"connected": True, "capturing": True, "error": None})
    await server.publish(QUERY_EVENT_TOPIC, make_event(id="e1").to_dict())
    await server.start()

    try:
        reader, writer = await asyncio.open_unix_connection(str(socket_path))
        message = await read_json(reader)

        assert message["type"] == "initial_state"
        assert message["status"] == {"connected": True, "capturing": True, "error": None}
        assert [e["id"] for e in message["events"]] == ["e1"]

        writer.close()
        await writer.wait_closed()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_publish_broadcasts_to_all_clients(short_tmp_path):
    """publish() pushes {type, data} to every connected client."""
    socket_path = short_tmp_path / "test.sock"
    server = SocketServer(socket_path=socket_path, recent_events=RecentEvents(10))
    await server.start()

    try:
        reader1, writer1 = await asyncio.open_unix_connection(str(socket_path))
        reader2, writer2 = await asyncio.open_unix_connection(str(socket_path))
        await read_json(reader1)
        await read_json(reader2)
        await wait_until(lambda: len(server._clients) == 2)

        payload = make_event(id="e2").to_dict()
        await server.publish(QUERY_EVENT_TOPIC, payload)

        for reader in (reader1, reader2):
            message = await read_json(reader)
            assert message["type"] == QUERY_EVENT_TOPIC
            assert message["data"] == payload

        for writer in (writer1, writer2):
            writer.close()
            await writer.wait_closed()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_publish_without_clients_still_records(short_tmp_path):
    """Published events land in the recent buffer even with nobody listening."""
    recent = RecentEvents(10)
    server = SocketServer(socket_path=short_tmp_path / "test.sock", recent_events=recent)

    await server.publish(QUERY_EVENT_TOPIC, make_event(id="e1").to_dict())
    await server.publish(PROFILER_STATUS_TOPIC, {"connected": True, "capturing": False, "error": "x"})

    assert len(recent) == 1
    assert server.status["error"] == "x"
    assert not server.has_clients


@pytest.mark.asyncio
async def test_command_reply(short_tmp_path):
    """A command runs through the supervisor and the sender gets a reply."""
    socket_path = short_tmp_path / "test.sock"
    commands = make_commands()
    server = SocketServer(socket_path=socket_path, recent_events=RecentEvents(10), commands=commands)
    await server.start()

    try:
        reader, writer = await asyncio.open_unix_connection(str(socket_path))
        await read_json(reader)

        await send_json(writer, {"type": "command", "id": "r1", "command": "stop_capture"})
        reply = await read_json(reader)

        assert reply == {"type": "reply", "id": "r1", "ok": True, "error": None}
        commands.stop_capture.assert_awaited_once()

        writer.close()
        await writer.wait_closed()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_command_error_reply(short_tmp_path):
    """A ProfilerError is returned verbatim in the reply."""
    socket_path = short_tmp_path / "test.sock"
    commands = make_commands()
    commands.start_capture.side_effect = ProfilerError("Not connected")
    server = SocketServer(socket_path=socket_path, recent_events=RecentEvents(10), commands=commands)
    await server.start()

    try:
        reader, writer = await asyncio.open_unix_connection(str(socket_path))
        await read_json(reader)

        await send_json(writer, {"type": "command", "id": "r2", "command": "start_capture"})
        reply = await read_json(reader)

        assert reply["ok"] is False
        assert reply["error"] == "Not connected"

        writer.close()
        await writer.wait_closed()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_connect_merges_default_connection():
    """connect overlays request fields on the configured connection."""
    commands = make_commands()
    default = ConnectionConfig(host="db01", username="app", password="secret")
    server = SocketServer(
        socket_path=MagicMock(),
        recent_events=RecentEvents(10),
        commands=commands,
        default_connection=default,
    )

    await server._run_command("connect", {"config": {"database": "sales", "port": 14330}})

    (config,), _ = commands.connect.call_args
    assert config.host == "db01"
    assert config.password == "secret"
    assert config.database == "sales"
    assert config.port == 14330


@pytest.mark.asyncio
async def test_connect_invalid_config_is_rejected():
    """Bad connection fields produce an 'Invalid ... request' error."""
    commands = make_commands()
    server = SocketServer(socket_path=MagicMock(), recent_events=RecentEvents(10), commands=commands)
    writer = MagicMock()
    writer.drain = AsyncMock()

    await server._handle_command(
        {"type": "command", "id": "r3", "command": "connect", "config": {"port": 0}}, writer
    )

    reply = json.loads(writer.write.call_args[0][0].decode())
    assert reply["ok"] is False
    assert reply["error"].startswith("Invalid connect request:")
    commands.connect.assert_not_called()


@pytest.mark.asyncio
async def test_start_capture_clears_recent_events():
    """Starting a capture drops the previous capture's feed."""
    commands = make_commands()
    recent = RecentEvents(10)
    recent.push(make_event(id="old").to_dict())
    server = SocketServer(socket_path=MagicMock(), recent_events=recent, commands=commands)

    await server._run_command("start_capture", {"backend": "live_requests"})

    assert recent.is_empty
    commands.start_capture.assert_awaited_once_with("live_requests")


@pytest.mark.asyncio
async def test_rejected_start_capture_keeps_recent_events():
    """A start the supervisor refuses leaves the running capture's feed."""
    commands = make_commands()
    commands.start_capture.side_effect = ProfilerError("Unknown backend 'bogus'")
    recent = RecentEvents(10)
    recent.push(make_event(id="kept").to_dict())
    server = SocketServer(socket_path=MagicMock(), recent_events=recent, commands=commands)

    with pytest.raises(ProfilerError):
        await server._run_command("start_capture", {"backend": "bogus"})

    assert [e["id"] for e in recent.events] == ["kept"]


@pytest.mark.asyncio
async def test_publish_drops_client_that_stops_reading():
    """A client with a full backlog is dropped without blocking publish."""
    server = SocketServer(socket_path=MagicMock(), recent_events=RecentEvents(10), max_backlog=100)
    stuck = MagicMock()
    stuck.transport.get_write_buffer_size.return_value = 101
    stuck.drain = AsyncMock(side_effect=AssertionError("publish must not wait on clients"))
    healthy = MagicMock()
    healthy.transport.get_write_buffer_size.return_value = 0
    healthy.drain = AsyncMock(side_effect=AssertionError("publish must not wait on clients"))
    server._clients = {stuck, healthy}

    await asyncio.wait_for(server.publish(QUERY_EVENT_TOPIC, make_event(id="e1").to_dict()), 1.0)

    assert server._clients == {healthy}
    stuck.write.assert_not_called()
    stuck.transport.abort.assert_called_once()
    healthy.write.assert_called_once()


@pytest.mark.asyncio
async def test_publish_does_not_stall_on_unread_socket(short_tmp_path):
    """A real client that never reads cannot stall the publisher."""
    socket_path = short_tmp_path / "test.sock"
    server = SocketServer(
        socket_path=socket_path, recent_events=RecentEvents(10), max_backlog=64 * 1024
    )
    await server.start()

    try:
        reader, writer = await asyncio.open_unix_connection(str(socket_path))
        await read_json(reader)
        await wait_until(lambda: server.has_clients)

        payload = make_event(id="big", sql_text="x" * 4096).to_dict()

        async def flood():
            for _ in range(2000):
                await server.publish(QUERY_EVENT_TOPIC, payload)

        await asyncio.wait_for(flood(), timeout=5.0)

        assert not server.has_clients
        writer.close()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_unknown_command():
    """Unknown commands are reported, not raised."""
    server = SocketServer(
        socket_path=MagicMock(), recent_events=RecentEvents(10), commands=make_commands()
    )
    with pytest.raises(ProfilerError, match="Unknown command"):
        await server._run_command("explode", {})


@pytest.mark.asyncio
async def test_command_without_supervisor():
    """Commands before a supervisor is attached fail cleanly."""
    server = SocketServer(socket_path=MagicMock(), recent_events=RecentEvents(10))
    with pytest.raises(ProfilerError, match="no supervisor"):
        await server._run_command("disconnect", {})


@pytest.mark.asyncio
async def test_invalid_json_keeps_connection(short_tmp_path):
    """Garbage from a client is logged and the connection stays usable."""
    socket_path = short_tmp_path / "test.sock"
    commands = make_commands()
    server = SocketServer(socket_path=socket_path, recent_events=RecentEvents(10), commands=commands)
    await server.start()

    try:
        reader, writer = await asyncio.open_unix_connection(str(socket_path))
        await read_json(reader)

        writer.write(b"not json\n")
        await send_json(writer, {"type": "command", "id": "r4", "command": "disconnect"})
        reply = await read_json(reader)

        assert reply["id"] == "r4"
        assert reply["ok"] is True

        writer.close()
        await writer.wait_closed()
    finally:
        await server.stop()


def test_log_message_written_with_client_tag():
    """Client log records are written to the daemon log tagged client=tui."""
    server = SocketServer(socket_path=MagicMock(), recent_events=RecentEvents(10))

    with patch("sql_profiler.socket_server.log") as mock_log:
        server._handle_log_message(
            {"type": "log", "level": "warning", "event": "tui_reconnect", "attempt": 3}
        )
        server._handle_log_message({"type": "log", "level": "bogus", "event": "x"})

    mock_log.warning.assert_called_once_with("tui_reconnect", client="tui", attempt=3)
    mock_log.info.assert_called_once_with("x", client="tui")


@pytest.mark.asyncio
async def test_client_disconnect_is_removed(short_tmp_path):
    """A client that goes away is dropped from the broadcast set."""
    socket_path = short_tmp_path / "test.sock"
    server = SocketServer(socket_path=socket_path, recent_events=RecentEvents(10))
    await server.start()

    try:
        reader, writer = await asyncio.open_unix_connection(str(socket_path))
        await read_json(reader)
        await wait_until(lambda: server.has_clients)

        writer.close()
        await writer.wait_closed()

        await wait_until(lambda: not server.has_clients, timeout=3.0)
    finally:
        await server.stop()
