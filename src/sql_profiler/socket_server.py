"""Unix socket server: the host sink for profiler status and query events.

Protocol: newline-delimited JSON messages.

Outbound (daemon -> client):
- initial_state: sent on connect with the latest status and recent events
- profiler-status / query-event: published records, as {"type", "data"}
- reply: result of a command sent by this client

Inbound (client -> daemon):
- command: connect | disconnect | start_capture | stop_capture
- log: a TUI log record, written to the daemon's JSON log
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from sql_profiler import logging as plog
from sql_profiler.config import ConnectionConfig
from sql_profiler.events import PROFILER_STATUS_TOPIC, QUERY_EVENT_TOPIC, ProfilerStatus
from sql_profiler.ringbuffer import RecentEvents
from sql_profiler.supervisor import ProfilerError

if TYPE_CHECKING:
    from sql_profiler.supervisor import ProfilerClient

log = structlog.get_logger()

COMMANDS = ("connect", "disconnect", "start_capture", "stop_capture")

_LOG_LEVELS = ("debug", "info", "warning", "error")

# Unsent bytes a client may hold before it is dropped
MAX_CLIENT_BACKLOG = 1024 * 1024


class SocketServer:
    """Unix domain socket server for real-time streaming to clients.

    Implements the publisher interface: the supervisor and poll loop call
    publish(), which fans out to every connected client. Delivery is
    best-effort; a client whose write fails is dropped.
    """

    def __init__(
        self,
        socket_path: Path,
        recent_events: RecentEvents,
        commands: ProfilerClient | None = None,
        default_connection: ConnectionConfig | None = None,
        max_backlog: int = MAX_CLIENT_BACKLOG,
    ) -> None:
        self.socket_path = socket_path
        self.max_backlog = max_backlog
        self.recent_events = recent_events
        self.commands = commands
        self.default_connection = default_connection or ConnectionConfig()
        self.status: dict[str, Any] = ProfilerStatus(connected=False, capturing=False).to_dict()
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self._command_tasks: set[asyncio.Task] = set()
        self._running = False

    @property
    def has_clients(self) -> bool:
        """Check if any clients are connected."""
        return len(self._clients) > 0

    async def start(self) -> None:
        """Start the socket server."""
        # Remove stale socket file
        if self.socket_path.exists():
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )

        # Owner only: commands carry the SQL Server password
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)

        self._running = True
        log.info("socket_server_started", path=str(self.socket_path))
        plog.socket_listening(str(self.socket_path))

    async def stop(self) -> None:
        """Stop the socket server."""
        self._running = False

        for task in list(self._command_tasks):
            task.cancel()
        if self._command_tasks:
            await asyncio.gather(*self._command_tasks, return_exceptions=True)
        self._command_tasks.clear()

        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("socket_server_stopped")
        plog.socket_stopped()

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Record and push a status or query-event payload to all clients."""
        if topic == QUERY_EVENT_TOPIC:
            self.recent_events.push(payload)
        elif topic == PROFILER_STATUS_TOPIC:
            self.status = payload

        if not self._clients:
            return

        data = json.dumps({"type": topic, "data": payload}).encode() + b"\n"

        # Never wait on a client: one that stops reading is dropped
        for writer in list(self._clients):
            try:
                backlog = writer.transport.get_write_buffer_size()
                if backlog > self.max_backlog:
                    log.warning("socket_client_lagging", backlog=backlog)
                    self._drop_client(writer)
                    continue
                writer.write(data)
            except Exception:
                self._drop_client(writer)

    def _drop_client(self, writer: asyncio.StreamWriter) -> None:
        self._clients.discard(writer)
        # abort() discards the unsent backlog; the client's read loop then cleans up
        writer.transport.abort()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a new client connection."""
        self._clients.add(writer)
        log.info("socket_client_connected", count=len(self._clients))
        plog.client_connected(len(self._clients))

        try:
            try:
                await self._send_initial_state(writer)
            except Exception:
                log.debug("socket_initial_state_failed")
                return  # Client disconnected, cleanup happens in finally

            while self._running:
                try:
                    line = await asyncio.wait_for(reader.readline(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                except (ConnectionError, ValueError):
                    break
                if not line:
                    break
                self._dispatch(line, writer)
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
            log.info("socket_client_disconnected", count=len(self._clients))
            plog.client_disconnected(len(self._clients))

    def _dispatch(self, line: bytes, writer: asyncio.StreamWriter) -> None:
        try:
            msg = json.loads(line.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("socket_invalid_message", preview=line[:80].decode(errors="replace"))
            plog.invalid_client_message()
            return
        if not isinstance(msg, dict):
            log.warning("socket_invalid_message", preview=str(msg)[:80])
            return

        msg_type = msg.get("type")
        if msg_type == "log":
            self._handle_log_message(msg)
        elif msg_type == "command":
            # Commands run concurrently with reading, so stop can follow a slow connect
            task = asyncio.create_task(self._handle_command(msg, writer))
            self._command_tasks.add(task)
            task.add_done_callback(self._command_tasks.discard)
        else:
            log.warning("socket_unknown_message", type=msg_type)

    def _handle_log_message(self, msg: dict[str, Any]) -> None:
        """Write a client log record to the daemon log."""
        level = msg.get("level", "info")
        if level not in _LOG_LEVELS:
            level = "info"
        event = str(msg.get("event", "client_log"))
        fields = {k: v for k, v in msg.items() if k not in ("type", "level", "event")}
        getattr(log, level)(event, client="tui", **fields)

    async def _handle_command(self, msg: dict[str, Any], writer: asyncio.StreamWriter) -> None:
        """Run one command through the supervisor and reply to the sender."""
        request_id = msg.get("id")
        command = msg.get("command")
        error: str | None = None
        try:
            await self._run_command(command, msg)
        except ProfilerError as e:
            error = str(e)
        except (TypeError, ValueError) as e:
            error = f"Invalid {command} request: {e}"

        log.info("socket_command", command=command, id=request_id, ok=error is None, error=error)
        reply = {"type": "reply", "id": request_id, "ok": error is None, "error": error}
        try:
            writer.write(json.dumps(reply).encode() + b"\n")
            await writer.drain()
        except Exception as e:
            log.debug("socket_reply_dropped", id=request_id, error=str(e))
            self._clients.discard(writer)

    async def _run_command(self, command: Any, msg: dict[str, Any]) -> None:
        if self.commands is None:
            raise ProfilerError("Internal error: no supervisor attached")
        if command == "connect":
            overrides = msg.get("config") or {}
            config = ConnectionConfig.from_dict({**self.default_connection.to_dict(), **overrides})
            await self.commands.connect(config)
        elif command == "disconnect":
            await self.commands.disconnect()
        elif command == "start_capture":
            await self.commands.start_capture(msg.get("backend"))
            # New capture, new feed; the first poll has not returned yet
            self.recent_events.clear()
        elif command == "stop_capture":
            await self.commands.stop_capture()
        else:
            raise ProfilerError(f"Unknown command: {command!r}. Valid commands: {list(COMMANDS)}")

    async def _send_initial_state(self, writer: asyncio.StreamWriter) -> None:
        """Send current status and recent events to a newly connected client."""
        message = {
            "type": "initial_state",
            "status": self.status,
            "events": self.recent_events.events,
        }
        data = json.dumps(message).encode() + b"\n"
        writer.write(data)
        await writer.drain()
