"""Profiler supervisor: the single owner of sessions and capture resources.

Commands arrive on a bounded queue and are handled strictly one at a time.
The poll loop runs on its own task and shares only the publisher and its run
flag with the supervisor. Only the supervisor arms or disarms the server-side
capture resource, and it always disarms before letting go of a capture.

States are derived from which fields are occupied:

    Idle        no control session
    Connected   control session, no poll task
    Capturing   control session, poll task, run flag set
"""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

import structlog

from sql_profiler import db
from sql_profiler import logging as plog
from sql_profiler.backends import BackendHandle, CaptureBackend, create_backend
from sql_profiler.config import CaptureConfig, ConnectionConfig
from sql_profiler.db import Session, SessionError
from sql_profiler.events import PROFILER_STATUS_TOPIC, ProfilerStatus
from sql_profiler.poll import PollLoop, PollWatermark, Publisher

log = structlog.get_logger()

Connector = Callable[[ConnectionConfig, str], Awaitable[Session]]


class ProfilerError(Exception):
    """Error returned to whoever sent a command. str(error) is the user-facing message."""


def _reply_future() -> asyncio.Future[str | None]:
    return asyncio.get_running_loop().create_future()


@dataclass
class Connect:
    config: ConnectionConfig
    reply: asyncio.Future[str | None] = field(default_factory=_reply_future, repr=False)


@dataclass
class Disconnect:
    reply: asyncio.Future[str | None] = field(default_factory=_reply_future, repr=False)


@dataclass
class StartCapture:
    backend: str | None = None  # None = configured default
    reply: asyncio.Future[str | None] = field(default_factory=_reply_future, repr=False)


@dataclass
class StopCapture:
    reply: asyncio.Future[str | None] = field(default_factory=_reply_future, repr=False)


@dataclass
class PollFailed:
    """Posted by a poll task that hit a non-transient error."""

    generation: int
    error: str


@dataclass
class Shutdown:
    pass


Command = Union[Connect, Disconnect, StartCapture, StopCapture, PollFailed, Shutdown]


def _reply(command: Any, error: str | None = None) -> None:
    reply = getattr(command, "reply", None)
    if reply is not None and not reply.done():
        reply.set_result(error)


class ProfilerSupervisor:
    """Serializes Connect / Disconnect / StartCapture / StopCapture."""

    def __init__(
        self,
        publisher: Publisher,
        capture_config: CaptureConfig | None = None,
        queue_size: int = 32,
        connect: Connector = db.connect,
    ) -> None:
        self.publisher = publisher
        self.capture_config = capture_config or CaptureConfig()
        self.queue: asyncio.Queue[Command] = asyncio.Queue(maxsize=queue_size)
        self._connect = connect

        self.control_session: Session | None = None
        self.active_config: ConnectionConfig | None = None
        self.active_handle: BackendHandle | None = None
        self.backend: CaptureBackend | None = None
        self.poll_task: asyncio.Task | None = None
        self.poll_session: Session | None = None
        self.run_flag: asyncio.Event | None = None
        self.watermark: PollWatermark | None = None

        self.status = ProfilerStatus(connected=False, capturing=False)
        self._backends: dict[str, CaptureBackend] = {}
        self._generation = 0

    @property
    def capturing(self) -> bool:
        return (
            self.control_session is not None
            and self.poll_task is not None
            and self.run_flag is not None
            and self.run_flag.is_set()
        )

    @property
    def state(self) -> str:
        if self.control_session is None:
            return "idle"
        if self.capturing:
            return "capturing"
        return "connected"

    def client(self) -> ProfilerClient:
        """Return a command client bound to this supervisor's queue."""
        return ProfilerClient(self.queue)

    async def run(self) -> None:
        """Process commands until close() or cancellation, then tear everything down."""
        log.info("supervisor_started", queue_size=self.queue.maxsize)
        try:
            while True:
                command = await self.queue.get()
                if isinstance(command, Shutdown):
                    break
                await self._dispatch(command)
        finally:
            await self._shutdown()
            log.info("supervisor_stopped")

    async def close(self) -> None:
        """Ask run() to finish after the commands already queued."""
        await self.queue.put(Shutdown())

    async def _dispatch(self, command: Command) -> None:
        log.debug("command_received", command=type(command).__name__, state=self.state)
        try:
            if isinstance(command, Connect):
                await self._handle_connect(command)
            elif isinstance(command, Disconnect):
                await self._handle_disconnect(command)
            elif isinstance(command, StartCapture):
                await self._handle_start(command)
            elif isinstance(command, StopCapture):
                await self._handle_stop(command)
            elif isinstance(command, PollFailed):
                await self._handle_poll_failed(command)
        except Exception as e:
            log.exception("command_failed", command=type(command).__name__, error=str(e))
            _reply(command, f"Internal error: {e}")

    # ─────────────────────────────────────────────────────────────────────
    # Command handlers
    # ─────────────────────────────────────────────────────────────────────

    async def _handle_connect(self, command: Connect) -> None:
        await self._teardown_capture()
        await self._close_control()

        config = command.config
        try:
            session = await self._connect(config, "control")
        except SessionError as e:
            message = str(e)
            log.error("connect_failed", host=config.host, port=config.port, error=message)
            plog.server_connect_failed(message)
            await self._emit_status(error=message)
            _reply(command, message)
            return

        self.control_session = session
        self.active_config = config
        log.info("connected", host=config.host, port=config.port, database=config.database)
        plog.server_connected(config.host, config.port, config.database)
        await self._emit_status()
        _reply(command)

    async def _handle_disconnect(self, command: Disconnect) -> None:
        await self._teardown_capture()
        was_connected = self.control_session is not None
        await self._close_control()
        if was_connected:
            log.info("disconnected")
            plog.server_disconnected()
        await self._emit_status()
        _reply(command)

    async def _handle_start(self, command: StartCapture) -> None:
        if self.control_session is None or self.active_config is None:
            _reply(command, "Not connected")
            return

        # An unknown backend leaves any running capture alone
        name = command.backend or self.capture_config.backend
        try:
            backend = self._backend(name)
        except ValueError as e:
            _reply(command, str(e))
            return

        await self._teardown_capture()
        backend.reset()

        try:
            handle = await backend.arm(self.control_session)
        except SessionError as e:
            # DDL may have failed halfway; drop whatever was created
            await self._disarm(backend, BackendHandle(backend=backend.name))
            await self._start_failed(command, str(e))
            return
        except BaseException:
            await self._disarm(backend, BackendHandle(backend=backend.name))
            raise

        # Recorded before the next await so shutdown can always disarm
        self.backend = backend
        self.active_handle = handle

        try:
            poll_session = await self._connect(self.active_config, "poll")
        except SessionError as e:
            await self._release_capture()
            await self._start_failed(command, str(e))
            return
        except BaseException:
            await self._release_capture()
            raise

        self._generation += 1
        self.poll_session = poll_session
        self.run_flag = asyncio.Event()
        self.run_flag.set()
        self.watermark = backend.initial_watermark()

        poll_loop = PollLoop(
            backend=backend,
            session=poll_session,
            watermark=self.watermark,
            publisher=self.publisher,
            run_flag=self.run_flag,
            on_fatal=functools.partial(self._post_poll_failed, self._generation),
            heartbeat_ticks=self.capture_config.heartbeat_ticks,
        )
        self.poll_task = asyncio.create_task(poll_loop.run(), name=f"poll-{name}")

        # Reply before the poll task first runs, so no event of this capture precedes it
        _reply(command)
        log.info("capture_started", backend=name, poll_interval=backend.poll_interval)
        plog.capture_started(name)
        await self._emit_status()

    async def _start_failed(self, command: StartCapture, message: str) -> None:
        log.error("capture_start_failed", error=message)
        plog.capture_start_failed(message)
        _reply(command, message)
        await self._emit_status(error=message)

    async def _handle_stop(self, command: StopCapture) -> None:
        if self.poll_task is None and self.active_handle is None:
            _reply(command)
            return

        backend, handle = self.backend, self.active_handle
        await self._stop_poll_task()
        _reply(command)
        await self._emit_status()
        await self._release_capture()
        if backend is not None:
            log.info("capture_stopped", backend=backend.name)
            plog.capture_stopped(backend.name)

    async def _handle_poll_failed(self, command: PollFailed) -> None:
        if command.generation != self._generation or self.poll_task is None:
            log.debug("stale_poll_failure_ignored", generation=command.generation)
            return
        await self._teardown_capture()
        await self._emit_status(error=command.error)

    async def _post_poll_failed(self, generation: int, error: str) -> None:
        await self.queue.put(PollFailed(generation=generation, error=error))

    # ─────────────────────────────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────────────────────────────

    async def _stop_poll_task(self) -> None:
        """Clear the run flag, then cancel and await the poll task."""
        if self.run_flag is not None:
            self.run_flag.clear()
        task = self.poll_task
        self.poll_task = None
        self.run_flag = None
        self.watermark = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.warning("poll_task_error", error=str(e))

    async def _release_capture(self) -> None:
        """Disarm the server-side resource and close the poll session."""
        backend, handle = self.backend, self.active_handle
        self.active_handle = None
        if backend is not None and handle is not None:
            await self._disarm(backend, handle)

        session = self.poll_session
        self.poll_session = None
        if session is not None:
            await session.close()

    async def _teardown_capture(self) -> None:
        await self._stop_poll_task()
        await self._release_capture()

    async def _disarm(self, backend: CaptureBackend, handle: BackendHandle) -> None:
        if self.control_session is None:
            log.warning("disarm_skipped", backend=backend.name, reason="no control session")
            return
        try:
            await backend.disarm(self.control_session, handle)
        except Exception as e:
            log.warning("disarm_failed", backend=backend.name, error=str(e))
            plog.disarm_failed(backend.name, str(e))

    async def _close_control(self) -> None:
        if self.backend is not None:
            self.backend.reset()
        session = self.control_session
        self.control_session = None
        self.active_config = None
        if session is not None:
            await session.close()

    async def _shutdown(self) -> None:
        await self._teardown_capture()
        await self._close_control()
        # Nobody will answer commands still waiting in the queue
        while not self.queue.empty():
            _reply(self.queue.get_nowait(), "Internal error: supervisor stopped")

    # ─────────────────────────────────────────────────────────────────────

    def _backend(self, name: str) -> CaptureBackend:
        if name not in self._backends:
            self._backends[name] = create_backend(name, self.capture_config)
        return self._backends[name]

    async def _emit_status(self, error: str | None = None) -> None:
        self.status = ProfilerStatus(
            connected=self.control_session is not None,
            capturing=self.capturing,
            error=error,
        )
        try:
            await self.publisher.publish(PROFILER_STATUS_TOPIC, self.status.to_dict())
        except Exception as e:
            log.debug("status_publish_dropped", error=str(e))


class ProfilerClient:
    """Sends commands to a supervisor and waits for the reply."""

    def __init__(self, queue: asyncio.Queue[Command]) -> None:
        self._queue = queue

    async def connect(self, config: ConnectionConfig) -> None:
        await self._request(Connect(config=config))

    async def disconnect(self) -> None:
        await self._request(Disconnect())

    async def start_capture(self, backend: str | None = None) -> None:
        await self._request(StartCapture(backend=backend))

    async def stop_capture(self) -> None:
        await self._request(StopCapture())

    async def _request(self, command: Connect | Disconnect | StartCapture | StopCapture) -> None:
        """Enqueue without waiting for room, then await the reply.

        Raises:
            ProfilerError: the command failed, or the supervisor could not take it
        """
        try:
            self._queue.put_nowait(command)
        except asyncio.QueueFull:
            raise ProfilerError("Internal error: command queue full") from None

        error = await command.reply
        if error is not None:
            raise ProfilerError(error)
