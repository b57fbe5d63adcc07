"""Background daemon for sql-profiler.

Hosts the supervisor and the socket server that fans its output out to the
TUI and CLI clients.
"""

from __future__ import annotations

import asyncio
import os
import signal

import psutil
import structlog

from sql_profiler import logging as plog
from sql_profiler.config import Config
from sql_profiler.ringbuffer import RecentEvents
from sql_profiler.socket_server import SocketServer
from sql_profiler.supervisor import ProfilerError, ProfilerSupervisor

log = structlog.get_logger()


class Daemon:
    """Wires the supervisor to the socket server and runs until signalled."""

    def __init__(self, config: Config, autostart: bool = False):
        self.config = config
        self.autostart = autostart
        self.recent_events = RecentEvents(max_events=config.system.recent_events)

        self._shutdown_event = asyncio.Event()
        self._socket_server: SocketServer | None = None
        self._supervisor: ProfilerSupervisor | None = None
        self._supervisor_task: asyncio.Task | None = None
        self._pid_written = False

    @property
    def supervisor(self) -> ProfilerSupervisor | None:
        return self._supervisor

    async def start(self) -> None:
        """Start the daemon and block until shutdown is requested."""
        from importlib.metadata import version

        pkg_version = version("sql-profiler")
        log.info("daemon_starting", version=pkg_version)
        plog.version_info("sql-profiler", pkg_version)

        capture = self.config.capture
        connection = self.config.connection
        log.info(
            "daemon_config",
            backend=capture.backend,
            host=connection.host,
            port=connection.port,
            database=connection.database,
            command_queue_size=self.config.system.command_queue_size,
        )
        plog.config_summary(capture.backend, connection.host, connection.port)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        if self._check_already_running():
            log.error("daemon_already_running")
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        self._socket_server = SocketServer(
            socket_path=self.config.socket_path,
            recent_events=self.recent_events,
            default_connection=connection,
        )
        self._supervisor = ProfilerSupervisor(
            publisher=self._socket_server,
            capture_config=capture,
            queue_size=self.config.system.command_queue_size,
        )
        self._socket_server.commands = self._supervisor.client()
        self._supervisor_task = asyncio.create_task(self._supervisor.run(), name="supervisor")

        await self._socket_server.start()

        log.info("daemon_started")
        plog.daemon_started()

        if self.autostart:
            await self._autostart()

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the daemon gracefully.

        The supervisor goes first so server-side capture resources are dropped
        while clients can still see the final status.
        """
        log.info("daemon_stopping")
        plog.daemon_stopping()

        if self._supervisor_task is not None and self._supervisor is not None:
            if not self._supervisor_task.done():
                await self._supervisor.close()
                try:
                    await asyncio.wait_for(self._supervisor_task, timeout=30.0)
                except asyncio.TimeoutError:
                    log.warning("supervisor_stop_timeout")
                    self._supervisor_task.cancel()
                    try:
                        await self._supervisor_task
                    except asyncio.CancelledError:
                        pass
            self._supervisor_task = None

        if self._socket_server:
            await self._socket_server.stop()
            self._socket_server = None

        if self._pid_written:
            self._remove_pid_file()

        log.info("daemon_stopped")
        plog.daemon_stopped()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def _autostart(self) -> None:
        """Connect with the configured server and start the configured backend."""
        assert self._supervisor is not None
        client = self._supervisor.client()
        try:
            await client.connect(self.config.connection)
            await client.start_capture(self.config.capture.backend)
        except ProfilerError as e:
            # Status already carries the error; stay up so a client can retry
            log.warning("autostart_failed", error=str(e))

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        plog.signal_received(sig.name)
        self._shutdown_event.set()

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._pid_written = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if daemon is already running.

        Verifies not just that a process with the PID exists, but that it's
        actually the sql-profiler daemon. A recycled PID after a reboot is
        treated as a stale file.
        """
        if not self.config.pid_path.exists():
            return False

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "sql-profiler" in cmdline_str or "sql_profiler" in cmdline_str:
                log.info("daemon_already_running_verified", pid=pid)
                plog.already_running(pid)
                return True
            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            plog.stale_pid_file(pid, "is a different process")
            self._remove_pid_file()
            return False
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            plog.stale_pid_file(pid, "not found")
            self._remove_pid_file()
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            plog.already_running(pid)
            return True


def read_daemon_pid(config: Config) -> int | None:
    """Return the PID of a live daemon, or None."""
    if not config.pid_path.exists():
        return None
    try:
        pid = int(config.pid_path.read_text().strip())
    except ValueError:
        return None
    if not psutil.pid_exists(pid):
        return None
    return pid


async def run_daemon(config: Config | None = None, autostart: bool = False) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        autostart: Connect and start capturing immediately
    """
    if config is None:
        config = Config.load()
    if not config.config_path.exists():
        config.save()
        plog.config_created(str(config.config_path))

    plog.configure(config)

    daemon = Daemon(config, autostart=autostart)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
