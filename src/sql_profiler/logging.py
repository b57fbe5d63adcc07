"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Core log functions (log, info, warn, error)
3. Domain-specific helpers (capture_started, poll_failed, heartbeat, etc.)
4. Structlog configuration (configure, get_structlog)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from sql_profiler.config import Config

# Rich console for colorful human-readable output
_console = Console(highlight=False, stderr=True)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    HEARTBEAT = "[magenta]♡[/]"
    CAPTURE_START = "[bright_green]▶[/]"
    CAPTURE_STOP = "[bright_red]■[/]"
    SKIP = "[yellow]↷[/]"
    SIGNAL = "⚡"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def version_info(name: str, version: str) -> None:
    info(f"[bold cyan]{name}[/] v{version}")


def daemon_started() -> None:
    info("Daemon started", Icon.OK)


def daemon_stopping() -> None:
    info("Daemon stopping...", Icon.WAIT)


def daemon_stopped() -> None:
    info("Daemon stopped", Icon.OK)


def signal_received(name: str) -> None:
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def server_connected(host: str, port: int, database: str) -> None:
    """Log control session opened."""
    info(f"Connected to [cyan]{escape(host)},{port}[/] [dim]({escape(database)})[/]", Icon.CONNECTED)


def server_connect_failed(error_msg: str) -> None:
    error(f"Connect failed: {escape(error_msg)}", Icon.FAIL)


def server_disconnected() -> None:
    info("Disconnected from server", Icon.DISCONNECTED)


def capture_started(backend: str) -> None:
    info(f"Capture started [dim]({backend})[/]", Icon.CAPTURE_START)


def capture_start_failed(error_msg: str) -> None:
    error(f"Capture start failed: {escape(error_msg)}", Icon.FAIL)


def capture_stopped(backend: str) -> None:
    info(f"Capture stopped [dim]({backend})[/]", Icon.CAPTURE_STOP)


def poll_failed(error_msg: str) -> None:
    error(f"Poll failed, capture ended: {escape(error_msg)}", Icon.FAIL)


def poll_transient(backend: str) -> None:
    info(f"[dim]Transient poll error skipped ({backend})[/]", Icon.SKIP)


def disarm_failed(backend: str, error_msg: str) -> None:
    warn(f"Failed to release {backend} capture resource: {escape(error_msg)}")


def heartbeat(backend: str, recent: int, total: int) -> None:
    """Log periodic poll stats."""
    info(f"[cyan]{recent}[/] events [dim]({total} total, {backend})[/]", Icon.HEARTBEAT)


def socket_listening(path: str) -> None:
    info(f"Socket listening on [cyan]{path}[/]")


def socket_stopped() -> None:
    info("Socket server stopped")


def client_connected(count: int) -> None:
    suffix = "s" if count != 1 else ""
    info(f"Client connected [dim]({count} client{suffix})[/]", Icon.CONNECTED)


def client_disconnected(remaining: int) -> None:
    info(f"Client disconnected [dim]({remaining} remaining)[/]", Icon.DISCONNECTED)


def invalid_client_message() -> None:
    warn("Invalid client message")


def already_running(pid: int | None = None) -> None:
    if pid:
        error(f"Another daemon already running [dim](PID {pid})[/]", Icon.FAIL)
    else:
        error("Another daemon already running", Icon.FAIL)


def stale_pid_file(pid: int, reason: str) -> None:
    info(f"[dim]Stale PID file: PID {pid} {reason}[/]")


def config_created(path: str) -> None:
    info(f"Created config at [cyan]{path}[/]")


def config_summary(backend: str, host: str, port: int) -> None:
    info(f"Config: backend=[cyan]{backend}[/], server=[cyan]{escape(host)},{port}[/]")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, source: str = "daemon") -> None:
    """Configure structlog to write JSON Lines to the rotating daemon log.

    Console output is handled by Rich (see log functions above); structlog
    only writes to the JSON file for machine parsing.

    Args:
        config: Application config with paths
        source: Value of the "source" field on every record
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source(source),
                structlog.processors.format_exc_info,
            ],
        )
    )

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source(source),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_structlog() -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance for JSON file output."""
    return structlog.get_logger()
