"""CLI commands for sql-profiler."""

from __future__ import annotations

from typing import Any

import click


@click.group()
@click.version_option()
def main() -> None:
    """Live query profiler for SQL Server."""
    pass


@main.command()
@click.option("--autostart", is_flag=True, help="Connect and start capturing immediately")
@click.option(
    "--backend",
    type=click.Choice(["extended_events", "live_requests", "classic_trace"]),
    default=None,
    help="Override the configured capture backend",
)
def daemon(autostart: bool, backend: str | None) -> None:
    """Run the profiler daemon."""
    import asyncio

    from sql_profiler.config import Config
    from sql_profiler.daemon import run_daemon

    cfg = Config.load()
    if backend:
        cfg.capture.backend = backend
    try:
        asyncio.run(run_daemon(cfg, autostart=autostart))
    except RuntimeError as e:
        raise click.ClickException(str(e)) from e


@main.command()
def tui() -> None:
    """Launch interactive query feed."""
    from sql_profiler.config import Config
    from sql_profiler.tui import run_tui

    config = Config.load()
    run_tui(config)


@main.command()
def status() -> None:
    """Quick health check."""
    import asyncio

    from sql_profiler.config import Config
    from sql_profiler.daemon import read_daemon_pid

    config = Config.load()

    pid = read_daemon_pid(config)
    if pid is None:
        click.echo("Daemon: stopped")
        return
    click.echo(f"Daemon: running (PID {pid})")

    try:
        state = asyncio.run(_read_initial_state(config))
    except (OSError, ConnectionError, TimeoutError) as e:
        click.echo(f"Socket: unavailable ({e})")
        return

    profiler = state.get("status", {})
    click.echo(f"Connected: {'yes' if profiler.get('connected') else 'no'}")
    click.echo(f"Capturing: {'yes' if profiler.get('capturing') else 'no'}")
    if profiler.get("error"):
        click.echo(f"Last error: {profiler['error']}")
    click.echo(f"Recent events: {len(state.get('events', []))}")


@main.command()
@click.option("--host", "-h", default=None, help="Server host (default from config)")
@click.option("--port", "-p", default=None, type=int, help="Server port")
@click.option("--user", "-u", "username", default=None, help="Login name")
@click.option(
    "--password",
    envvar="SQL_PROFILER_PASSWORD",
    default=None,
    help="Login password (or set SQL_PROFILER_PASSWORD)",
)
@click.option("--database", "-d", default=None, help="Initial database")
@click.option("--trust-cert/--verify-cert", default=None, help="Skip certificate validation")
def connect(
    host: str | None,
    port: int | None,
    username: str | None,
    password: str | None,
    database: str | None,
    trust_cert: bool | None,
) -> None:
    """Connect the daemon to a SQL Server."""
    overrides = {
        "host": host,
        "port": port,
        "username": username,
        "password": password,
        "database": database,
        "trust_cert": trust_cert,
    }
    config = {k: v for k, v in overrides.items() if v is not None}
    _run_command("connect", config=config)
    click.echo("Connected")


@main.command()
def disconnect() -> None:
    """Disconnect the daemon from the server."""
    _run_command("disconnect")
    click.echo("Disconnected")


@main.command()
@click.option(
    "--backend",
    type=click.Choice(["extended_events", "live_requests", "classic_trace"]),
    default=None,
    help="Capture backend (default from config)",
)
def start(backend: str | None) -> None:
    """Start capturing queries."""
    fields: dict[str, Any] = {}
    if backend:
        fields["backend"] = backend
    _run_command("start_capture", **fields)
    click.echo("Capture started")


@main.command()
def stop() -> None:
    """Stop capturing queries."""
    _run_command("stop_capture")
    click.echo("Capture stopped")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw query-event JSON lines")
@click.option(
    "--where",
    "-w",
    "conditions",
    multiple=True,
    help="Filter, e.g. 'elapsed_time>=100' or 'sql_text~orders' (repeatable, ANDed)",
)
@click.option("--no-replay", is_flag=True, help="Skip events captured before tail started")
def tail(as_json: bool, conditions: tuple[str, ...], no_replay: bool) -> None:
    """Stream captured queries to stdout."""
    import asyncio

    from sql_profiler.config import Config
    from sql_profiler.filters import parse_condition

    try:
        filters = [parse_condition(c) for c in conditions]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--where") from e

    config = Config.load()
    try:
        asyncio.run(_tail(config, filters, as_json=as_json, replay=not no_replay))
    except KeyboardInterrupt:
        pass
    except FileNotFoundError as e:
        raise click.ClickException("Daemon not running. Start with: sql-profiler daemon") from e
    except ConnectionError as e:
        raise click.ClickException(f"Lost connection to daemon: {e}") from e


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from sql_profiler.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[connection]")
    click.echo(f"  host = {cfg.connection.host}")
    click.echo(f"  port = {cfg.connection.port}")
    click.echo(f"  username = {cfg.connection.username}")
    click.echo(f"  password = {'********' if cfg.connection.password else ''}")
    click.echo(f"  database = {cfg.connection.database}")
    click.echo(f"  trust_cert = {cfg.connection.trust_cert}")
    click.echo(f"  driver = {cfg.connection.driver}")
    click.echo()
    click.echo("[capture]")
    click.echo(f"  backend = {cfg.capture.backend}")
    click.echo(f"  xe_interval = {cfg.capture.xe_interval}")
    click.echo(f"  live_interval = {cfg.capture.live_interval}")
    click.echo(f"  trace_interval = {cfg.capture.trace_interval}")
    click.echo(f"  trace_max_rows = {cfg.capture.trace_max_rows}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  command_queue_size = {cfg.system.command_queue_size}")
    click.echo(f"  recent_events = {cfg.system.recent_events}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from sql_profiler.config import Config

    cfg = Config.load()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from sql_profiler.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


# ─────────────────────────────────────────────────────────────────────────────
# Daemon socket helpers
# ─────────────────────────────────────────────────────────────────────────────


def _run_command(command: str, **fields: Any) -> None:
    """Send one command to the daemon; exit 1 with the error on failure."""
    import asyncio

    from sql_profiler.config import Config

    config = Config.load()
    try:
        reply = asyncio.run(_send_command(config, command, **fields))
    except FileNotFoundError as e:
        raise click.ClickException("Daemon not running. Start with: sql-profiler daemon") from e
    except (OSError, ConnectionError, TimeoutError) as e:
        raise click.ClickException(f"Daemon unreachable: {e}") from e

    if not reply.get("ok"):
        raise click.ClickException(reply.get("error") or "Command failed")


async def _send_command(config, command: str, **fields: Any) -> dict[str, Any]:
    from sql_profiler.socket_client import SocketClient

    client = SocketClient(socket_path=config.socket_path)
    await client.connect()
    try:
        request_id = await client.send_command(command, **fields)
        return await client.wait_reply(request_id)
    finally:
        await client.disconnect()


async def _read_initial_state(config) -> dict[str, Any]:
    from sql_profiler.socket_client import SocketClient

    client = SocketClient(socket_path=config.socket_path)
    await client.connect()
    try:
        while True:
            msg = await client.read_message(timeout=2.0)
            if msg.get("type") == "initial_state":
                return msg
    finally:
        await client.disconnect()


async def _tail(config, filters, *, as_json: bool, replay: bool) -> None:
    import json

    from sql_profiler.filters import matches_all
    from sql_profiler.socket_client import SocketClient

    client = SocketClient(socket_path=config.socket_path)
    await client.connect()

    def emit(event: dict[str, Any]) -> None:
        if not matches_all(event, filters):
            return
        if as_json:
            click.echo(json.dumps(event))
        else:
            click.echo(_format_event_line(event))

    try:
        while True:
            try:
                msg = await client.read_message(timeout=5.0)
            except TimeoutError:
                continue
            msg_type = msg.get("type")
            if msg_type == "initial_state":
                if replay:
                    for event in msg.get("events", []):
                        emit(event)
            elif msg_type == "query-event":
                emit(msg.get("data", {}))
            elif msg_type == "profiler-status":
                data = msg.get("data", {})
                if data.get("error"):
                    click.echo(f"# error: {data['error']}", err=True)
    finally:
        await client.disconnect()


def _format_event_line(event: dict[str, Any]) -> str:
    from sql_profiler.formatting import extract_time, format_count, format_ms, one_line_sql

    text = event.get("current_statement") or event.get("sql_text") or ""
    return (
        f"{extract_time(event.get('start_time', '')):12}  "
        f"{event.get('session_id', 0):>5}  "
        f"{(event.get('database_name') or '')[:16]:16}  "
        f"{format_ms(event.get('elapsed_time', 0)):>7}  "
        f"{format_ms(event.get('cpu_time', 0)):>7}  "
        f"{format_count(event.get('logical_reads', 0)):>9}  "
        f"{event.get('event_status', ''):9}  "
        f"{one_line_sql(text, 100)}"
    )
