"""SQL Server session wrapper.

pyodbc is blocking, so every driver call runs on a single worker thread owned
by the session. The event loop never blocks and a connection is never touched
by two threads at once.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

import pyodbc
import structlog

from sql_profiler.config import ConnectionConfig

log = structlog.get_logger()

T = TypeVar("T")

Row = dict[str, Any]

# Filters in every capture backend exclude this application name
APPLICATION_NAME = "SimpleSQLProfiler"

# SQLSTATEs meaning the server was never reached
_NETWORK_SQLSTATES = {"08001", "08S01", "HYT00", "HYT01"}


class SessionError(Exception):
    """Database session failure.

    str(error) is a human-readable message prefixed by the failing stage,
    e.g. "TCP connection failed: ...". Driver errors are collapsed into it.
    """


def build_connection_string(config: ConnectionConfig) -> str:
    """Build the ODBC connection string.

    Encryption is always required. trust_cert skips certificate chain
    validation; otherwise the system trust store is used.
    """
    parts = {
        "DRIVER": f"{{{config.driver}}}",
        "SERVER": f"tcp:{config.host},{config.port}",
        "DATABASE": config.database,
        "UID": config.username,
        "PWD": _quote(config.password),
        "Encrypt": "yes",
        "TrustServerCertificate": "yes" if config.trust_cert else "no",
        "APP": APPLICATION_NAME,
    }
    return ";".join(f"{key}={value}" for key, value in parts.items())


def _quote(value: str) -> str:
    """Brace-quote a value that contains ODBC delimiters."""
    if any(ch in value for ch in ";{}=") or value != value.strip():
        return "{" + value.replace("}", "}}") + "}"
    return value


def _sqlstate(error: pyodbc.Error) -> str:
    return str(error.args[0]) if error.args else ""


def _message(error: pyodbc.Error) -> str:
    return str(error.args[-1]) if error.args else str(error)


def _connect_error(error: pyodbc.Error) -> SessionError:
    """Collapse a pyodbc connect failure into a stage-prefixed SessionError."""
    state = _sqlstate(error)
    if isinstance(error, pyodbc.InterfaceError) and state == "IM002":
        return SessionError(f"ODBC driver unavailable: {_message(error)}")
    if state in _NETWORK_SQLSTATES:
        return SessionError(f"TCP connection failed: {_message(error)}")
    return SessionError(f"SQL Server connection failed: {_message(error)}")


class Session:
    """One open SQL Server connection."""

    def __init__(self, conn: pyodbc.Connection, executor: ThreadPoolExecutor, label: str) -> None:
        self._conn: pyodbc.Connection | None = conn
        self._executor = executor
        self._active_cursor: pyodbc.Cursor | None = None
        self.label = label

    @property
    def closed(self) -> bool:
        return self._conn is None

    async def simple(self, statement: str) -> list[Row]:
        """Execute a batch without parameters."""
        return await self._run(self._execute_sync, statement, ())

    async def parameterized(self, statement: str, *params: Any) -> list[Row]:
        """Execute a batch with positional ``?`` parameters."""
        return await self._run(self._execute_sync, statement, params)

    async def close(self) -> None:
        """Close the connection, cancelling any statement still running."""
        conn = self._conn
        if conn is None:
            return
        self._conn = None

        cursor = self._active_cursor
        if cursor is not None:
            try:
                cursor.cancel()
            except pyodbc.Error as e:
                log.debug("session_cancel_failed", session=self.label, error=_message(e))

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._executor, conn.close)
        except pyodbc.Error as e:
            log.debug("session_close_failed", session=self.label, error=_message(e))
        finally:
            self._executor.shutdown(wait=False)
        log.debug("session_closed", session=self.label)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        if self._conn is None:
            raise SessionError("Query failed: session is closed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def _execute_sync(self, statement: str, params: tuple[Any, ...]) -> list[Row]:
        """Run a batch and drain every result set.

        Returns the rows of the first result set that has columns. Draining
        the rest surfaces errors raised by later statements in the batch and
        leaves the connection ready for the next call.
        """
        conn = self._conn
        if conn is None:
            raise SessionError("Query failed: session is closed")

        rows: list[Row] | None = None
        try:
            cursor = conn.cursor()
        except pyodbc.Error as e:
            raise SessionError(f"Query failed: {_message(e)}") from e

        self._active_cursor = cursor
        try:
            if params:
                cursor.execute(statement, *params)
            else:
                cursor.execute(statement)
            while True:
                if rows is None and cursor.description is not None:
                    columns = [column[0] for column in cursor.description]
                    rows = [dict(zip(columns, record)) for record in cursor.fetchall()]
                if not cursor.nextset():
                    break
        except pyodbc.Error as e:
            raise SessionError(f"Query failed: {_message(e)}") from e
        finally:
            self._active_cursor = None
            try:
                cursor.close()
            except pyodbc.Error:
                pass  # Connection already gone
        return rows or []


async def connect(config: ConnectionConfig, label: str = "control") -> Session:
    """Open an encrypted session to the configured server.

    Raises:
        SessionError: with a stage-prefixed message on any failure
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"sql-{label}")
    conn_str = build_connection_string(config)

    def _open() -> pyodbc.Connection:
        return pyodbc.connect(conn_str, autocommit=True, timeout=config.login_timeout)

    loop = asyncio.get_running_loop()
    try:
        conn = await loop.run_in_executor(executor, _open)
    except pyodbc.Error as e:
        executor.shutdown(wait=False)
        raise _connect_error(e) from e
    except BaseException:
        executor.shutdown(wait=False)
        raise

    log.info(
        "session_opened",
        session=label,
        host=config.host,
        port=config.port,
        database=config.database,
    )
    return Session(conn, executor, label)
