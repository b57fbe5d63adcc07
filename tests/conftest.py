"""Shared test fixtures for sql-profiler."""

import asyncio
import tempfile
from pathlib import Path
from typing import Any, Iterator

import pytest

from sql_profiler.backends.base import BackendHandle, CaptureBackend
from sql_profiler.config import ConnectionConfig
from sql_profiler.db import SessionError
from sql_profiler.events import (
    PROFILER_STATUS_TOPIC,
    QUERY_EVENT_TOPIC,
    STATUS_COMPLETED,
    PolledRow,
    QueryEvent,
)
from sql_profiler.poll import PollWatermark


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    Unix socket paths are limited to ~104 characters and pytest's tmp_path
    is too long, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="sp_") as tmpdir:
        yield Path(tmpdir)


async def wait_until(condition, timeout=1.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_event_loop().time() + timeout
    while not condition():
        if asyncio.get_event_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


class FakeSession:
    """Scripted stand-in for db.Session.

    script(fragment, *results) registers results for statements containing
    fragment. Results are returned in order and the last one repeats. A
    result that is an Exception is raised instead.
    """

    def __init__(self, label: str = "control") -> None:
        self.label = label
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.closed = False
        self._scripts: list[tuple[str, list[Any]]] = []

    def script(self, fragment: str, *results: Any) -> None:
        self._scripts.append((fragment, list(results)))

    def ran(self, fragment: str) -> list[tuple[str, tuple[Any, ...]]]:
        """Calls whose statement contains fragment."""
        return [call for call in self.calls if fragment in call[0]]

    async def simple(self, statement: str) -> list[dict[str, Any]]:
        return await self._execute(statement, ())

    async def parameterized(self, statement: str, *params: Any) -> list[dict[str, Any]]:
        return await self._execute(statement, params)

    async def close(self) -> None:
        self.closed = True

    async def _execute(self, statement: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        self.calls.append((statement, params))
        if self.closed:
            raise SessionError("Query failed: session is closed")
        for fragment, results in self._scripts:
            if fragment in statement and results:
                result = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(result, Exception):
                    raise result
                return list(result)
        return []


class FakeConnector:
    """Replacement for db.connect that hands out FakeSessions."""

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []
        self.failures: dict[str, list[Exception]] = {}
        self.configs: list[ConnectionConfig] = []

    def fail_next(self, label: str, error: Exception) -> None:
        self.failures.setdefault(label, []).append(error)

    def by_label(self, label: str) -> list[FakeSession]:
        return [s for s in self.sessions if s.label == label]

    async def __call__(self, config: ConnectionConfig, label: str = "control") -> FakeSession:
        self.configs.append(config)
        pending = self.failures.get(label)
        if pending:
            raise pending.pop(0)
        session = FakeSession(label)
        self.sessions.append(session)
        return session


class RecordingPublisher:
    """Publisher that records every (topic, payload) pair."""

    def __init__(self, fail: bool = False) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.fail = fail
        self.on_publish = None

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self.on_publish is not None:
            self.on_publish(topic, payload)
        if self.fail:
            raise ConnectionError("host gone")
        self.published.append((topic, payload))

    @property
    def statuses(self) -> list[dict[str, Any]]:
        return [p for t, p in self.published if t == PROFILER_STATUS_TOPIC]

    @property
    def events(self) -> list[dict[str, Any]]:
        return [p for t, p in self.published if t == QUERY_EVENT_TOPIC]


class ScriptedBackend(CaptureBackend):
    """Backend whose poll results are scripted; records arm/disarm."""

    name = "extended_events"

    def __init__(self, polls: list[Any] | None = None, poll_interval: float = 0.01) -> None:
        super().__init__(poll_interval)
        self.polls = list(polls or [])
        self.transient_marker: str | None = None
        self.arm_error: Exception | None = None
        self.disarm_error: Exception | None = None
        self.arm_sessions: list[Any] = []
        self.disarm_sessions: list[Any] = []
        self.poll_sessions: list[Any] = []
        self.reset_count = 0

    @property
    def poll_count(self) -> int:
        return len(self.poll_sessions)

    async def arm(self, session) -> BackendHandle:
        self.arm_sessions.append(session)
        if self.arm_error is not None:
            raise self.arm_error
        return BackendHandle(backend=self.name)

    async def poll(self, session, watermark: PollWatermark) -> list[PolledRow]:
        self.poll_sessions.append(session)
        if not self.polls:
            return []
        item = self.polls.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def disarm(self, session, handle: BackendHandle) -> None:
        self.disarm_sessions.append(session)
        if self.disarm_error is not None:
            raise self.disarm_error

    def initial_watermark(self) -> PollWatermark:
        return PollWatermark(last_timestamp="1970-01-01T00:00:00.0000000")

    def reset(self) -> None:
        self.reset_count += 1

    def is_transient(self, message: str) -> bool:
        return self.transient_marker is not None and self.transient_marker in message


def make_event(**overrides: Any) -> QueryEvent:
    """Create a QueryEvent for testing."""
    fields: dict[str, Any] = {
        "id": "",
        "session_id": 55,
        "start_time": "2024-01-01T00:00:00.1000000",
        "event_name": "sql_batch_completed",
        "database_name": "master",
        "cpu_time": 1,
        "elapsed_time": 2,
        "physical_reads": 0,
        "writes": 0,
        "logical_reads": 10,
        "row_count": 1,
        "sql_text": "SELECT 1",
        "current_statement": "",
        "login_name": "sa",
        "host_name": "app01",
        "program_name": "pytest",
        "captured_at": "",
        "event_status": STATUS_COMPLETED,
    }
    fields.update(overrides)
    return QueryEvent(**fields)


def make_row(event_sequence: int = 0, **overrides: Any) -> PolledRow:
    """Create a PolledRow for testing."""
    return PolledRow(event=make_event(**overrides), event_sequence=event_sequence)


def make_xe_row(**overrides: Any) -> dict[str, Any]:
    """Create a ring buffer row as shredded by the XE poll query."""
    row: dict[str, Any] = {
        "event_name": "sql_batch_completed",
        "timestamp": "2024-01-01T00:00:00.1000000",
        "duration_us": 2500,
        "cpu_time_us": 1200,
        "logical_reads": 10,
        "physical_reads": 1,
        "writes": 0,
        "row_count": 1,
        "statement_text": None,
        "batch_text": "SELECT 1",
        "database_name": "master",
        "login_name": "sa",
        "host_name": "app01",
        "program_name": "pytest",
        "session_id": 55,
    }
    row.update(overrides)
    return row


def make_trace_row(**overrides: Any) -> dict[str, Any]:
    """Create a row as read back by fn_trace_gettable."""
    row: dict[str, Any] = {
        "event_class": 12,
        "start_time": "2024-01-01T00:00:00.100",
        "text_data": "SELECT 1",
        "host_name": "app01",
        "program_name": "pytest",
        "login_name": "sa",
        "spid": 55,
        "duration_us": 2500,
        "reads": 10,
        "writes": 0,
        "cpu_ms": 1,
        "database_name": "master",
        "row_count": 1,
        "event_sequence": 1,
    }
    row.update(overrides)
    return row


def make_live_row(**overrides: Any) -> dict[str, Any]:
    """Create a sys.dm_exec_requests sample row."""
    row: dict[str, Any] = {
        "session_id": 55,
        "start_time": "2024-01-01T00:00:00.100",
        "database_name": "master",
        "cpu_time": 5,
        "elapsed_time": 20,
        "reads": 0,
        "writes": 0,
        "logical_reads": 100,
        "row_count": 0,
        "sql_text": "WAITFOR DELAY '00:00:05'",
        "current_statement": "WAITFOR DELAY '00:00:05'",
        "login_name": "sa",
        "host_name": "app01",
        "program_name": "pytest",
    }
    row.update(overrides)
    return row
