"""Mapping from backend row shapes to QueryEvent.

Every function here is pure and total: a row with missing or NULL columns
still yields an event (empty strings, zero counters). Nothing raises.
"""

from datetime import datetime
from typing import Any, Mapping

from sql_profiler.events import (
    RPC_COMPLETED,
    RUNNING_REQUEST,
    SQL_BATCH_COMPLETED,
    STATUS_COMPLETED,
    STATUS_RUNNING,
    PolledRow,
    QueryEvent,
)

Row = Mapping[str, Any]

INT32_MAX = 2**31 - 1

# Classic trace event classes
TRACE_RPC_COMPLETED = 10
TRACE_SQL_BATCH_COMPLETED = 12

_EVENT_NAMES = {
    "rpc_completed": RPC_COMPLETED,
    "rpc:completed": RPC_COMPLETED,
    "sql_batch_completed": SQL_BATCH_COMPLETED,
    "sql:batchcompleted": SQL_BATCH_COMPLETED,
    str(TRACE_RPC_COMPLETED): RPC_COMPLETED,
    str(TRACE_SQL_BATCH_COMPLETED): SQL_BATCH_COMPLETED,
}


def canonical_event_name(name: Any) -> str:
    """Map XE names, trace event classes and profiler labels to the canonical tag.

    Unknown names pass through lower-cased so nothing is silently relabelled.
    """
    if name is None:
        return ""
    key = str(name).strip().lower()
    return _EVENT_NAMES.get(key, key)


def us_to_ms(value: Any) -> int:
    """Convert microseconds to milliseconds, saturating to the int32 range."""
    return _saturate(_count(value) // 1000)


def _saturate(value: int) -> int:
    return min(max(value, 0), INT32_MAX)


def _count(value: Any) -> int:
    """Coerce a counter column to a non-negative int."""
    if value is None:
        return 0
    try:
        number = int(value)
    except (TypeError, ValueError):
        return 0
    return number if number > 0 else 0


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _timestamp(value: Any) -> str:
    """Return the server timestamp as a string without shortening it."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        # Fixed width: millisecond precision is what datetime columns carry
        return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
    return str(value)


def _select_text(event_name: str, statement: str, batch: str) -> tuple[str, str]:
    """Return (sql_text, current_statement) for a completed event."""
    if event_name == RPC_COMPLETED:
        return statement, statement
    return batch, ""


def normalize_xe_row(row: Row) -> PolledRow:
    """Normalize a row shredded from the extended-events ring buffer."""
    event_name = canonical_event_name(row.get("event_name"))
    sql_text, current_statement = _select_text(
        event_name,
        _text(row.get("statement_text")),
        _text(row.get("batch_text")),
    )
    return PolledRow(
        event=QueryEvent(
            id="",
            session_id=_count(row.get("session_id")),
            start_time=_timestamp(row.get("timestamp")),
            event_name=event_name,
            database_name=_text(row.get("database_name")),
            cpu_time=us_to_ms(row.get("cpu_time_us")),
            elapsed_time=us_to_ms(row.get("duration_us")),
            physical_reads=_count(row.get("physical_reads")),
            writes=_count(row.get("writes")),
            logical_reads=_count(row.get("logical_reads")),
            row_count=_count(row.get("row_count")),
            sql_text=sql_text,
            current_statement=current_statement,
            login_name=_text(row.get("login_name")),
            host_name=_text(row.get("host_name")),
            program_name=_text(row.get("program_name")),
            captured_at="",
            event_status=STATUS_COMPLETED,
        ),
    )


def normalize_trace_row(row: Row) -> PolledRow:
    """Normalize a row read from a classic trace file.

    Trace Duration is microseconds, CPU is already milliseconds, and Reads
    are logical reads. The trace has no physical read column.
    """
    event_name = canonical_event_name(row.get("event_class"))
    text_data = _text(row.get("text_data"))
    sql_text, current_statement = _select_text(event_name, text_data, text_data)
    return PolledRow(
        event=QueryEvent(
            id="",
            session_id=_count(row.get("spid")),
            start_time=_timestamp(row.get("start_time")),
            event_name=event_name,
            database_name=_text(row.get("database_name")),
            cpu_time=_saturate(_count(row.get("cpu_ms"))),
            elapsed_time=us_to_ms(row.get("duration_us")),
            physical_reads=0,
            writes=_count(row.get("writes")),
            logical_reads=_count(row.get("reads")),
            row_count=_count(row.get("row_count")),
            sql_text=sql_text,
            current_statement=current_statement,
            login_name=_text(row.get("login_name")),
            host_name=_text(row.get("host_name")),
            program_name=_text(row.get("program_name")),
            captured_at="",
            event_status=STATUS_COMPLETED,
        ),
        event_sequence=_signed(row.get("event_sequence")),
    )


def normalize_live_row(row: Row) -> PolledRow:
    """Normalize a sys.dm_exec_requests sample of a running request.

    DMV cpu_time and total_elapsed_time are already milliseconds.
    """
    return PolledRow(
        event=QueryEvent(
            id="",
            session_id=_count(row.get("session_id")),
            start_time=_timestamp(row.get("start_time")),
            event_name=RUNNING_REQUEST,
            database_name=_text(row.get("database_name")),
            cpu_time=_saturate(_count(row.get("cpu_time"))),
            elapsed_time=_saturate(_count(row.get("elapsed_time"))),
            physical_reads=_count(row.get("reads")),
            writes=_count(row.get("writes")),
            logical_reads=_count(row.get("logical_reads")),
            row_count=_count(row.get("row_count")),
            sql_text=_text(row.get("sql_text")),
            current_statement=_text(row.get("current_statement")),
            login_name=_text(row.get("login_name")),
            host_name=_text(row.get("host_name")),
            program_name=_text(row.get("program_name")),
            captured_at="",
            event_status=STATUS_RUNNING,
        ),
    )


def _signed(value: Any) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
