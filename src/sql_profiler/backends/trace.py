"""Classic server-side trace backend.

For servers or permissions where extended events are unavailable. The trace
writes to a rollover file next to the server error log and is read back with
fn_trace_gettable. Rows carry an EventSequence, so the watermark is exact.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog

from sql_profiler.backends.base import RESOURCE_NAME, ActiveTrace, BackendHandle, CaptureBackend
from sql_profiler.db import SessionError
from sql_profiler.events import PolledRow
from sql_profiler.normalize import (
    TRACE_RPC_COMPLETED,
    TRACE_SQL_BATCH_COMPLETED,
    normalize_trace_row,
)
from sql_profiler.poll import PollWatermark

if TYPE_CHECKING:
    from sql_profiler.db import Session

log = structlog.get_logger()

TRACE_EVENTS = (TRACE_RPC_COMPLETED, TRACE_SQL_BATCH_COMPLETED)

# sp_trace_setevent column ids
TRACE_COLUMNS = {
    "TextData": 1,
    "HostName": 8,
    "ApplicationName": 10,
    "LoginName": 11,
    "SPID": 12,
    "Duration": 13,
    "StartTime": 14,
    "EndTime": 15,
    "Reads": 16,
    "Writes": 17,
    "CPU": 18,
    "DatabaseName": 35,
    "RowCounts": 48,
    "EventSequence": 51,
}

TRACE_FILE_ROLLOVER = 2
TRACE_MAX_FILE_MB = 50
TRANSIENT_ERROR_CODE = "19049"

# Same width as REPLACE(CONVERT(varchar(23), StartTime, 121), ' ', 'T')
INITIAL_TIMESTAMP = "1900-01-01T00:00:00.000"

_DROP_STALE_TRACES = rf"""
DECLARE @stale_id int = 0;
WHILE 1 = 1
BEGIN
    SELECT @stale_id = MIN(id) FROM sys.traces
    WHERE path LIKE N'%{RESOURCE_NAME}%' AND id > @stale_id;
    IF @stale_id IS NULL BREAK;
    BEGIN TRY EXEC sp_trace_setstatus @stale_id, 0; END TRY BEGIN CATCH PRINT ERROR_MESSAGE(); END CATCH;
    BEGIN TRY EXEC sp_trace_setstatus @stale_id, 2; END TRY BEGIN CATCH PRINT ERROR_MESSAGE(); END CATCH;
END
"""

_CREATE_TRACE = rf"""
DECLARE @suffix nvarchar(32) = ?;
DECLARE @errorlog nvarchar(260) = CAST(SERVERPROPERTY('ErrorLogFileName') AS nvarchar(260));
DECLARE @sep nchar(1) = CASE WHEN CHARINDEX(N'\', @errorlog) > 0 THEN N'\' ELSE N'/' END;
DECLARE @dir nvarchar(260) = LEFT(@errorlog, LEN(@errorlog) - CHARINDEX(@sep, REVERSE(@errorlog)) + 1);
DECLARE @base nvarchar(245) = @dir + N'{RESOURCE_NAME}_' + @suffix;
DECLARE @maxsize bigint = {TRACE_MAX_FILE_MB};
DECLARE @trace_id int;
DECLARE @rc int;
DECLARE @on bit = 1;

EXEC @rc = sp_trace_create @trace_id OUTPUT, {TRACE_FILE_ROLLOVER}, @base, @maxsize, NULL;
IF @rc <> 0
BEGIN
    RAISERROR(N'sp_trace_create failed with code %d', 16, 1, @rc);
    RETURN;
END
"""


def arm_trace_sql() -> str:
    """Script that replaces any stale trace and starts a new one.

    Takes one parameter (the file suffix) and selects trace_id, trace_file.
    """
    setevents = "\n".join(
        f"EXEC sp_trace_setevent @trace_id, {event_id}, {column_id}, @on;"
        for event_id in TRACE_EVENTS
        for column_id in TRACE_COLUMNS.values()
    )
    # ApplicationName NOT LIKE (logical AND = 0, comparison NOT LIKE = 7)
    setfilter = (
        f"EXEC sp_trace_setfilter @trace_id, {TRACE_COLUMNS['ApplicationName']}, 0, 7, "
        f"N'%{RESOURCE_NAME}%';"
    )
    return "\n".join(
        [
            "SET NOCOUNT ON;",
            _DROP_STALE_TRACES,
            _CREATE_TRACE,
            setevents,
            setfilter,
            "EXEC sp_trace_setstatus @trace_id, 1;",
            "SELECT @trace_id AS trace_id, @base + N'.trc' AS trace_file;",
        ]
    )


def poll_trace_sql(max_rows: int = 5000) -> str:
    """Watermarked read of the trace file. Parameters: file, last_timestamp, last_sequence."""
    return f"""
SET NOCOUNT ON;
DECLARE @file nvarchar(260) = ?;
DECLARE @last_timestamp varchar(23) = ?;
DECLARE @last_event_sequence bigint = ?;

SELECT TOP ({int(max_rows)})
    t.EventClass AS event_class,
    s.start_time,
    CAST(t.TextData AS nvarchar(max)) AS text_data,
    t.HostName AS host_name,
    t.ApplicationName AS program_name,
    t.LoginName AS login_name,
    t.SPID AS spid,
    t.Duration AS duration_us,
    t.Reads AS reads,
    t.Writes AS writes,
    t.CPU AS cpu_ms,
    t.DatabaseName AS database_name,
    t.RowCounts AS row_count,
    t.EventSequence AS event_sequence
FROM fn_trace_gettable(@file, 1) AS t
CROSS APPLY (
    SELECT REPLACE(CONVERT(varchar(23), t.StartTime, 121), ' ', 'T') AS start_time
) AS s
WHERE t.EventClass IN ({TRACE_RPC_COMPLETED}, {TRACE_SQL_BATCH_COMPLETED})
  AND t.StartTime IS NOT NULL
  AND (s.start_time > @last_timestamp
       OR (s.start_time = @last_timestamp AND t.EventSequence > @last_event_sequence))
ORDER BY s.start_time ASC, t.EventSequence ASC;
"""


STOP_TRACE = """
SET NOCOUNT ON;
DECLARE @trace_id int = ?;
BEGIN TRY EXEC sp_trace_setstatus @trace_id, 0; END TRY BEGIN CATCH PRINT ERROR_MESSAGE(); END CATCH;
BEGIN TRY EXEC sp_trace_setstatus @trace_id, 2; END TRY BEGIN CATCH PRINT ERROR_MESSAGE(); END CATCH;
"""


def is_transient_trace_error(message: str) -> bool:
    """True for errors seen while the server rolls over to the next trace file."""
    return "no more files" in message.lower() or TRANSIENT_ERROR_CODE in message


class ClassicTraceBackend(CaptureBackend):
    """RPC:Completed and SQL:BatchCompleted from a server-side trace file."""

    name = "classic_trace"

    def __init__(self, poll_interval: float = 0.3, max_rows: int = 5000) -> None:
        super().__init__(poll_interval)
        self.max_rows = max_rows
        self._poll_sql = poll_trace_sql(max_rows)
        self._trace_file: str | None = None

    async def arm(self, session: Session) -> ActiveTrace:
        suffix = uuid.uuid4().hex
        rows = await session.parameterized(arm_trace_sql(), suffix)
        if not rows or rows[0].get("trace_id") is None:
            raise SessionError("Trace setup failed: server returned no trace id")

        trace = ActiveTrace(
            backend=self.name,
            trace_id=int(rows[0]["trace_id"]),
            trace_file=str(rows[0]["trace_file"]),
        )
        self._trace_file = trace.trace_file
        log.info("trace_started", trace_id=trace.trace_id, trace_file=trace.trace_file)
        return trace

    async def poll(self, session: Session, watermark: PollWatermark) -> list[PolledRow]:
        if self._trace_file is None:
            raise SessionError("Trace poll failed: no active trace")
        rows = await session.parameterized(
            self._poll_sql,
            self._trace_file,
            watermark.last_timestamp,
            watermark.last_event_sequence,
        )
        return [normalize_trace_row(row) for row in rows]

    async def disarm(self, session: Session, handle: BackendHandle) -> None:
        self._trace_file = None
        if not isinstance(handle, ActiveTrace):
            return
        await session.parameterized(STOP_TRACE, handle.trace_id)
        log.info("trace_stopped", trace_id=handle.trace_id)

    def initial_watermark(self) -> PollWatermark:
        return PollWatermark(last_timestamp=INITIAL_TIMESTAMP)

    def reset(self) -> None:
        self._trace_file = None

    def is_transient(self, message: str) -> bool:
        return is_transient_trace_error(message)
