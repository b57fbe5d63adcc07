"""Live request sampling backend.

Samples sys.dm_exec_requests every tick. A request is reported as running
for as long as it is visible, then once more as completed after it
disappears. Nothing is created on the server.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from typing import TYPE_CHECKING

from sql_profiler.backends.base import BackendHandle, CaptureBackend
from sql_profiler.events import STATUS_COMPLETED, STATUS_RUNNING, PolledRow, QueryEvent
from sql_profiler.normalize import normalize_live_row
from sql_profiler.poll import PollWatermark

if TYPE_CHECKING:
    from sql_profiler.db import Session

# Session ids up to 50 are reserved for system processes
POLL_REQUESTS = """
SET NOCOUNT ON;

SELECT
    r.session_id,
    REPLACE(CONVERT(varchar(23), r.start_time, 121), ' ', 'T') AS start_time,
    DB_NAME(r.database_id) AS database_name,
    r.cpu_time,
    r.total_elapsed_time AS elapsed_time,
    r.reads,
    r.writes,
    r.logical_reads,
    r.row_count,
    t.text AS sql_text,
    SUBSTRING(
        t.text,
        (r.statement_start_offset / 2) + 1,
        ((CASE r.statement_end_offset
            WHEN -1 THEN DATALENGTH(t.text)
            ELSE r.statement_end_offset
          END - r.statement_start_offset) / 2) + 1
    ) AS current_statement,
    s.login_name,
    s.host_name,
    s.program_name
FROM sys.dm_exec_requests AS r
JOIN sys.dm_exec_sessions AS s ON s.session_id = r.session_id
OUTER APPLY sys.dm_exec_sql_text(r.sql_handle) AS t
WHERE r.session_id > 50
  AND r.session_id <> @@SPID
ORDER BY r.start_time ASC, r.session_id ASC;
"""

INITIAL_TIMESTAMP = "1970-01-01T00:00:00.000"

Key = tuple[int, str]


class LiveRequestsBackend(CaptureBackend):
    """Currently executing requests, sampled from DMVs."""

    name = "live_requests"
    event_status = STATUS_RUNNING
    uses_watermark = False

    def __init__(self, poll_interval: float = 1.0) -> None:
        super().__init__(poll_interval)
        # Last emitted event per (session_id, start_time), in first-seen order
        self.seen: dict[Key, QueryEvent] = {}

    async def arm(self, session: Session) -> BackendHandle:
        return BackendHandle(backend=self.name)

    async def poll(self, session: Session, watermark: PollWatermark) -> list[PolledRow]:
        rows = await session.simple(POLL_REQUESTS)
        return self.reconcile([normalize_live_row(row) for row in rows])

    def reconcile(self, sampled: list[PolledRow]) -> list[PolledRow]:
        """Turn one DMV sample into running/completed rows.

        Visible requests come out as running, keeping the id minted at first
        sighting. Requests seen last time but gone now come out once as
        completed, carrying their last sampled counters, and are forgotten.
        A completed row cut off by a stop mid-tick is not retried: the next
        capture starts from reset().
        """
        current: dict[Key, QueryEvent] = {}
        out: list[PolledRow] = []

        for row in sampled:
            key = row.event.key
            if key in current:
                continue  # MARS requests sharing a start time
            previous = self.seen.get(key)
            event_id = previous.id if previous is not None else str(uuid.uuid4())
            event = replace(row.event, id=event_id, event_status=STATUS_RUNNING)
            current[key] = event
            out.append(PolledRow(event=event))

        for key, previous in self.seen.items():
            if key not in current:
                out.append(PolledRow(event=replace(previous, event_status=STATUS_COMPLETED)))

        self.seen = current
        return out

    async def disarm(self, session: Session, handle: BackendHandle) -> None:
        return None

    def initial_watermark(self) -> PollWatermark:
        return PollWatermark(last_timestamp=INITIAL_TIMESTAMP)

    def reset(self) -> None:
        self.seen.clear()
