"""Extended-events ring buffer backend."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from sql_profiler.backends.base import RESOURCE_NAME, BackendHandle, CaptureBackend
from sql_profiler.events import PolledRow
from sql_profiler.normalize import normalize_xe_row
from sql_profiler.poll import PollWatermark

if TYPE_CHECKING:
    from sql_profiler.db import Session

log = structlog.get_logger()

# Same width and shape as the ring buffer's event/@timestamp
INITIAL_TIMESTAMP = "1970-01-01T00:00:00.0000000"

_EVENT_ACTIONS = """
    ACTION(
        sqlserver.database_name,
        sqlserver.username,
        sqlserver.client_hostname,
        sqlserver.client_app_name,
        sqlserver.session_id
    )
    WHERE (sqlserver.client_app_name <> N'{name}')"""

DROP_SESSION = f"""
IF EXISTS (SELECT 1 FROM sys.server_event_sessions WHERE name = '{RESOURCE_NAME}')
    DROP EVENT SESSION [{RESOURCE_NAME}] ON SERVER;
"""


def create_session_sql(ring_buffer_kb: int = 51200) -> str:
    """DDL that (re)creates and starts the event session."""
    actions = _EVENT_ACTIONS.format(name=RESOURCE_NAME)
    return f"""{DROP_SESSION}
CREATE EVENT SESSION [{RESOURCE_NAME}] ON SERVER
ADD EVENT sqlserver.rpc_completed({actions}
),
ADD EVENT sqlserver.sql_batch_completed({actions}
)
ADD TARGET package0.ring_buffer(SET max_memory = {int(ring_buffer_kb)})
WITH (
    MAX_DISPATCH_LATENCY = 1 SECONDS,
    TRACK_CAUSALITY = OFF
);

ALTER EVENT SESSION [{RESOURCE_NAME}] ON SERVER STATE = START;
"""


POLL_RING_BUFFER = f"""
SET NOCOUNT ON;
DECLARE @last_timestamp varchar(50) = ?;

SELECT
    event_data.value('(event/@name)[1]', 'varchar(50)') AS event_name,
    event_data.value('(event/@timestamp)[1]', 'varchar(50)') AS timestamp,
    event_data.value('(event/data[@name="duration"]/value)[1]', 'bigint') AS duration_us,
    event_data.value('(event/data[@name="cpu_time"]/value)[1]', 'bigint') AS cpu_time_us,
    event_data.value('(event/data[@name="logical_reads"]/value)[1]', 'bigint') AS logical_reads,
    event_data.value('(event/data[@name="physical_reads"]/value)[1]', 'bigint') AS physical_reads,
    event_data.value('(event/data[@name="writes"]/value)[1]', 'bigint') AS writes,
    event_data.value('(event/data[@name="row_count"]/value)[1]', 'bigint') AS row_count,
    event_data.value('(event/data[@name="statement"]/value)[1]', 'nvarchar(max)') AS statement_text,
    event_data.value('(event/data[@name="batch_text"]/value)[1]', 'nvarchar(max)') AS batch_text,
    event_data.value('(event/action[@name="database_name"]/value)[1]', 'nvarchar(128)') AS database_name,
    event_data.value('(event/action[@name="username"]/value)[1]', 'nvarchar(128)') AS login_name,
    event_data.value('(event/action[@name="client_hostname"]/value)[1]', 'nvarchar(128)') AS host_name,
    event_data.value('(event/action[@name="client_app_name"]/value)[1]', 'nvarchar(128)') AS program_name,
    event_data.value('(event/action[@name="session_id"]/value)[1]', 'int') AS session_id
FROM (
    SELECT CAST(t.target_data AS XML) AS target_data
    FROM sys.dm_xe_sessions AS s
    JOIN sys.dm_xe_session_targets AS t ON s.address = t.event_session_address
    WHERE s.name = '{RESOURCE_NAME}' AND t.target_name = 'ring_buffer'
) AS data
CROSS APPLY target_data.nodes('//RingBufferTarget/event') AS XEventData(event_data)
WHERE event_data.value('(event/@timestamp)[1]', 'varchar(50)') > @last_timestamp
ORDER BY event_data.value('(event/@timestamp)[1]', 'varchar(50)') ASC;
"""


class ExtendedEventsBackend(CaptureBackend):
    """rpc_completed and sql_batch_completed from an XE ring buffer."""

    name = "extended_events"

    def __init__(self, poll_interval: float = 0.5, ring_buffer_kb: int = 51200) -> None:
        super().__init__(poll_interval)
        self.ring_buffer_kb = ring_buffer_kb

    async def arm(self, session: Session) -> BackendHandle:
        await session.simple(create_session_sql(self.ring_buffer_kb))
        log.info("xe_session_created", name=RESOURCE_NAME, ring_buffer_kb=self.ring_buffer_kb)
        return BackendHandle(backend=self.name)

    async def poll(self, session: Session, watermark: PollWatermark) -> list[PolledRow]:
        rows = await session.parameterized(POLL_RING_BUFFER, watermark.last_timestamp)
        return [normalize_xe_row(row) for row in rows]

    async def disarm(self, session: Session, handle: BackendHandle) -> None:
        await session.simple(DROP_SESSION)
        log.info("xe_session_dropped", name=RESOURCE_NAME)

    def initial_watermark(self) -> PollWatermark:
        return PollWatermark(last_timestamp=INITIAL_TIMESTAMP)
