"""Published record types.

QueryEvent and ProfilerStatus field names are the serialization contract with
the host: the TUI and any socket consumer read them by name.
"""

from dataclasses import asdict, dataclass
from typing import Any

PROFILER_STATUS_TOPIC = "profiler-status"
QUERY_EVENT_TOPIC = "query-event"

RPC_COMPLETED = "rpc_completed"
SQL_BATCH_COMPLETED = "sql_batch_completed"
RUNNING_REQUEST = "running_request"

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"


@dataclass(frozen=True)
class QueryEvent:
    """One captured statement.

    This is THE canonical event schema. Backends produce it through the
    normalizer; the poll loop fills id, captured_at and event_status.
    """

    id: str
    session_id: int
    start_time: str  # Server timestamp, zero-padded ISO-8601
    event_name: str
    database_name: str
    cpu_time: int  # ms
    elapsed_time: int  # ms
    physical_reads: int
    writes: int
    logical_reads: int
    row_count: int
    sql_text: str
    current_statement: str
    login_name: str
    host_name: str
    program_name: str
    captured_at: str
    event_status: str

    @property
    def key(self) -> tuple[int, str]:
        """Identity of a live request across polls."""
        return (self.session_id, self.start_time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueryEvent":
        return cls(**{name: data[name] for name in cls.__dataclass_fields__})


@dataclass(frozen=True)
class ProfilerStatus:
    """Connection/capture state as seen by the host."""

    connected: bool
    capturing: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PolledRow:
    """A normalized row as returned by a backend poll.

    event_sequence is the classic trace EventSequence; 0 for backends that
    have none.
    """

    event: QueryEvent
    event_sequence: int = 0
