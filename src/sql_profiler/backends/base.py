"""Capture backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sql_profiler.events import STATUS_COMPLETED, PolledRow
from sql_profiler.poll import PollWatermark

if TYPE_CHECKING:
    from sql_profiler.db import Session

# Name of every server-side resource this profiler creates
RESOURCE_NAME = "SimpleSQLProfiler"


@dataclass(frozen=True)
class BackendHandle:
    """Server-side capture resource retained by the supervisor between arm and disarm."""

    backend: str


@dataclass(frozen=True)
class ActiveTrace(BackendHandle):
    """Classic trace created on the server."""

    trace_id: int = 0
    trace_file: str = ""


class CaptureBackend(ABC):
    """Strategy for collecting query events from the server.

    Only the supervisor calls arm/disarm, always on the control session.
    poll runs on the poll task's own session.
    """

    name: str = "unknown"
    event_status: str = STATUS_COMPLETED
    uses_watermark: bool = True

    def __init__(self, poll_interval: float) -> None:
        self.poll_interval = poll_interval

    @abstractmethod
    async def arm(self, session: Session) -> BackendHandle:
        """Create the server-side resource, dropping any stale one first."""

    @abstractmethod
    async def poll(self, session: Session, watermark: PollWatermark) -> list[PolledRow]:
        """Return rows newer than the watermark, in ascending server order."""

    @abstractmethod
    async def disarm(self, session: Session, handle: BackendHandle) -> None:
        """Release the server-side resource."""

    @abstractmethod
    def initial_watermark(self) -> PollWatermark:
        """Watermark for a fresh capture."""

    def reset(self) -> None:
        """Forget per-capture client state."""

    def is_transient(self, message: str) -> bool:
        """Return True if a poll error should be skipped rather than end the capture."""
        return False
