"""Periodic poll loop and client-side de-duplication watermark.

No server-side cursor is kept. At-most-once delivery across overlapping polls
is enforced here, against (last_timestamp, last_event_sequence) plus a set of
fingerprints for rows that carry no sequence number.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

import structlog

from sql_profiler import logging as plog
from sql_profiler.events import QUERY_EVENT_TOPIC, PolledRow, QueryEvent

if TYPE_CHECKING:
    from sql_profiler.backends.base import CaptureBackend
    from sql_profiler.db import Session

log = structlog.get_logger()

Fingerprint = tuple[Any, ...]


class Publisher(Protocol):
    """Host sink offering the profiler-status and query-event topics."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


def fingerprint(event: QueryEvent) -> Fingerprint:
    """Identity of a row that has no event sequence."""
    return (
        event.event_name,
        event.session_id,
        event.elapsed_time,
        event.cpu_time,
        event.logical_reads,
        event.physical_reads,
        event.writes,
        event.row_count,
        event.database_name,
        event.sql_text,
    )


@dataclass
class PollWatermark:
    """Per-capture de-duplication cursor.

    Timestamps compare as strings: the server format is zero-padded
    fixed-width ISO-8601, so lexicographic order is chronological order.
    """

    last_timestamp: str
    last_event_sequence: int = -1  # -1 = no sequence observed at last_timestamp
    fingerprints: set[Fingerprint] = field(default_factory=set)

    def admit(self, row: PolledRow) -> bool:
        """Return True if the row is new, advancing the watermark.

        Rows must be offered in server order (start_time, event_sequence ASC).
        """
        start_time = row.event.start_time
        if start_time < self.last_timestamp:
            return False
        if start_time > self.last_timestamp:
            self.last_timestamp = start_time
            self.last_event_sequence = -1
            self.fingerprints.clear()

        if row.event_sequence > 0:
            if row.event_sequence <= self.last_event_sequence:
                return False
            self.last_event_sequence = row.event_sequence
            return True

        fp = fingerprint(row.event)
        if fp in self.fingerprints:
            return False
        self.fingerprints.add(fp)
        # Sequence-bearing rows at this timestamp must not replay afterwards
        if self.last_event_sequence < 0:
            self.last_event_sequence = 0
        return True


class PollLoop:
    """Drives one capture: poll, de-duplicate, stamp, publish.

    Runs on its own task. Stops when run_flag is cleared (checked at the top
    of every tick and between events) or when the task is cancelled.
    """

    def __init__(
        self,
        backend: CaptureBackend,
        session: Session,
        watermark: PollWatermark,
        publisher: Publisher,
        run_flag: asyncio.Event,
        on_fatal: Callable[[str], Awaitable[None]],
        heartbeat_ticks: int = 120,
    ) -> None:
        self.backend = backend
        self.session = session
        self.watermark = watermark
        self.publisher = publisher
        self.run_flag = run_flag
        self.on_fatal = on_fatal
        self.heartbeat_ticks = heartbeat_ticks
        self.published = 0
        self.ticks = 0

    async def run(self) -> None:
        """Tick until stopped.

        Ticks that overrun the interval are not made up: the next tick starts
        immediately and the schedule continues from there.
        """
        loop = asyncio.get_running_loop()
        interval = self.backend.poll_interval
        heartbeat_published = 0

        while self.run_flag.is_set():
            tick_start = loop.time()
            try:
                rows = await self.backend.poll(self.session, self.watermark)
            except Exception as e:
                message = str(e)
                if self.backend.is_transient(message):
                    log.info("poll_transient_skipped", backend=self.backend.name, error=message)
                    plog.poll_transient(self.backend.name)
                else:
                    log.error("poll_failed", backend=self.backend.name, error=message)
                    plog.poll_failed(message)
                    await self.on_fatal(message)
                    return
            else:
                count = await self.publish_rows(rows)
                heartbeat_published += count

            self.ticks += 1
            if self.heartbeat_ticks and self.ticks % self.heartbeat_ticks == 0:
                log.info(
                    "poll_heartbeat",
                    backend=self.backend.name,
                    ticks=self.ticks,
                    published=heartbeat_published,
                    total=self.published,
                    watermark=self.watermark.last_timestamp,
                )
                plog.heartbeat(self.backend.name, heartbeat_published, self.published)
                heartbeat_published = 0

            elapsed = loop.time() - tick_start
            sleep_time = interval - elapsed
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)

    async def publish_rows(self, rows: list[PolledRow]) -> int:
        """Publish rows from one tick in server order. Returns the count published."""
        if not rows:
            return 0

        captured_at = datetime.now(timezone.utc).isoformat()
        count = 0
        for row in rows:
            if not self.run_flag.is_set():
                break
            if self.backend.uses_watermark and not self.watermark.admit(row):
                continue
            event = replace(
                row.event,
                id=row.event.id or str(uuid.uuid4()),
                captured_at=captured_at,
                event_status=row.event.event_status or self.backend.event_status,
            )
            try:
                await self.publisher.publish(QUERY_EVENT_TOPIC, event.to_dict())
            except Exception as e:
                log.debug("publish_dropped", event_id=event.id, error=str(e))
                continue
            count += 1

        self.published += count
        return count
