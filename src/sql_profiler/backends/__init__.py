"""Capture backends: extended events, live requests, classic trace."""

from sql_profiler.backends.base import (
    RESOURCE_NAME,
    ActiveTrace,
    BackendHandle,
    CaptureBackend,
)
from sql_profiler.backends.live import LiveRequestsBackend
from sql_profiler.backends.trace import ClassicTraceBackend
from sql_profiler.backends.xevents import ExtendedEventsBackend
from sql_profiler.config import BACKEND_NAMES, CaptureConfig

__all__ = [
    "RESOURCE_NAME",
    "ActiveTrace",
    "BackendHandle",
    "CaptureBackend",
    "ClassicTraceBackend",
    "ExtendedEventsBackend",
    "LiveRequestsBackend",
    "create_backend",
]


def create_backend(name: str, config: CaptureConfig | None = None) -> CaptureBackend:
    """Build the named backend with intervals and limits from config."""
    config = config or CaptureConfig()
    if name == "extended_events":
        return ExtendedEventsBackend(
            poll_interval=config.xe_interval,
            ring_buffer_kb=config.ring_buffer_kb,
        )
    if name == "live_requests":
        return LiveRequestsBackend(poll_interval=config.live_interval)
    if name == "classic_trace":
        return ClassicTraceBackend(
            poll_interval=config.trace_interval,
            max_rows=config.trace_max_rows,
        )
    raise ValueError(f"Unknown backend: {name!r}. Valid backends: {list(BACKEND_NAMES)}")
