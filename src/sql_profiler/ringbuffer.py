"""Ring buffer of recently published query events.

Replayed to clients that connect mid-capture, so a freshly opened TUI does
not start from an empty feed.
"""

from collections import deque
from typing import Any


class RecentEvents:
    """Keeps the last max_events query-event payloads.

    Live-request events are keyed by id and updated in place, so a request
    seen running and then completed occupies a single slot.
    """

    def __init__(self, max_events: int = 200) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=max_events)

    def __len__(self) -> int:
        """Return number of events in buffer."""
        return len(self._events)

    @property
    def is_empty(self) -> bool:
        """Return True if buffer has no events."""
        return len(self._events) == 0

    @property
    def capacity(self) -> int:
        """Return maximum number of events the buffer can hold."""
        return self._events.maxlen or 0

    @property
    def events(self) -> list[dict[str, Any]]:
        """Read-only access to events, oldest first (returns a copy)."""
        return list(self._events)

    def push(self, event: dict[str, Any]) -> None:
        """Add an event, replacing an earlier payload with the same id."""
        event_id = event.get("id")
        if event_id:
            for i, existing in enumerate(self._events):
                if existing.get("id") == event_id:
                    self._events[i] = event
                    return
        self._events.append(event)

    def clear(self) -> None:
        """Empty the buffer."""
        self._events.clear()
