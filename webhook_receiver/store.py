"""In-memory event store: the query surface behind GET /events.

Append-only and thread-safe. Readers get a snapshot copy, so a query never
observes a list that a concurrent writer is still appending to. Intended for
local development and integration tests; swap for a real store in production.
"""

from __future__ import annotations

import threading

from webhook_receiver.models import Event


class EventStore:
    """Records event summaries in insertion order."""

    def __init__(self) -> None:
        self._events: list[dict[str, str]] = []
        self._lock = threading.Lock()

    def record(self, event: Event) -> None:
        summary = event.summary()
        with self._lock:
            self._events.append(summary)

    def query(
        self,
        entity: str | None = None,
        event_kind: str | None = None,
        entity_id: str | None = None,
    ) -> list[dict[str, str]]:
        """Return matching summaries in insertion order. Filters are ANDed."""
        with self._lock:
            snapshot = list(self._events)
        return [
            dict(e)
            for e in snapshot
            if (entity is None or e["entity"] == entity)
            and (event_kind is None or e["event"] == event_kind)
            and (entity_id is None or e["entity_id"] == entity_id)
        ]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
