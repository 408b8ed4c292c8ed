"""Test helpers shared across modules (import as ``tests.helpers``)."""

from __future__ import annotations

import json
import threading
from typing import Any

from webhook_receiver.config import Settings
from webhook_receiver.models import Event


class RecordingDispatch:
    """Thread-safe dispatch stand-in that remembers what it was given."""

    def __init__(self, error: Exception | None = None):
        self.events: list[Event] = []
        self._lock = threading.Lock()
        self._error = error

    def __call__(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)
        if self._error is not None:
            raise self._error

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.events)


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the developer's .env file."""
    return Settings(_env_file=None, **overrides)


def event_body(**fields: Any) -> bytes:
    """Webhook body as the platform sends it (compact JSON)."""
    return json.dumps(fields, separators=(",", ":")).encode()
