"""Dedup ledger: the set of event_ids already processed.

Both implementations expose ``add(event_id) -> bool``, an atomic
test-and-add that returns True only for the first caller to present a
given id.

- InMemoryLedger: lock-guarded set. Forgotten on restart.
- RedisLedger: ``SET key 1 NX`` shared across processes and restarts.
  Redis errors raise TransientNetworkError; the event is never let through
  without a ledger entry.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

import redis

from webhook_receiver.errors import TransientNetworkError

logger = logging.getLogger(__name__)

# Key prefix for webhook dedup
_KEY_PREFIX = "webhook:seen"


class DedupLedger(Protocol):
    def add(self, event_id: str) -> bool:
        """Record ``event_id``; True if it was not already present."""
        ...


class InMemoryLedger:
    """Process-local ledger. Grows monotonically for the process lifetime."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    def add(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._seen:
                return False
            self._seen.add(event_id)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class RedisLedger:
    """Redis-backed ledger using SET NX for atomic check-and-mark."""

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = 0,
        namespace: str = "",
    ):
        self._redis = client
        self._ttl = ttl_seconds or None
        self._prefix = f"{_KEY_PREFIX}:{namespace}" if namespace else _KEY_PREFIX

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 0, namespace: str = "") -> RedisLedger:
        return cls(
            redis.from_url(redis_url, decode_responses=True),
            ttl_seconds=ttl_seconds,
            namespace=namespace,
        )

    def _key(self, event_id: str) -> str:
        return f"{self._prefix}:{event_id}"

    def add(self, event_id: str) -> bool:
        try:
            # SET NX returns True if the key was set (new), None if it existed
            was_set = self._redis.set(self._key(event_id), "1", nx=True, ex=self._ttl)
        except redis.RedisError as e:
            logger.warning("Redis unavailable for webhook dedup: %s", event_id, exc_info=True)
            raise TransientNetworkError(f"Dedup ledger unavailable: {e}") from e
        return bool(was_set)
