"""Event processor: the single idempotency gate.

Shared by the push path (POST /webhook) and the pull path (WebhookPoller),
so whichever delivers an event first wins and the other sees a duplicate.

Contract:
- Non-empty event_id: atomic test-and-add into the ledger; seen -> False,
  nothing recorded, nothing dispatched
- Empty event_id: never deduplicated, always processed
- New event: record in the store, dispatch exactly once, return True
- Dispatch failures are logged and swallowed
- Ledger failures (TransientNetworkError) propagate: the event was not
  marked seen, so the caller must let it be retried
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from webhook_receiver.dispatcher import EventDispatcher
from webhook_receiver.ledger import DedupLedger
from webhook_receiver.models import Event
from webhook_receiver.store import EventStore

logger = logging.getLogger(__name__)

Dispatch = Callable[[Event], Any]


class EventProcessor:
    """Deduplicates, records, and dispatches webhook events."""

    def __init__(
        self,
        ledger: DedupLedger,
        store: EventStore,
        dispatch: Dispatch | None = None,
    ):
        self.ledger = ledger
        self.store = store
        self._dispatch = dispatch or EventDispatcher()

    def process_if_new(self, event: Event) -> bool:
        """Process an event unless its event_id has been seen before.

        Returns:
            True if the event was new and processed, False if a duplicate
        """
        if event.event_id and not self.ledger.add(event.event_id):
            logger.debug("Duplicate event skipped: event_id=%s", event.event_id)
            return False

        logger.info(
            "Processing event: entity=%s event=%s entity_id=%s event_id=%s",
            event.entity,
            event.event_kind,
            event.entity_id,
            event.event_id,
        )
        self.store.record(event)

        try:
            self._dispatch(event)
        except Exception:
            logger.exception(
                "Dispatch failed for event %s/%s (event_id=%s)",
                event.entity,
                event.event_kind,
                event.event_id,
            )
        return True
