"""Webhook event dispatcher: routes a new event to business handling.

This is the plugin author's extension point. The default behaviour only
logs, except for Created/Updated events carrying a follow-up URL, which are
handed to ``fetch_entity`` (typically ``PluginApiClient.get_url``) when one
is configured.

Unknown event kinds are expected: the platform may add new ones. They are
logged and reported as "unrecognized", never raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from webhook_receiver.models import (
    ACTIVATED,
    CREATED,
    DAILY_HEARTBEAT,
    DEACTIVATED,
    DELETED,
    UPDATED,
    Event,
)

logger = logging.getLogger(__name__)

EntityFetcher = Callable[[str], Any]

# Event kinds without an entity payload -> outcome name
_LIFECYCLE_OUTCOMES: dict[str, str] = {
    ACTIVATED: "activated",
    DEACTIVATED: "deactivated",
    DAILY_HEARTBEAT: "heartbeat",
}


class EventDispatcher:
    """Default business dispatch for new events."""

    def __init__(self, fetch_entity: EntityFetcher | None = None):
        self._fetch_entity = fetch_entity

    def dispatch(self, event: Event) -> str:
        """Handle one new event. Returns the outcome name."""
        kind = event.event_kind

        if kind in (CREATED, UPDATED):
            return self._on_upsert(event)

        if kind == DELETED:
            logger.info("Entity deleted: %s %s", event.entity, event.entity_id)
            return "deleted"

        outcome = _LIFECYCLE_OUTCOMES.get(kind)
        if outcome is not None:
            logger.info("Plugin lifecycle event: %s", kind)
            return outcome

        logger.warning(
            "Unrecognized webhook event: %s/%s (event_id=%s)",
            event.entity,
            kind,
            event.event_id,
        )
        return "unrecognized"

    def _on_upsert(self, event: Event) -> str:
        url = event.follow_up_url
        if not url:
            logger.info(
                "%s %s %s without follow-up URL",
                event.entity,
                event.event_kind,
                event.entity_id,
            )
            return "no_url"

        if self._fetch_entity is None:
            logger.info("Fetch latest state from: %s", url)
            return "fetch_skipped"

        self._fetch_entity(url)
        logger.info("Fetched latest %s %s from %s", event.entity, event.entity_id, url)
        return "fetched"

    __call__ = dispatch
