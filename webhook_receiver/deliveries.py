"""Webhook delivery API client.

Wraps the delivery endpoints of a plugin instance:

    GET  /api/v1/plugins/{slug}/instances/{id}/webhook-deliveries/poll
    GET  /api/v1/plugins/{slug}/instances/{id}/webhook-deliveries
    POST /api/v1/plugins/{slug}/instances/{id}/webhook-deliveries/{delivery_id}/replay

The poll endpoint is keyset-paginated: ``after`` is the id of the last
delivery already consumed, ``since`` bounds the very first poll.
"""

from __future__ import annotations

import logging
from typing import Any

from webhook_receiver.api_client import PluginApiClient
from webhook_receiver.models import extract_page

logger = logging.getLogger(__name__)


class WebhookDeliveryClient:
    """Delivery polling, listing and replay for one plugin instance."""

    def __init__(self, api: PluginApiClient, plugin_slug: str, instance_id: int):
        self._api = api
        self.plugin_slug = plugin_slug
        self.instance_id = instance_id

    @property
    def base_path(self) -> str:
        return f"/api/v1/plugins/{self.plugin_slug}/instances/{self.instance_id}/webhook-deliveries"

    @staticmethod
    def poll_params(
        *,
        limit: int,
        after: str | None = None,
        since: str | None = None,
        include_signature: bool = False,
    ) -> dict[str, Any]:
        """Query parameters for one poll; ``after`` takes precedence over ``since``."""
        params: dict[str, Any] = {"limit": limit}
        if after:
            params["after"] = after
        elif since:
            params["since"] = since
        if include_signature:
            params["include_signature"] = 1
        return params

    def poll(
        self,
        *,
        limit: int,
        after: str | None = None,
        since: str | None = None,
        include_signature: bool = False,
    ) -> list[Any]:
        """Fetch one page of delivery records (raw, in page order).

        Raises:
            TransientNetworkError: request or token acquisition failed
            MalformedPayloadError: response is not a delivery page
        """
        params = self.poll_params(
            limit=limit, after=after, since=since, include_signature=include_signature
        )
        data = self._api.get(f"{self.base_path}/poll", params=params)
        return extract_page(data)

    def list_deliveries(self) -> Any:
        """List deliveries (status, attempts, last_http_status, created_at)."""
        data = self._api.get(self.base_path)
        logger.info(
            "Listed webhook deliveries for plugin=%s instance=%s",
            self.plugin_slug,
            self.instance_id,
        )
        return data

    def replay_delivery(self, delivery_id: str | int) -> Any:
        """Re-queue a delivery for another attempt by the platform."""
        data = self._api.post(f"{self.base_path}/{delivery_id}/replay")
        logger.info(
            "Replayed webhook delivery %s for plugin=%s instance=%s",
            delivery_id,
            self.plugin_slug,
            self.instance_id,
        )
        return data
