"""Composition root: builds the receiver's state objects and the FastAPI app.

All shared state (ledger, store, processor, poller) is created here, owned by
the app, and reachable through ``app.state`` for tests and tooling. Nothing
holding events lives at module level.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from webhook_receiver import __version__
from webhook_receiver.api_client import PluginApiClient
from webhook_receiver.config import Settings, get_settings
from webhook_receiver.deliveries import WebhookDeliveryClient
from webhook_receiver.dispatcher import EventDispatcher
from webhook_receiver.handlers import WebhookReceiver, register_webhook_routes
from webhook_receiver.ledger import DedupLedger, InMemoryLedger, RedisLedger
from webhook_receiver.poller import WebhookPoller
from webhook_receiver.processor import Dispatch, EventProcessor
from webhook_receiver.store import EventStore
from webhook_receiver.verification import SignatureVerifier

logger = logging.getLogger(__name__)


def build_ledger(settings: Settings) -> DedupLedger:
    if settings.dedup_backend == "redis":
        logger.info("Using Redis dedup ledger at %s", settings.redis_url)
        return RedisLedger.from_url(
            settings.redis_url,
            ttl_seconds=settings.dedup_ttl_seconds,
            namespace=settings.plugin_slug,
        )
    logger.info("Using in-memory dedup ledger (not durable across restarts)")
    return InMemoryLedger()


def build_api_client(settings: Settings) -> PluginApiClient | None:
    """API client when credentials are configured, else None."""
    if not (settings.token_broker_url and settings.api_base_url):
        return None
    return PluginApiClient(
        token_broker_url=settings.token_broker_url,
        api_base_url=settings.api_base_url,
        client_id=settings.plugin_client_id,
        client_secret=settings.plugin_client_secret,
        audience=settings.token_audience,
        timeout=settings.poller_timeout_seconds,
        token_timeout=settings.token_timeout_seconds,
    )


def build_poller(
    settings: Settings,
    processor: EventProcessor,
    api_client: PluginApiClient,
) -> WebhookPoller:
    deliveries = WebhookDeliveryClient(
        api_client, settings.plugin_slug, settings.plugin_instance_id
    )
    return WebhookPoller(
        processor,
        deliveries,
        batch_size=settings.poller_batch_size,
        interval_seconds=settings.poller_interval_seconds,
        since=settings.poller_since,
        include_signature=settings.poller_include_signature,
        local_webhook_url=settings.local_webhook_url,
        replay_timeout=settings.replay_timeout_seconds,
    )


def create_app(
    settings: Settings | None = None,
    *,
    ledger: DedupLedger | None = None,
    dispatch: Dispatch | None = None,
    api_client: PluginApiClient | None = None,
) -> FastAPI:
    """Build the webhook receiver app.

    ``ledger``, ``dispatch`` and ``api_client`` override what ``settings``
    would build (tests, custom business handling).

    Raises:
        ConfigError: poller enabled without plugin/API configuration
    """
    settings = settings or get_settings()
    settings.validate_for_poller()

    api_client = api_client or build_api_client(settings)
    if dispatch is None:
        dispatch = EventDispatcher(fetch_entity=api_client.get_url if api_client else None)

    store = EventStore()
    processor = EventProcessor(ledger or build_ledger(settings), store, dispatch)

    key = settings.webhook_signing_key
    verifier = SignatureVerifier(key) if key else None
    receiver = WebhookReceiver(processor, verifier)

    poller = None
    if settings.poller_enabled and api_client is not None:
        poller = build_poller(settings, processor, api_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if poller is not None:
            poller.start()
        yield
        if poller is not None:
            poller.close()
        if api_client is not None:
            api_client.close()

    app = FastAPI(
        title="Plugin Webhook Receiver",
        description="Receives, verifies and deduplicates platform webhook events",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.processor = processor
    app.state.receiver = receiver
    app.state.poller = poller

    register_webhook_routes(app, receiver)
    return app
