"""Webhook HTTP handlers: FastAPI routes for the push receiver.

POST /webhook:
1. Reads raw body (needed for HMAC verification)
2. Verifies signature when a signing key is configured -> 401 on failure
3. Parses JSON -> 400 on failure
4. Processes via the shared EventProcessor (dedup + dispatch)
5. Returns 200 for new AND duplicate events; senders use 200 only to stop
   retrying, so a redelivery is success, not an error

Security contract:
- Signature failure -> 401 before the body is parsed or the processor is touched
- Never return error details to the webhook caller (info disclosure)
- Dispatch failures never change the status code
- Log all webhook activity for audit trail

GET /events and DELETE /events expose the event store for integration tests.
"""

from __future__ import annotations

import logging
import threading
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from webhook_receiver.errors import (
    AuthenticationError,
    MalformedPayloadError,
    TransientNetworkError,
)
from webhook_receiver.models import parse_event
from webhook_receiver.processor import EventProcessor
from webhook_receiver.verification import (
    SIGNATURE_HEADER,
    SignatureVerifier,
    verify_or_raise,
)

logger = logging.getLogger(__name__)

TENANT_HEADER = "x-tenant"
API_DOMAIN_HEADER = "x-api-domain"


class WebhookReceiver:
    """Push-path request handling, independent of route registration."""

    def __init__(
        self,
        processor: EventProcessor,
        verifier: SignatureVerifier | None = None,
    ):
        self.processor = processor
        self.verifier = verifier
        self._counts: dict[str, int] = {}
        self._counts_lock = threading.Lock()
        if verifier is None:
            logger.warning(
                "No WEBHOOK_SIGNING_KEY configured; signature verification is disabled"
            )

    def counts(self) -> dict[str, int]:
        with self._counts_lock:
            return dict(self._counts)

    def _audit(self, status: str, event_kind: str, event_id: str, tenant: str | None) -> None:
        """Audit log for webhook activity."""
        with self._counts_lock:
            self._counts[status] = self._counts.get(status, 0) + 1
            count = self._counts[status]
        logger.info(
            "WEBHOOK_AUDIT event=%s id=%s tenant=%s status=%s count=%d",
            event_kind,
            event_id,
            tenant,
            status,
            count,
        )

    async def handle(self, request: Request) -> JSONResponse:
        start = time.time()

        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        tenant = request.headers.get(TENANT_HEADER)
        api_domain = request.headers.get(API_DOMAIN_HEADER)

        # 1. Verify signature
        if self.verifier is not None:
            try:
                verify_or_raise(self.verifier, body, signature)
            except AuthenticationError as e:
                logger.warning("Invalid webhook signature from tenant=%s: %s", tenant, e)
                self._audit("signature_failed", "unknown", "unknown", tenant)
                return JSONResponse({"error": "Invalid signature"}, status_code=401)

        # 2. Parse JSON payload
        try:
            event = parse_event(body)
        except MalformedPayloadError as e:
            logger.error("Failed to parse webhook payload: %s", e)
            self._audit("invalid_json", "unknown", "unknown", tenant)
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)

        logger.info(
            "Webhook received: entity=%s event=%s entity_id=%s event_id=%s tenant=%s domain=%s",
            event.entity,
            event.event_kind,
            event.entity_id,
            event.event_id,
            tenant,
            api_domain,
        )

        # 3. Idempotency check + processing (shared with the poller)
        try:
            is_new = await run_in_threadpool(self.processor.process_if_new, event)
        except TransientNetworkError:
            logger.exception("Dedup ledger unavailable for event_id=%s", event.event_id)
            self._audit("unavailable", event.event_kind, event.event_id, tenant)
            return JSONResponse({"error": "Temporarily unavailable"}, status_code=503)

        elapsed_ms = (time.time() - start) * 1000
        logger.debug("Webhook handled in %.1fms: %s", elapsed_ms, event.event_id)

        if not is_new:
            self._audit("duplicate", event.event_kind, event.event_id, tenant)
            return JSONResponse({"status": "ok", "message": "Already processed"})

        self._audit("processed", event.event_kind, event.event_id, tenant)
        return JSONResponse({"status": "ok"})


def register_webhook_routes(app: FastAPI, receiver: WebhookReceiver) -> None:
    """Register the push endpoint and the event query surface on ``app``."""

    @app.post("/webhook")
    async def receive_webhook(request: Request):
        """Receive a webhook event (signature-verified when a key is set)."""
        return await receiver.handle(request)

    @app.get("/webhook/status")
    async def webhook_status():
        """Webhook receive counts per outcome."""
        return {"counts": receiver.counts()}

    @app.get("/events")
    async def get_events(
        entity: str | None = None,
        event: str | None = None,
        entity_id: str | None = None,
    ):
        """Events received since startup, optionally filtered."""
        return receiver.processor.store.query(
            entity=entity, event_kind=event, entity_id=entity_id
        )

    @app.delete("/events")
    async def clear_events():
        """Clear the event store (between test runs). The dedup ledger is kept."""
        receiver.processor.store.clear()
        return {"status": "ok"}

    logger.info("Webhook routes registered: POST /webhook, GET|DELETE /events")
