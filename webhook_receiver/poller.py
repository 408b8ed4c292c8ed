"""Webhook delivery poller: pulls deliveries when inbound POSTs can't reach us.

Useful when the receiver runs behind NAT/a firewall. Each cycle fetches one
page of deliveries after the cursor and feeds them into the shared
EventProcessor, so events that were also pushed are deduplicated.

Modes:
- direct (default): each delivery's payload goes straight to
  ``processor.process_if_new`` (skips signature verification)
- signature replay (``include_signature=True``): the API returns the original
  headers, including ``x-webhook-signature``, and each delivery is re-POSTed
  to the local /webhook endpoint, exercising the exact push-path
  authentication

Cursor rules:
- absent at start; the first poll uses ``since`` if configured
- after a non-empty page, set to the id of the last delivery that has one,
  even when every delivery was a duplicate
- never rewound; unchanged when a cycle fails (the next cycle retries the same
  page, which is safe because the processor deduplicates)

Scheduling: one daemon thread runs a cycle, then waits the fixed interval.
Cycles never overlap and failures never stop the loop.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass

import httpx

from webhook_receiver.deliveries import WebhookDeliveryClient
from webhook_receiver.errors import MalformedPayloadError, TransientNetworkError
from webhook_receiver.models import Delivery, parse_delivery
from webhook_receiver.processor import EventProcessor

logger = logging.getLogger(__name__)

# Headers describing the original connection; httpx sets its own
_NON_FORWARDED_HEADERS = {"host", "content-length", "transfer-encoding", "connection"}


@dataclass
class PollResult:
    """Outcome of one poll cycle."""

    fetched: int = 0
    new: int = 0
    skipped: int = 0
    rejected: int = 0
    cursor: str | None = None


class WebhookPoller:
    """Cursor-paginated delivery poller feeding the shared EventProcessor."""

    def __init__(
        self,
        processor: EventProcessor,
        deliveries: WebhookDeliveryClient,
        *,
        batch_size: int = 50,
        interval_seconds: float = 10.0,
        since: str | None = None,
        include_signature: bool = False,
        local_webhook_url: str = "http://localhost:8080/webhook",
        replay_client: httpx.Client | None = None,
        replay_timeout: float = 10.0,
    ):
        self._processor = processor
        self._deliveries = deliveries
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.since = since or None
        self.include_signature = include_signature
        self.local_webhook_url = local_webhook_url

        self._owns_replay_client = replay_client is None
        self._replay_client = replay_client or httpx.Client(timeout=replay_timeout)

        self._cursor: str | None = None
        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        logger.info(
            "Webhook poller configured for plugin=%s instance=%s batch_size=%d",
            deliveries.plugin_slug,
            deliveries.instance_id,
            batch_size,
        )
        if self.since:
            logger.info("Poller will start from since=%s", self.since)
        if include_signature:
            logger.info("Poller will replay deliveries as local POST to %s", local_webhook_url)

    @property
    def cursor(self) -> str | None:
        """Id of the last delivery consumed, or None before the first page."""
        return self._cursor

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running and not self._stop.is_set():
            return
        # Each loop owns its stop event; a loop still finishing after a
        # timed-out stop() keeps its set event and exits after its cycle.
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run_loop, args=(self._stop,), daemon=True, name="webhook-poller",
        )
        self._thread.start()
        logger.info("Webhook poller started (interval=%.1fs)", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Webhook poller stop timed out, cycle still in progress")
            return
        self._thread = None
        logger.info("Webhook poller stopped")

    def close(self) -> None:
        self.stop()
        if self._owns_replay_client:
            self._replay_client.close()

    def _run_loop(self, stop: threading.Event) -> None:
        # Fixed delay: the wait starts only after the cycle has finished
        while not stop.is_set():
            self.poll_once()
            stop.wait(self.interval_seconds)

    # ── Cycle ─────────────────────────────────────────────────────────────

    def poll_once(self) -> PollResult | None:
        """Run one cycle, logging instead of raising. None if the cycle failed."""
        try:
            return self.run_cycle()
        except Exception:
            logger.exception(
                "Polling failed, will retry on next interval (cursor=%s)", self._cursor
            )
            return None

    def run_cycle(self) -> PollResult:
        """Fetch one page after the cursor and process it in page order.

        Raises:
            TransientNetworkError: fetch, token, local replay or ledger failure
            MalformedPayloadError: the page itself could not be parsed
        """
        with self._cycle_lock:
            return self._run_cycle()

    def _run_cycle(self) -> PollResult:
        records = self._deliveries.poll(
            limit=self.batch_size,
            after=self._cursor,
            since=None if self._cursor else self.since,
            include_signature=self.include_signature,
        )

        result = PollResult(fetched=len(records), cursor=self._cursor)
        if not records:
            logger.debug("Poll complete, no new deliveries")
            return result

        last_id: str | None = None
        for record in records:
            if not isinstance(record, Mapping):
                result.skipped += 1
                logger.warning("Skipping delivery record of type %s", type(record).__name__)
                continue

            raw_id = record.get("id")
            record_id = str(raw_id) if raw_id not in (None, "") else None
            if record_id is not None:
                last_id = record_id

            try:
                delivery = parse_delivery(record)
            except MalformedPayloadError as e:
                result.skipped += 1
                logger.warning("Skipping delivery %s with malformed payload: %s", record_id, e)
                continue

            if delivery.payload is None:
                result.skipped += 1
                logger.debug("Delivery %s has no embedded payload, skipping", record_id)
                continue

            if self.include_signature:
                outcome = self._replay_locally(delivery)
                if outcome is None:
                    result.rejected += 1
                elif outcome:
                    result.new += 1
            elif self._processor.process_if_new(delivery.payload):
                result.new += 1

        # Advance the cursor to the last delivery in this page that carries an id
        if last_id is not None:
            self._cursor = last_id
        result.cursor = self._cursor

        if result.new:
            logger.info(
                "Polled %d new event(s) from %d deliveries (cursor=%s)",
                result.new,
                result.fetched,
                self._cursor,
            )
        else:
            logger.debug(
                "Poll complete, %d deliveries seen but none new (cursor=%s)",
                result.fetched,
                self._cursor,
            )
        return result

    def _replay_locally(self, delivery: Delivery) -> bool | None:
        """POST a delivery to the local /webhook exactly as the platform would have.

        Returns:
            True if processed as new, False if the receiver reported a
            duplicate, None if the receiver rejected it (4xx, e.g. 401)

        Raises:
            TransientNetworkError: transport failure or 5xx from the receiver
        """
        headers = httpx.Headers({"Content-Type": "application/json"})
        for name, value in delivery.headers.items():
            if name.lower() not in _NON_FORWARDED_HEADERS:
                headers[name] = value

        try:
            resp = self._replay_client.post(
                self.local_webhook_url, content=delivery.body, headers=headers
            )
        except httpx.HTTPError as e:
            raise TransientNetworkError(
                f"Local replay of delivery {delivery.delivery_id} failed: {type(e).__name__}"
            ) from e

        if resp.status_code >= 500:
            raise TransientNetworkError(
                f"Local replay of delivery {delivery.delivery_id} returned HTTP {resp.status_code}"
            )
        if resp.status_code != 200:
            logger.warning(
                "Replayed delivery %s -> local /webhook returned HTTP %d",
                delivery.delivery_id,
                resp.status_code,
            )
            return None

        logger.debug("Replayed delivery %s -> local /webhook (200 OK)", delivery.delivery_id)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return not (isinstance(body, dict) and body.get("message") == "Already processed")
