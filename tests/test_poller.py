"""Delivery poller: cursor handling, dedup with the push path, replay mode, scheduling."""

from __future__ import annotations

import hashlib
import hmac
import json
import threading
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from tests.helpers import RecordingDispatch
from webhook_receiver.api_client import PluginApiClient
from webhook_receiver.deliveries import WebhookDeliveryClient
from webhook_receiver.errors import MalformedPayloadError, TransientNetworkError
from webhook_receiver.ledger import InMemoryLedger
from webhook_receiver.poller import PollResult, WebhookPoller
from webhook_receiver.processor import EventProcessor
from webhook_receiver.store import EventStore


class FakeDeliveries:
    """Stands in for WebhookDeliveryClient; serves queued pages in order."""

    plugin_slug = "demo-plugin"
    instance_id = 7

    def __init__(self, pages=(), gate: threading.Event | None = None):
        self.pages = list(pages)
        self.gate = gate
        self.calls: list[dict] = []
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def poll(self, *, limit, after=None, since=None, include_signature=False):
        with self._lock:
            self.calls.append(
                {"limit": limit, "after": after, "since": since, "include_signature": include_signature}
            )
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            page = self.pages.pop(0) if self.pages else []
        try:
            if self.gate is not None:
                self.gate.wait(5)
            if isinstance(page, Exception):
                raise page
            return page
        finally:
            with self._lock:
                self.active -= 1


def _record(delivery_id, event_id, kind="Created", **extra):
    payload = {"event_id": event_id, "entity": "Client", "event": kind, "entity_id": "1"}
    return {"id": delivery_id, "payload": payload, **extra}


@pytest.fixture()
def recorder() -> RecordingDispatch:
    return RecordingDispatch()


@pytest.fixture()
def processor(recorder) -> EventProcessor:
    return EventProcessor(InMemoryLedger(), EventStore(), recorder)


@pytest.fixture()
def make_poller(processor):
    created = []

    def _make(deliveries, **kwargs):
        kwargs.setdefault("interval_seconds", 0.01)
        poller = WebhookPoller(kwargs.pop("processor", processor), deliveries, **kwargs)
        created.append(poller)
        return poller

    yield _make
    for poller in created:
        poller.close()


# ── Cursor ────────────────────────────────────────────────────────────────


class TestCursor:
    def test_starts_absent(self, make_poller):
        assert make_poller(FakeDeliveries()).cursor is None

    def test_advances_to_last_delivery(self, make_poller, recorder):
        deliveries = FakeDeliveries([[_record("d1", "e1"), _record("d2", "e2")]])
        poller = make_poller(deliveries, batch_size=10)

        result = poller.run_cycle()

        assert result == PollResult(fetched=2, new=2, cursor="d2")
        assert poller.cursor == "d2"
        assert recorder.count == 2
        assert deliveries.calls[0]["limit"] == 10

    def test_advances_even_when_all_duplicates(self, make_poller, recorder):
        deliveries = FakeDeliveries(
            [
                [_record("d1", "e1")],
                [_record("d2", "e1"), _record("d3", "e1")],
            ]
        )
        poller = make_poller(deliveries)
        poller.run_cycle()
        result = poller.run_cycle()

        assert result.new == 0
        assert poller.cursor == "d3"
        assert recorder.count == 1
        assert deliveries.calls[1]["after"] == "d1"

    def test_since_seeds_first_poll_only(self, make_poller):
        deliveries = FakeDeliveries([[_record("d1", "e1")], []])
        poller = make_poller(deliveries, since="2026-01-01T00:00:00Z")
        poller.run_cycle()
        poller.run_cycle()

        assert deliveries.calls[0]["since"] == "2026-01-01T00:00:00Z"
        assert deliveries.calls[0]["after"] is None
        assert deliveries.calls[1]["after"] == "d1"
        assert deliveries.calls[1]["since"] is None

    def test_empty_page_leaves_cursor(self, make_poller):
        deliveries = FakeDeliveries([[_record("d1", "e1")], []])
        poller = make_poller(deliveries)
        poller.run_cycle()
        result = poller.run_cycle()
        assert result == PollResult(fetched=0, cursor="d1")
        assert poller.cursor == "d1"

    def test_failed_cycle_leaves_cursor_and_retries_same_page(self, make_poller):
        deliveries = FakeDeliveries(
            [
                [_record("d1", "e1")],
                TransientNetworkError("API down"),
                [_record("d2", "e2")],
            ]
        )
        poller = make_poller(deliveries)
        poller.poll_once()

        assert poller.poll_once() is None
        assert poller.cursor == "d1"

        assert poller.poll_once().new == 1
        assert deliveries.calls[2]["after"] == "d1"
        assert poller.cursor == "d2"

    def test_ledger_outage_fails_cycle(self, recorder, make_poller):
        class DownLedger:
            def add(self, event_id):
                raise TransientNetworkError("redis down")

        processor = EventProcessor(DownLedger(), EventStore(), recorder)
        poller = make_poller(FakeDeliveries([[_record("d1", "e1")]]), processor=processor)
        assert poller.poll_once() is None
        assert poller.cursor is None
        assert recorder.count == 0

    def test_numeric_ids_become_text(self, make_poller):
        poller = make_poller(FakeDeliveries([[_record(17, "e1")]]))
        poller.run_cycle()
        assert poller.cursor == "17"

    def test_trailing_records_without_id_keep_last_known_id(self, make_poller):
        page = [
            _record("d1", "e1"),
            {"payload": _record(None, "e2")["payload"]},
            "garbage",
        ]
        deliveries = FakeDeliveries([page, []])
        poller = make_poller(deliveries)
        result = poller.run_cycle()
        assert result.new == 2
        assert poller.cursor == "d1"

        poller.run_cycle()
        assert deliveries.calls[1]["after"] == "d1"

    def test_page_without_any_id_leaves_cursor(self, make_poller):
        poller = make_poller(FakeDeliveries([[_record("d1", "e1")], [{"payload": None}, "garbage"]]))
        poller.run_cycle()
        poller.run_cycle()
        assert poller.cursor == "d1"


# ── Per-delivery handling ─────────────────────────────────────────────────


class TestDeliveryHandling:
    def test_malformed_delivery_skipped_cursor_advances(self, make_poller, recorder):
        page = [
            {"id": "d1", "payload": "{broken"},
            _record("d2", "e2"),
            {"id": "d3", "payload": 12},
        ]
        poller = make_poller(FakeDeliveries([page]))
        result = poller.run_cycle()

        assert result.skipped == 2
        assert result.new == 1
        assert poller.cursor == "d3"
        assert recorder.count == 1

    def test_delivery_without_payload_skipped(self, make_poller, recorder):
        poller = make_poller(FakeDeliveries([[{"id": "d1"}, "garbage"]]))
        result = poller.run_cycle()
        assert result.skipped == 2
        assert recorder.count == 0

    def test_string_payload_processed(self, make_poller, recorder):
        payload = json.dumps({"event_id": "e5", "entity": "Person", "event": "Updated", "entity_id": "3"})
        poller = make_poller(FakeDeliveries([[{"id": "d1", "payload": payload}]]))
        poller.run_cycle()
        assert recorder.events[0].entity == "Person"

    def test_malformed_page_fails_cycle(self, make_poller):
        deliveries = FakeDeliveries([MalformedPayloadError("not a delivery page")])
        poller = make_poller(deliveries)
        assert poller.poll_once() is None
        assert poller.cursor is None


# ── Push/poll convergence ─────────────────────────────────────────────────


class TestPushPollDedup:
    def test_pushed_event_not_reprocessed_by_poll(self, client, app, dispatch, make_poller):
        body = json.dumps(_record("d1", "e1")["payload"]).encode()
        assert client.post("/webhook", content=body).status_code == 200

        poller = make_poller(
            FakeDeliveries([[_record("d1", "e1")]]), processor=app.state.processor
        )
        result = poller.run_cycle()

        assert result.new == 0
        assert dispatch.count == 1

    def test_polled_event_is_duplicate_on_push(self, client, app, dispatch, make_poller):
        poller = make_poller(
            FakeDeliveries([[_record("d1", "e1")]]), processor=app.state.processor
        )
        poller.run_cycle()

        body = json.dumps(_record("d1", "e1")["payload"]).encode()
        assert client.post("/webhook", content=body).json()["message"] == "Already processed"
        assert dispatch.count == 1
        assert len(client.get("/events").json()) == 1


# ── Signature replay mode ─────────────────────────────────────────────────


def _signed_record(delivery_id, event_id, key=b"k"):
    payload = json.dumps(
        {"event_id": event_id, "entity": "Client", "event": "Created", "entity_id": "1"}
    )
    signature = hmac.new(key, payload.encode(), hashlib.sha256).hexdigest()
    return {
        "id": delivery_id,
        "payload": payload,
        "headers": {"x-webhook-signature": signature, "x-tenant": "acme", "Host": "ignored"},
    }


class TestReplayMode:
    def test_replays_through_local_receiver(self, signed_app, dispatch, make_poller):
        local = TestClient(signed_app)
        deliveries = FakeDeliveries(
            [
                [
                    _signed_record("d1", "e1"),
                    _signed_record("d2", "e2", key=b"wrong"),
                    _signed_record("d3", "e1"),
                ]
            ]
        )
        poller = make_poller(
            deliveries,
            processor=signed_app.state.processor,
            include_signature=True,
            local_webhook_url="http://testserver/webhook",
            replay_client=local,
        )

        result = poller.run_cycle()

        assert result.new == 1
        assert result.rejected == 1
        assert poller.cursor == "d3"
        assert dispatch.count == 1
        assert deliveries.calls[0]["include_signature"] is True
        assert signed_app.state.receiver.counts() == {
            "processed": 1,
            "signature_failed": 1,
            "duplicate": 1,
        }

    def test_forwarded_headers(self, processor, make_poller):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = request.content
            return httpx.Response(200, json={"status": "ok"})

        record = _signed_record("d1", "e1")
        poller = make_poller(
            FakeDeliveries([[record]]),
            include_signature=True,
            replay_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        assert poller.run_cycle().new == 1

        assert seen["body"] == record["payload"].encode()
        assert seen["headers"]["x-webhook-signature"] == record["headers"]["x-webhook-signature"]
        assert seen["headers"]["x-tenant"] == "acme"
        assert seen["headers"]["content-type"] == "application/json"
        assert seen["headers"]["host"] == "localhost:8080"

    def test_transport_error_fails_cycle(self, make_poller):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        poller = make_poller(
            FakeDeliveries([[_signed_record("d1", "e1")]]),
            include_signature=True,
            replay_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        assert poller.poll_once() is None
        assert poller.cursor is None

    def test_server_error_fails_cycle(self, make_poller):
        poller = make_poller(
            FakeDeliveries([[_signed_record("d1", "e1")]]),
            include_signature=True,
            replay_client=httpx.Client(
                transport=httpx.MockTransport(lambda request: httpx.Response(503))
            ),
        )
        with pytest.raises(TransientNetworkError):
            poller.run_cycle()
        assert poller.cursor is None


# ── Scheduling ────────────────────────────────────────────────────────────


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestScheduling:
    def test_background_loop_runs_and_stops(self, make_poller, recorder):
        deliveries = FakeDeliveries(
            [
                [_record("d1", "e1")],
                TransientNetworkError("blip"),
                [_record("d2", "e2")],
            ]
        )
        poller = make_poller(deliveries, interval_seconds=0.01)
        poller.start()
        assert poller.is_running

        assert _wait_for(lambda: len(deliveries.calls) >= 4)
        poller.stop()

        assert not poller.is_running
        assert deliveries.max_active == 1
        assert recorder.count == 2
        assert poller.cursor == "d2"

    def test_start_is_idempotent(self, make_poller):
        poller = make_poller(FakeDeliveries(), interval_seconds=60)
        poller.start()
        thread = poller._thread
        poller.start()
        assert poller._thread is thread
        poller.stop()
        assert not poller.is_running

    def test_restart_during_slow_cycle_never_overlaps(self, make_poller):
        gate = threading.Event()
        deliveries = FakeDeliveries(gate=gate)
        poller = make_poller(deliveries, interval_seconds=0.01)
        poller.start()
        assert _wait_for(lambda: deliveries.active == 1)

        # Stop gives up while the cycle is still blocked in poll()
        poller.stop(timeout=0.1)
        assert poller.is_running

        poller.start()
        time.sleep(0.2)
        assert deliveries.max_active == 1

        gate.set()
        assert _wait_for(lambda: len(deliveries.calls) >= 3)
        poller.stop()

        assert deliveries.max_active == 1
        assert not poller.is_running

    def test_timed_out_loop_exits_after_its_cycle(self, make_poller):
        gate = threading.Event()
        deliveries = FakeDeliveries(gate=gate)
        poller = make_poller(deliveries, interval_seconds=0.01)
        poller.start()
        assert _wait_for(lambda: deliveries.active == 1)
        poller.stop(timeout=0.1)
        old_thread = poller._thread

        gate.set()
        old_thread.join(timeout=5)
        assert not old_thread.is_alive()
        assert len(deliveries.calls) == 1

    def test_concurrent_run_cycle_calls_serialized(self, make_poller):
        gate = threading.Event()
        deliveries = FakeDeliveries(gate=gate)
        poller = make_poller(deliveries)
        threads = [threading.Thread(target=poller.poll_once) for _ in range(3)]
        for t in threads:
            t.start()
        assert _wait_for(lambda: deliveries.active == 1)
        time.sleep(0.1)
        gate.set()
        for t in threads:
            t.join(timeout=5)

        assert len(deliveries.calls) == 3
        assert deliveries.max_active == 1


# ── Delivery API client ───────────────────────────────────────────────────


class FakePlatform:
    """Token broker + delivery API behind one MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.page: object = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if request.url.path.endswith("/replay"):
            return httpx.Response(200, json={"status": "queued"})
        return httpx.Response(200, json=self.page)


class TestWebhookDeliveryClient:
    @pytest.fixture()
    def platform(self) -> FakePlatform:
        return FakePlatform()

    @pytest.fixture()
    def api(self, platform):
        client = PluginApiClient(
            "https://auth.example.com",
            "https://api.example.com",
            "client-id",
            "client-secret",
            transport=httpx.MockTransport(platform),
        )
        yield client
        client.close()

    def test_poll_params(self):
        assert WebhookDeliveryClient.poll_params(limit=50) == {"limit": 50}
        assert WebhookDeliveryClient.poll_params(limit=5, after="d9", since="2026-01-01") == {
            "limit": 5,
            "after": "d9",
        }
        assert WebhookDeliveryClient.poll_params(limit=5, since="2026-01-01", include_signature=True) == {
            "limit": 5,
            "since": "2026-01-01",
            "include_signature": 1,
        }

    def test_poll_request(self, api, platform):
        platform.page = [{"id": "d1"}]
        deliveries = WebhookDeliveryClient(api, "demo-plugin", 7)
        records = deliveries.poll(limit=50, after="d0", include_signature=True)

        assert records == [{"id": "d1"}]
        request = platform.requests[-1]
        assert request.url.path == "/api/v1/plugins/demo-plugin/instances/7/webhook-deliveries/poll"
        assert dict(request.url.params) == {"limit": "50", "after": "d0", "include_signature": "1"}
        assert request.headers["authorization"] == "Bearer tok"

    def test_poll_data_envelope(self, api, platform):
        platform.page = {"data": [{"id": "d1"}, {"id": "d2"}]}
        records = WebhookDeliveryClient(api, "demo-plugin", 7).poll(limit=10)
        assert [r["id"] for r in records] == ["d1", "d2"]

    def test_poll_rejects_scalar_page(self, api, platform):
        platform.page = "oops"
        with pytest.raises(MalformedPayloadError):
            WebhookDeliveryClient(api, "demo-plugin", 7).poll(limit=10)

    def test_replay_delivery(self, api, platform):
        assert WebhookDeliveryClient(api, "demo-plugin", 7).replay_delivery(42) == {"status": "queued"}
        request = platform.requests[-1]
        assert request.method == "POST"
        assert request.url.path == "/api/v1/plugins/demo-plugin/instances/7/webhook-deliveries/42/replay"

    def test_list_deliveries(self, api, platform):
        platform.page = [{"id": "d1", "status": "failed", "attempts": 3}]
        listing = WebhookDeliveryClient(api, "demo-plugin", 7).list_deliveries()
        assert listing == platform.page
        assert platform.requests[-1].url.path == "/api/v1/plugins/demo-plugin/instances/7/webhook-deliveries"
