"""Webhook data model and boundary normalization.

Both ingestion paths end up here: the push receiver parses the raw POST body
with ``parse_event``, the poller turns each delivery record into a
``Delivery`` with ``parse_delivery``. Whether the platform embedded the
payload as a JSON string or as an object is resolved here and nowhere else.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from webhook_receiver.errors import MalformedPayloadError

# Event kinds sent by the platform. Anything else is dispatched as unrecognized.
CREATED = "Created"
UPDATED = "Updated"
DELETED = "Deleted"
ACTIVATED = "Activated"
DEACTIVATED = "Deactivated"
DAILY_HEARTBEAT = "DailyHeartBeat"


@dataclass(frozen=True)
class Event:
    """A single logical notification of a state change on a remote resource."""

    event_id: str
    entity: str
    event_kind: str
    entity_id: str
    follow_up_url: str | None = None
    raw_payload: bytes = field(default=b"", repr=False)

    def summary(self) -> dict[str, str]:
        """Fields kept by the event store and returned by GET /events."""
        return {
            "entity": self.entity,
            "event": self.event_kind,
            "entity_id": self.entity_id,
            "event_id": self.event_id,
        }


@dataclass(frozen=True)
class Delivery:
    """A poll-observed wrapper around an Event plus transport metadata."""

    delivery_id: str | None
    payload: Event | None
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = field(default=b"", repr=False)


def _as_text(value: Any) -> str:
    """Render a scalar JSON value as text; containers and null become ''."""
    if value is None or isinstance(value, (dict, list)):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def event_from_mapping(data: Mapping[str, Any], raw: bytes) -> Event:
    """Build an Event from an already-decoded JSON object."""
    url = data.get("url")
    return Event(
        event_id=_as_text(data.get("event_id")),
        entity=_as_text(data.get("entity")),
        event_kind=_as_text(data.get("event")),
        entity_id=_as_text(data.get("entity_id")),
        follow_up_url=_as_text(url) or None,
        raw_payload=raw,
    )


def parse_event(raw: bytes) -> Event:
    """Parse a raw webhook body into an Event.

    Raises:
        MalformedPayloadError: body is not UTF-8 JSON, or not a JSON object.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedPayloadError(
            f"Expected a JSON object, got {type(data).__name__}"
        )
    return event_from_mapping(data, raw)


def _payload_bytes(payload: Any) -> bytes:
    # A string payload is replayed byte-for-byte: those are the bytes the
    # platform signed. An embedded object is re-serialized compactly, in
    # the key order it arrived in.
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def parse_delivery(record: Mapping[str, Any]) -> Delivery:
    """Normalize one delivery record from the poll API.

    ``payload`` may be a JSON-encoded string or an embedded object; both
    produce the same Event. A missing or null payload yields
    ``Delivery.payload is None``.

    Raises:
        MalformedPayloadError: payload is present but not a JSON object.
    """
    raw_id = record.get("id")
    delivery_id = _as_text(raw_id) or None

    raw_headers = record.get("headers")
    headers: dict[str, str] = {}
    if isinstance(raw_headers, Mapping):
        headers = {
            str(k): _as_text(v) for k, v in raw_headers.items() if v is not None
        }

    payload = record.get("payload")
    if payload is None:
        return Delivery(delivery_id=delivery_id, payload=None, headers=headers)

    body = _payload_bytes(payload)
    if isinstance(payload, str):
        event = parse_event(body)
    elif isinstance(payload, Mapping):
        event = event_from_mapping(payload, body)
    else:
        raise MalformedPayloadError(
            f"Delivery {delivery_id} payload is {type(payload).__name__}, not an object"
        )
    return Delivery(delivery_id=delivery_id, payload=event, headers=headers, body=body)


def extract_page(data: Any) -> list[Any]:
    """Return the delivery records of a poll response.

    Accepts a bare JSON array or an object with a ``data`` array. An object
    without a ``data`` array is an empty page.

    Raises:
        MalformedPayloadError: response is neither an array nor an object.
    """
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        page = data.get("data")
        return page if isinstance(page, list) else []
    raise MalformedPayloadError(
        f"Unexpected poll response type: {type(data).__name__}"
    )
