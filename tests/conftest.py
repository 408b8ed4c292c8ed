"""Shared fixtures for the webhook receiver test suite."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from tests.helpers import RecordingDispatch, make_settings
from webhook_receiver.app import create_app


@pytest.fixture()
def dispatch() -> RecordingDispatch:
    return RecordingDispatch()


@pytest.fixture()
def app(dispatch):
    """Unsigned receiver (no signing key configured)."""
    return create_app(make_settings(), dispatch=dispatch)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def signed_app(dispatch):
    """Receiver with signing key "k"."""
    return create_app(make_settings(webhook_signing_key="k"), dispatch=dispatch)


@pytest.fixture()
def signed_client(signed_app):
    with TestClient(signed_app) as c:
        yield c
