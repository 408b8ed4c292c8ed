"""OAuth2 client_credentials API client for plugin instances.

Tokens are requested from ``{token_broker_url}/oauth/token`` using
client_secret_basic (RFC 6749 §2.3.1): client_id and client_secret travel as
HTTP Basic auth. The access token is cached and refreshed 60s before expiry.

Used by the delivery poller, and as the follow-up fetch for Created/Updated
events.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

import httpx

from webhook_receiver.errors import MalformedPayloadError, TransientNetworkError

logger = logging.getLogger(__name__)

# Refresh the token when it has less than this many seconds remaining
TOKEN_REFRESH_BUFFER_SECONDS = 60


class PluginApiClient:
    """Authenticated JSON GETs against the platform API."""

    def __init__(
        self,
        token_broker_url: str,
        api_base_url: str,
        client_id: str,
        client_secret: str,
        audience: str = "backend-api",
        timeout: float = 30.0,
        token_timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.token_endpoint = token_broker_url.rstrip("/") + "/oauth/token"
        self.api_base_url = api_base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._audience = audience
        self._token_timeout = token_timeout
        self._http = httpx.Client(timeout=timeout, transport=transport)

        self._access_token: str | None = None
        self._expires_at = 0.0
        self._token_lock = threading.Lock()

    def close(self) -> None:
        self._http.close()

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET an API path (e.g. "/api/v1/clients/123") and return parsed JSON."""
        return self._request("GET", self.api_base_url + path, params=params)

    def get_url(self, url: str) -> Any:
        """GET an absolute URL (e.g. an event's follow-up URL) and return parsed JSON."""
        return self._request("GET", url)

    def post(self, path: str) -> Any:
        """POST with an empty body to an API path and return parsed JSON."""
        return self._request("POST", self.api_base_url + path)

    def _request(self, method: str, url: str, params: dict[str, Any] | None = None) -> Any:
        headers = {
            "Authorization": f"Bearer {self._get_access_token()}",
            "Accept": "application/json",
        }
        try:
            resp = self._http.request(method, url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"API request failed: {type(e).__name__}: {e}") from e

        if resp.status_code >= 400:
            raise TransientNetworkError(
                f"API request failed: HTTP {resp.status_code} - {resp.text[:200]}"
            )
        try:
            return resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedPayloadError(f"API response is not JSON: {method} {url}") from e

    def _get_access_token(self) -> str:
        """Return a valid access token, requesting a new one if needed."""
        with self._token_lock:
            if self._access_token is not None and time.time() < self._expires_at:
                return self._access_token

            logger.info("Requesting new access token from %s", self.token_endpoint)
            try:
                resp = self._http.post(
                    self.token_endpoint,
                    data={"grant_type": "client_credentials", "audience": self._audience},
                    auth=(self._client_id, self._client_secret),
                    timeout=self._token_timeout,
                )
            except httpx.HTTPError as e:
                raise TransientNetworkError(f"Token request failed: {type(e).__name__}") from e

            if resp.status_code != 200:
                raise TransientNetworkError(
                    f"Token request failed: HTTP {resp.status_code} - {resp.text[:200]}"
                )

            try:
                payload = resp.json()
                token = str(payload["access_token"])
                expires_in = int(payload["expires_in"])
            except (ValueError, KeyError, TypeError) as e:
                raise MalformedPayloadError("Token response missing access_token/expires_in") from e

            self._access_token = token
            self._expires_at = time.time() + expires_in - TOKEN_REFRESH_BUFFER_SECONDS
            logger.info("Access token acquired, expires in %ds", expires_in)
            return token
