"""Webhook receiver configuration.

Environment-driven (optionally via ``.env``). Variable names match the ones
documented for plugin instances, e.g. ``WEBHOOK_SIGNING_KEY``,
``POLLER_ENABLED``, ``PLUGIN_SLUG``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings

from webhook_receiver.errors import ConfigError


class Settings(BaseSettings):
    """Environment-driven settings for the webhook receiver."""

    # Push receiver
    webhook_signing_key: str = ""
    server_host: str = "127.0.0.1"
    server_port: int = 8080
    log_level: str = "INFO"

    # Delivery poller
    poller_enabled: bool = False
    poller_interval_ms: int = 10_000
    poller_batch_size: int = 50
    poller_since: str = ""
    poller_include_signature: bool = False
    poller_timeout_seconds: float = 30.0
    replay_timeout_seconds: float = 10.0

    # Plugin identity + API credentials
    plugin_slug: str = ""
    plugin_instance_id: int = 0
    plugin_client_id: str = ""
    plugin_client_secret: str = ""
    token_broker_url: str = ""
    token_audience: str = "backend-api"
    token_timeout_seconds: float = 10.0
    api_base_url: str = ""

    # Dedup ledger
    dedup_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    dedup_ttl_seconds: int = 0  # 0 = never expire

    model_config = {"env_file": ".env", "extra": "ignore"}

    @field_validator("poller_batch_size")
    @classmethod
    def batch_size_in_range(cls, v: int) -> int:
        if not 1 <= v <= 1000:
            raise ValueError("poller_batch_size must be between 1 and 1000")
        return v

    @field_validator("poller_interval_ms")
    @classmethod
    def interval_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("poller_interval_ms must be >= 1")
        return v

    @field_validator("dedup_ttl_seconds")
    @classmethod
    def ttl_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("dedup_ttl_seconds must be >= 0")
        return v

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper()

    @property
    def poller_interval_seconds(self) -> float:
        return self.poller_interval_ms / 1000.0

    @property
    def local_webhook_url(self) -> str:
        """Loopback URL the poller replays deliveries to in signature mode."""
        return f"http://localhost:{self.server_port}/webhook"

    def validate_for_poller(self) -> None:
        """Raise ConfigError if polling is enabled without what it needs."""
        if not self.poller_enabled:
            return
        missing = [
            name
            for name, value in (
                ("PLUGIN_SLUG", self.plugin_slug),
                ("PLUGIN_INSTANCE_ID", self.plugin_instance_id),
                ("API_BASE_URL", self.api_base_url),
                ("TOKEN_BROKER_URL", self.token_broker_url),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Poller enabled but not configured: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    return Settings()
