"""Error taxonomy for the webhook receiver.

Duplicates are not errors: ``process_if_new`` returns False for them.
"""

from __future__ import annotations


class WebhookReceiverError(Exception):
    """Base exception for the webhook receiver."""


class ConfigError(WebhookReceiverError):
    """Configuration is missing or inconsistent."""


class AuthenticationError(WebhookReceiverError):
    """Signature present but invalid or malformed. Always fails closed."""


class MalformedPayloadError(WebhookReceiverError):
    """Body or delivery page could not be parsed."""


class TransientNetworkError(WebhookReceiverError):
    """Outbound call or durable ledger failed. Retried on the next cycle."""
