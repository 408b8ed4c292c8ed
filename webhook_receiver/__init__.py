"""Plugin webhook receiver.

Receives signed webhook events from the tenant platform, either pushed to
POST /webhook or pulled from the delivery poll API. Each event is
signature-verified, deduplicated by event_id, and dispatched exactly once.
"""

__version__ = "0.1.0"
