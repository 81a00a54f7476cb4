"""Outbound webhooks -- signed fan-out of internal events to subscribers.

- WebhookDispatcher: Signs, delivers and records events; endpoint management
- WebhookRepository: Persistence for endpoints and delivery attempts
- WebhookRetryScheduler: Interval sweep redelivering failed attempts

Every attempt is recorded, success or failure. Subscribers verify the
X-CRM-Signature header as hex HMAC-SHA256 of the raw body.
"""

from src.app.webhooks.dispatcher import WebhookDispatcher
from src.app.webhooks.repository import WebhookRepository
from src.app.webhooks.scheduler import WebhookRetryScheduler
from src.app.webhooks.schemas import (
    DeliveryFailed,
    DeliverySucceeded,
    DispatchResult,
    WebhookDeliveryRead,
    WebhookEndpointCreate,
    WebhookEndpointRead,
)
from src.app.webhooks.signing import compute_signature, serialize_payload, verify_signature

__all__ = [
    "WebhookDispatcher",
    "WebhookRepository",
    "WebhookRetryScheduler",
    "DeliveryFailed",
    "DeliverySucceeded",
    "DispatchResult",
    "WebhookDeliveryRead",
    "WebhookEndpointCreate",
    "WebhookEndpointRead",
    "compute_signature",
    "serialize_payload",
    "verify_signature",
]
