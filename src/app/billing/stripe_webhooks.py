"""Stripe webhook verification and billing upserts.

The raw request body is verified with ``stripe.Webhook.construct_event``
against STRIPE_WEBHOOK_SECRET before anything is written. Handled types:

- payment_intent.succeeded -> upsert payments by PaymentIntent id
- customer.subscription.created / .updated -> upsert subscriptions by id

Every other verified event is acknowledged and ignored.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import stripe
import structlog

from src.app.billing.repository import BillingRepository
from src.app.billing.schemas import PaymentUpsert, SubscriptionUpsert
from src.app.integrations.errors import SignatureVerificationError

logger = structlog.get_logger(__name__)

SUBSCRIPTION_EVENTS = frozenset(
    {"customer.subscription.created", "customer.subscription.updated"}
)
HANDLED_EVENTS = SUBSCRIPTION_EVENTS | {"payment_intent.succeeded"}


class StripeWebhookHandler:
    """Verifies Stripe events and mirrors payments and subscriptions locally.

    Args:
        repository: BillingRepository (or a double with the same methods).
        webhook_secret: Endpoint signing secret (``whsec_...``).
        dispatcher: Optional WebhookDispatcher; handled events are
            re-broadcast as ``stripe.<event type>``.
    """

    def __init__(
        self,
        repository: BillingRepository,
        webhook_secret: str | None,
        dispatcher: Any = None,
    ) -> None:
        self._repository = repository
        self._webhook_secret = webhook_secret
        self._dispatcher = dispatcher

    def verify(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify the signature header and return the decoded event.

        Raises:
            SignatureVerificationError: Header or secret missing, body not
                valid JSON, or signature mismatch.
        """
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header")
        if not self._webhook_secret:
            raise SignatureVerificationError("Stripe webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as exc:
            raise SignatureVerificationError(f"Invalid payload: {exc}") from exc
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationError(f"Webhook Error: {exc}") from exc
        return json.loads(payload)

    async def handle(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify then apply one Stripe event. Returns the acknowledgement body."""
        event = self.verify(payload, signature)
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type not in HANDLED_EVENTS:
            logger.info("stripe.event_ignored", event_type=event_type, event_id=event.get("id"))
            return {"received": True}
        if not isinstance(obj, dict) or not obj.get("id"):
            logger.warning(
                "stripe.event_object_missing_id", event_type=event_type, event_id=event.get("id")
            )
            return {"received": True}

        if event_type == "payment_intent.succeeded":
            await self._upsert_payment(obj)
        else:
            await self._upsert_subscription(obj)

        logger.info("stripe.event_processed", event_type=event_type, event_id=event.get("id"))
        await self._broadcast(f"stripe.{event_type}", obj)
        return {"received": True}

    async def _upsert_payment(self, intent: dict[str, Any]) -> None:
        customer_id = await self._resolve_customer(intent.get("customer"))
        await self._repository.upsert_payment(
            PaymentUpsert(
                stripe_payment_intent_id=intent["id"],
                customer_id=customer_id,
                amount=intent.get("amount_received") or intent.get("amount") or 0,
                currency=intent.get("currency") or "usd",
                status=intent.get("status") or "succeeded",
                description=intent.get("description"),
            )
        )

    async def _upsert_subscription(self, subscription: dict[str, Any]) -> None:
        customer_id = await self._resolve_customer(subscription.get("customer"))
        items = (subscription.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        # Newer API versions carry the period on the item instead
        period_end = subscription.get("current_period_end") or first_item.get(
            "current_period_end"
        )
        await self._repository.upsert_subscription(
            SubscriptionUpsert(
                stripe_subscription_id=subscription["id"],
                customer_id=customer_id,
                stripe_price_id=(first_item.get("price") or {}).get("id"),
                status=subscription.get("status") or "incomplete",
                current_period_end=(
                    datetime.fromtimestamp(period_end, tz=timezone.utc) if period_end else None
                ),
                cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            )
        )

    async def _resolve_customer(self, stripe_customer: Any) -> str | None:
        if isinstance(stripe_customer, dict):
            stripe_customer = stripe_customer.get("id")
        if not stripe_customer:
            return None
        customer_id = await self._repository.get_customer_id_by_stripe_id(stripe_customer)
        if customer_id is None:
            logger.warning("stripe.customer_unresolved", stripe_customer_id=stripe_customer)
        return customer_id

    async def _broadcast(self, event_name: str, data: dict[str, Any]) -> None:
        if self._dispatcher is None:
            return
        try:
            await self._dispatcher.dispatch(event_name, data)
        except Exception:
            logger.error("stripe.broadcast_failed", event_name=event_name, exc_info=True)
