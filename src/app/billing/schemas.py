"""Pydantic schemas for Stripe-mirrored billing rows."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class PaymentUpsert(BaseModel):
    """Payment state keyed by the Stripe PaymentIntent id."""

    stripe_payment_intent_id: str
    customer_id: str | None = None
    amount: int
    currency: str
    status: str
    description: str | None = None


class SubscriptionUpsert(BaseModel):
    """Subscription state keyed by the Stripe Subscription id."""

    stripe_subscription_id: str
    customer_id: str | None = None
    stripe_price_id: str | None = None
    status: str
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
