"""Stripe billing mirror -- verified webhook events upserted into payments/subscriptions."""

from src.app.billing.repository import BillingRepository
from src.app.billing.stripe_webhooks import StripeWebhookHandler

__all__ = ["BillingRepository", "StripeWebhookHandler"]
