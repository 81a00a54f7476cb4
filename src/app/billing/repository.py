"""Billing repository -- customer lookup and Stripe-keyed upserts."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.billing.models import CustomerModel, PaymentModel, SubscriptionModel
from src.app.billing.schemas import PaymentUpsert, SubscriptionUpsert


class BillingRepository:
    """Async access to customers, payments and subscriptions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get_customer_id_by_stripe_id(self, stripe_customer_id: str) -> str | None:
        """Local customer id for a Stripe customer back-reference."""
        async for session in self._session_factory():
            stmt = select(CustomerModel.id).where(
                CustomerModel.stripe_customer_id == stripe_customer_id
            )
            result = await session.execute(stmt)
            customer_id = result.scalar_one_or_none()
            return str(customer_id) if customer_id is not None else None

    async def upsert_payment(self, data: PaymentUpsert) -> None:
        values = data.model_dump()
        values["customer_id"] = _as_uuid(data.customer_id)
        async for session in self._session_factory():
            stmt = insert(PaymentModel).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[PaymentModel.stripe_payment_intent_id],
                set_=_update_set(stmt, values, "stripe_payment_intent_id"),
            )
            await session.execute(stmt)
            await session.commit()

    async def upsert_subscription(self, data: SubscriptionUpsert) -> None:
        values = data.model_dump()
        values["customer_id"] = _as_uuid(data.customer_id)
        async for session in self._session_factory():
            stmt = insert(SubscriptionModel).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[SubscriptionModel.stripe_subscription_id],
                set_=_update_set(stmt, values, "stripe_subscription_id"),
            )
            await session.execute(stmt)
            await session.commit()


def _as_uuid(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


def _update_set(stmt: Any, values: dict[str, Any], key: str) -> dict[str, Any]:
    update = {column: stmt.excluded[column] for column in values if column != key}
    update["updated_at"] = func.now()
    return update
