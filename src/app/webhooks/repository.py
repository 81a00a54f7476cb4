"""Webhook repository -- async persistence for endpoints and delivery attempts."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.webhooks.models import WebhookDeliveryModel, WebhookEndpointModel
from src.app.webhooks.schemas import (
    DeliveryCreate,
    WebhookDeliveryRead,
    WebhookEndpointRead,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_endpoint(model: WebhookEndpointModel) -> WebhookEndpointRead:
    return WebhookEndpointRead(
        id=str(model.id),
        url=model.url,
        events=list(model.events or []),
        description=model.description,
        secret=model.secret,
        is_active=bool(model.is_active),
        created_by=model.created_by,
        created_at=model.created_at,
    )


def _model_to_delivery(model: WebhookDeliveryModel) -> WebhookDeliveryRead:
    return WebhookDeliveryRead(
        id=str(model.id),
        endpoint_id=str(model.endpoint_id),
        event_id=str(model.event_id),
        event_name=model.event_name,
        request_payload=model.request_payload or {},
        response_status=model.response_status,
        response_body=model.response_body,
        attempt=model.attempt or 1,
        next_retry_at=model.next_retry_at,
        created_at=model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class WebhookRepository:
    """Async CRUD over webhook_endpoints and webhook_deliveries.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Endpoints ───────────────────────────────────────────────────────────

    async def list_active_for_event(self, event_name: str) -> list[WebhookEndpointRead]:
        """Active endpoints whose events array contains event_name."""
        async for session in self._session_factory():
            stmt = select(WebhookEndpointModel).where(
                WebhookEndpointModel.is_active.is_(True),
                WebhookEndpointModel.events.contains([event_name]),
            )
            result = await session.execute(stmt)
            return [_model_to_endpoint(m) for m in result.scalars().all()]

    async def create_endpoint(
        self,
        url: str,
        events: list[str],
        secret: str,
        description: str | None = None,
        created_by: str | None = None,
    ) -> WebhookEndpointRead:
        async for session in self._session_factory():
            model = WebhookEndpointModel(
                url=url,
                events=events,
                description=description,
                secret=secret,
                created_by=created_by,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_endpoint(model)

    async def list_endpoints(self) -> list[WebhookEndpointRead]:
        """All endpoints, newest first."""
        async for session in self._session_factory():
            stmt = select(WebhookEndpointModel).order_by(WebhookEndpointModel.created_at.desc())
            result = await session.execute(stmt)
            return [_model_to_endpoint(m) for m in result.scalars().all()]

    async def get_endpoint(self, endpoint_id: str) -> WebhookEndpointRead | None:
        async for session in self._session_factory():
            model = await session.get(WebhookEndpointModel, uuid.UUID(endpoint_id))
            if model is None:
                return None
            return _model_to_endpoint(model)

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        """Hard delete. Returns False if nothing was deleted."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(WebhookEndpointModel).where(
                    WebhookEndpointModel.id == uuid.UUID(endpoint_id)
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def set_endpoint_active(
        self, endpoint_id: str, is_active: bool
    ) -> WebhookEndpointRead | None:
        async for session in self._session_factory():
            model = await session.get(WebhookEndpointModel, uuid.UUID(endpoint_id))
            if model is None:
                return None
            model.is_active = is_active
            await session.commit()
            await session.refresh(model)
            return _model_to_endpoint(model)

    # ── Deliveries ──────────────────────────────────────────────────────────

    async def insert_delivery(self, data: DeliveryCreate) -> WebhookDeliveryRead:
        async for session in self._session_factory():
            model = WebhookDeliveryModel(
                endpoint_id=uuid.UUID(data.endpoint_id),
                event_id=uuid.UUID(data.event_id),
                event_name=data.event_name,
                request_payload=data.request_payload,
                response_status=data.response_status,
                response_body=data.response_body,
                attempt=data.attempt,
                next_retry_at=data.next_retry_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_delivery(model)

    async def list_deliveries(
        self, endpoint_id: str, limit: int = 50
    ) -> list[WebhookDeliveryRead]:
        async for session in self._session_factory():
            stmt = (
                select(WebhookDeliveryModel)
                .where(WebhookDeliveryModel.endpoint_id == uuid.UUID(endpoint_id))
                .order_by(WebhookDeliveryModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_delivery(m) for m in result.scalars().all()]

    async def list_due_deliveries(
        self, now: datetime, limit: int = 100
    ) -> list[WebhookDeliveryRead]:
        """Failed attempts whose next_retry_at has passed, oldest first."""
        async for session in self._session_factory():
            stmt = (
                select(WebhookDeliveryModel)
                .where(
                    WebhookDeliveryModel.next_retry_at.is_not(None),
                    WebhookDeliveryModel.next_retry_at <= now,
                    or_(
                        WebhookDeliveryModel.response_status < 200,
                        WebhookDeliveryModel.response_status >= 300,
                    ),
                )
                .order_by(WebhookDeliveryModel.next_retry_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_delivery(m) for m in result.scalars().all()]

    async def claim_delivery(self, delivery_id: str) -> bool:
        """Clear next_retry_at so no other sweep picks the row up.

        Returns True only for the caller that actually cleared it.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(WebhookDeliveryModel)
                .where(
                    WebhookDeliveryModel.id == uuid.UUID(delivery_id),
                    WebhookDeliveryModel.next_retry_at.is_not(None),
                )
                .values(next_retry_at=None)
            )
            await session.commit()
            return result.rowcount == 1
