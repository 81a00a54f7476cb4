"""REST API endpoints for outbound webhook management and inbound Stripe events.

Endpoint CRUD and the test dispatch require ``webhooks.*`` permissions.
The Stripe receiver is public; it authenticates the sender through the
Stripe-Signature header over the raw body.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from src.app.api.deps import get_stripe_handler, get_webhook_dispatcher, require_permission
from src.app.api.responses import ok
from src.app.core.security import AuthenticatedUser
from src.app.webhooks.schemas import (
    DeliveryFailed,
    DispatchResult,
    WebhookDeliveryRead,
    WebhookEndpointRead,
)

router = APIRouter(prefix="/api/crm/webhooks", tags=["webhooks"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class CreateEndpointRequest(BaseModel):
    url: str
    events: list[str]
    description: str | None = None


class UpdateEndpointRequest(BaseModel):
    is_active: bool


class TestDispatchRequest(BaseModel):
    event: str = Field(min_length=1)
    data: Any = None


# ── Conversion Helpers ───────────────────────────────────────────────────────


def endpoint_to_response(
    endpoint: WebhookEndpointRead, include_secret: bool = False
) -> dict[str, Any]:
    """Listing omits the secret; only the creation response carries it."""
    exclude = None if include_secret else {"secret"}
    return endpoint.model_dump(mode="json", exclude=exclude)


def delivery_to_response(delivery: WebhookDeliveryRead) -> dict[str, Any]:
    body = delivery.model_dump(mode="json")
    body["succeeded"] = delivery.succeeded
    return body


def dispatch_to_response(result: DispatchResult) -> dict[str, Any]:
    return {
        "event": result.event,
        "event_id": result.event_id,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "deliveries": [
            {
                "endpoint_id": d.endpoint_id,
                "status_code": d.status_code,
                "attempt": d.attempt,
                "succeeded": not isinstance(d, DeliveryFailed),
            }
            for d in result.deliveries
        ],
    }


# ── Endpoint Management ──────────────────────────────────────────────────────


@router.get("/endpoints")
async def list_endpoints(
    dispatcher: Any = Depends(get_webhook_dispatcher),
    user: AuthenticatedUser = Depends(require_permission("webhooks.view")),
) -> dict[str, Any]:
    endpoints = await dispatcher.get_endpoints()
    return ok([endpoint_to_response(e) for e in endpoints])


@router.post("/endpoints", status_code=status.HTTP_201_CREATED)
async def create_endpoint(
    body: CreateEndpointRequest,
    dispatcher: Any = Depends(get_webhook_dispatcher),
    user: AuthenticatedUser = Depends(require_permission("webhooks.create")),
) -> dict[str, Any]:
    """Register a subscriber. The response is the only place the secret is shown."""
    endpoint = await dispatcher.create_endpoint(
        url=body.url,
        events=body.events,
        description=body.description,
        created_by=user.id,
    )
    return ok(endpoint_to_response(endpoint, include_secret=True))


@router.patch("/endpoints/{endpoint_id}")
async def update_endpoint(
    endpoint_id: uuid.UUID,
    body: UpdateEndpointRequest,
    dispatcher: Any = Depends(get_webhook_dispatcher),
    user: AuthenticatedUser = Depends(require_permission("webhooks.edit")),
) -> dict[str, Any]:
    endpoint = await dispatcher.set_endpoint_active(str(endpoint_id), body.is_active)
    return ok(endpoint_to_response(endpoint))


@router.delete("/endpoints/{endpoint_id}")
async def delete_endpoint(
    endpoint_id: uuid.UUID,
    dispatcher: Any = Depends(get_webhook_dispatcher),
    user: AuthenticatedUser = Depends(require_permission("webhooks.delete")),
) -> dict[str, Any]:
    await dispatcher.delete_endpoint(str(endpoint_id))
    return ok()


@router.get("/endpoints/{endpoint_id}/deliveries")
async def list_deliveries(
    endpoint_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=500),
    dispatcher: Any = Depends(get_webhook_dispatcher),
    user: AuthenticatedUser = Depends(require_permission("webhooks.view")),
) -> dict[str, Any]:
    deliveries = await dispatcher.get_deliveries(str(endpoint_id), limit=limit)
    return ok([delivery_to_response(d) for d in deliveries])


@router.post("/test")
async def test_dispatch(
    body: TestDispatchRequest,
    dispatcher: Any = Depends(get_webhook_dispatcher),
    user: AuthenticatedUser = Depends(require_permission("webhooks.create")),
) -> dict[str, Any]:
    """Dispatch an event synchronously; returns once every delivery is recorded."""
    data = body.data
    if data is None:
        data = {"test": True, "time": datetime.now(timezone.utc).isoformat()}
    result = await dispatcher.dispatch(body.event, data)
    return ok(dispatch_to_response(result), message="Test event dispatched")


# ── Stripe ───────────────────────────────────────────────────────────────────


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    handler: Any = Depends(get_stripe_handler),
) -> dict[str, Any]:
    """Verified Stripe events. Signature problems surface as 400 via the handlers."""
    payload = await request.body()
    return await handler.handle(payload, request.headers.get("Stripe-Signature"))
