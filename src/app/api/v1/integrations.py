"""REST API endpoints for integration records, secrets and logs.

Admin-facing: list providers, toggle/configure them, store credentials and
read the audit log. Sync triggers and inbound webhooks live in
providers.py; WhatsApp has its own module.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.app.api.deps import get_integration_registry, require_permission
from src.app.api.responses import ok
from src.app.core.security import AuthenticatedUser
from src.app.integrations.schemas import (
    IntegrationConfig,
    IntegrationLogRead,
    IntegrationRead,
    IntegrationUpdate,
)

router = APIRouter(prefix="/api/crm/integrations", tags=["integrations"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class UpdateIntegrationRequest(BaseModel):
    """PATCH body. ``config`` replaces the stored blob; ``secrets`` are upserted."""

    is_active: bool | None = None
    config: IntegrationConfig | None = None
    triggers: list[str] | None = None
    secrets: dict[str, str] = Field(default_factory=dict)


# ── Conversion Helpers ───────────────────────────────────────────────────────


def integration_to_response(integration: IntegrationRead) -> dict[str, Any]:
    return {
        "id": integration.id,
        "name": integration.name,
        "provider": integration.provider,
        "description": integration.description,
        "is_active": integration.is_active,
        "config": integration.config.to_json(),
        "triggers": integration.triggers,
        "updated_at": integration.updated_at.isoformat() if integration.updated_at else None,
    }


def log_to_response(log: IntegrationLogRead) -> dict[str, Any]:
    return log.model_dump(mode="json")


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("")
async def list_integrations(
    active: bool = Query(default=False),
    registry: Any = Depends(get_integration_registry),
    user: AuthenticatedUser = Depends(require_permission("integrations.view")),
) -> dict[str, Any]:
    """List integrations, optionally only active ones (``?active=true``)."""
    integrations = await registry.list_integrations(only_active=active)
    return ok([integration_to_response(i) for i in integrations])


@router.patch("/{integration_id}")
async def update_integration(
    integration_id: uuid.UUID,
    body: UpdateIntegrationRequest,
    registry: Any = Depends(get_integration_registry),
    user: AuthenticatedUser = Depends(require_permission("integrations.edit")),
) -> dict[str, Any]:
    """Update flags/config/triggers, then store any supplied secrets."""
    updated = await registry.update_integration(
        str(integration_id),
        IntegrationUpdate(
            is_active=body.is_active,
            config=body.config,
            triggers=body.triggers,
        ),
    )
    for key_name, value in body.secrets.items():
        await registry.set_integration_secret(str(integration_id), key_name, value)
    return ok(integration_to_response(updated))


@router.get("/{integration_id}/logs")
async def get_integration_logs(
    integration_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=500),
    registry: Any = Depends(get_integration_registry),
    user: AuthenticatedUser = Depends(require_permission("integrations.view")),
) -> dict[str, Any]:
    """Newest-first audit log for one integration."""
    logs = await registry.get_logs(str(integration_id), limit=limit)
    return ok([log_to_response(entry) for entry in logs])
