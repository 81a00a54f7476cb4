"""Per-provider sync trigger, status read and inbound webhook.

``{provider}`` is one of the registered sync adapters (zoho, suitecrm,
espocrm, orocrm); anything else answers 404.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from src.app.api.deps import get_sync_adapters, require_permission
from src.app.api.responses import ok
from src.app.core.security import AuthenticatedUser

router = APIRouter(prefix="/api/crm/integrations", tags=["provider-sync"])


def _adapter(provider: str, adapters: dict[str, Any]) -> Any:
    adapter = adapters.get(provider.lower())
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown provider: {provider}",
        )
    return adapter


@router.post("/{provider}/sync")
async def trigger_sync(
    provider: str,
    adapters: dict[str, Any] = Depends(get_sync_adapters),
    user: AuthenticatedUser = Depends(require_permission("integrations.edit")),
) -> dict[str, Any]:
    """Run a full pull sync synchronously and return its summary."""
    result = await _adapter(provider, adapters).sync()
    return ok(result.to_response())


@router.get("/{provider}/status")
async def get_sync_status(
    provider: str,
    adapters: dict[str, Any] = Depends(get_sync_adapters),
    user: AuthenticatedUser = Depends(require_permission("integrations.view")),
) -> dict[str, Any]:
    sync_status = await _adapter(provider, adapters).get_status()
    return ok(sync_status.to_response())


@router.post("/{provider}/webhook")
async def receive_provider_webhook(
    provider: str,
    payload: Any = Body(default=None),
    adapters: dict[str, Any] = Depends(get_sync_adapters),
) -> dict[str, Any]:
    """Public inbound webhook; payload is logged and re-dispatched as-is."""
    return await _adapter(provider, adapters).handle_webhook(payload)
