"""FastAPI dependency injection for authentication, permissions and services.

Services are constructed once in the application lifespan and stored on
``app.state``; the getters here hand them to endpoints and answer 503 when
the service was never initialized.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import Depends, HTTPException, Request, status

from src.app.core.security import AuthenticatedUser, user_from_claims, verify_token


async def get_current_user(request: Request) -> AuthenticatedUser:
    """Extract and validate the current user from the Bearer JWT.

    Raises:
        HTTPException(401): If no valid authentication is provided.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_token(auth_header[7:])
    return user_from_claims(payload)


def require_permission(permission: str) -> Callable[..., Awaitable[AuthenticatedUser]]:
    """Dependency factory: authenticated user holding ``permission`` (admins pass)."""

    async def _check(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if not user.has_permission(permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return user

    return _check


# ── Service Getters ──────────────────────────────────────────────────────────


def _from_state(request: Request, attr: str, label: str) -> Any:
    service = getattr(request.app.state, attr, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_integration_registry(request: Request) -> Any:
    """Retrieve IntegrationRegistry from app.state, 503 if not available."""
    return _from_state(request, "integration_registry", "Integration registry")


def get_webhook_dispatcher(request: Request) -> Any:
    """Retrieve WebhookDispatcher from app.state, 503 if not available."""
    return _from_state(request, "webhook_dispatcher", "Webhook dispatcher")


def get_sync_adapters(request: Request) -> dict[str, Any]:
    """Provider key -> ProviderSyncAdapter mapping from app.state."""
    return _from_state(request, "sync_adapters", "Provider sync")


def get_whatsapp_service(request: Request) -> Any:
    return _from_state(request, "whatsapp_service", "WhatsApp integration")


def get_stripe_handler(request: Request) -> Any:
    return _from_state(request, "stripe_handler", "Stripe webhooks")
