"""WhatsApp Cloud API webhook and send endpoints.

The GET/POST webhook pair is public (called by Meta); sending requires
``integrations.edit``. Registered before the generic provider routes so
``/whatsapp/webhook`` is not captured by ``/{provider}/webhook``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from src.app.api.deps import get_whatsapp_service, require_permission
from src.app.api.responses import error_response, ok
from src.app.core.security import AuthenticatedUser
from src.app.integrations.errors import SignatureVerificationError

router = APIRouter(prefix="/api/crm/integrations/whatsapp", tags=["whatsapp"])


class SendMessageRequest(BaseModel):
    to: str = Field(min_length=1)
    content: dict[str, Any] = Field(default_factory=dict)


@router.get("/webhook")
async def verify_webhook(
    request: Request,
    service: Any = Depends(get_whatsapp_service),
):
    """Subscription handshake: echo ``hub.challenge`` when the token matches."""
    params = request.query_params
    try:
        challenge = await service.verify_subscription(
            params.get("hub.mode"),
            params.get("hub.verify_token"),
            params.get("hub.challenge"),
        )
    except ValueError as exc:
        return error_response(status.HTTP_400_BAD_REQUEST, str(exc))
    except SignatureVerificationError as exc:
        return error_response(status.HTTP_403_FORBIDDEN, str(exc))
    return PlainTextResponse(challenge)


@router.post("/webhook")
async def receive_webhook(
    payload: dict[str, Any] = Body(default_factory=dict),
    service: Any = Depends(get_whatsapp_service),
) -> dict[str, Any]:
    result = await service.handle_webhook(payload)
    return ok(result)


@router.post("/send")
async def send_message(
    body: SendMessageRequest,
    service: Any = Depends(get_whatsapp_service),
    user: AuthenticatedUser = Depends(require_permission("integrations.edit")),
) -> dict[str, Any]:
    result = await service.send_message(body.to, body.content)
    return ok(result)
