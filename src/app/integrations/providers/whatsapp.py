"""WhatsApp Cloud API: subscription handshake, inbound events, outbound messages.

Configuration lives on the ``whatsapp`` integration row: ``phoneNumberId``
and ``verifyToken`` in config, the Graph API token in the ``accessToken``
secret.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.app.integrations.errors import (
    IntegrationNotConfiguredError,
    SignatureVerificationError,
    UpstreamAPIError,
)
from src.app.integrations.registry import IntegrationRegistry
from src.app.integrations.schemas import LogStatus, Provider

logger = structlog.get_logger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
MESSAGE_EVENT = "whatsapp.message.received"


class WhatsAppService:
    """Inbound and outbound WhatsApp Business messaging.

    Args:
        registry: IntegrationRegistry for config, secrets and logs.
        dispatcher: WebhookDispatcher that fans inbound messages out.
        http_client: Shared httpx.AsyncClient for Graph API calls.
        graph_url: Graph API base including version.
        timeout: Per-request timeout in seconds.
    """

    provider = Provider.WHATSAPP.value

    def __init__(
        self,
        registry: IntegrationRegistry,
        dispatcher: Any,
        http_client: httpx.AsyncClient,
        graph_url: str = "https://graph.facebook.com/v17.0",
        timeout: float = 30.0,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._http = http_client
        self._graph_url = graph_url.rstrip("/")
        self._timeout = timeout

    async def verify_subscription(
        self, mode: str | None, token: str | None, challenge: str | None
    ) -> str:
        """Answer Meta's ``hub.*`` subscription handshake.

        Returns:
            The challenge to echo back.

        Raises:
            ValueError: hub.mode or hub.verify_token missing.
            SignatureVerificationError: Mode is not ``subscribe`` or the token
                does not match the stored verifyToken.
        """
        if not mode or not token:
            raise ValueError("hub.mode and hub.verify_token are required")

        integration = await self._registry.find_integration_by_provider(self.provider)
        stored = integration.config.verify_token if integration else None
        if mode != "subscribe" or not stored or token != stored:
            logger.warning("whatsapp.verify_rejected", mode=mode)
            raise SignatureVerificationError("WhatsApp verify token mismatch")

        logger.info("whatsapp.webhook_verified")
        return challenge or ""

    async def handle_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Log the inbound event and dispatch each contained message.

        Events for an unconfigured integration are still dispatched; only
        the audit log needs the integration row.
        """
        integration = await self._registry.find_integration_by_provider(self.provider)
        messages = list(_iter_messages(payload))

        if integration is not None:
            await self._registry.log_execution(
                integration.id,
                "whatsapp.webhook",
                LogStatus.SUCCESS,
                payload=payload,
                response={"processed": True, "messages": len(messages)},
            )
        else:
            logger.warning("whatsapp.webhook_unconfigured")

        for message in messages:
            await self._dispatcher.dispatch(MESSAGE_EVENT, message)

        return {"received": True, "messages": len(messages)}

    async def send_message(self, to: str, content: dict[str, Any]) -> Any:
        """POST a message to ``/{phoneNumberId}/messages``.

        ``content`` carries the type-specific body, e.g.
        ``{"type": "text", "text": {"body": "hi"}}``.

        Raises:
            IntegrationNotConfiguredError: Row, phoneNumberId or token missing.
            UpstreamAPIError: Graph API refused the message or was unreachable.
        """
        integration = await self._registry.get_integration_by_provider(self.provider)
        phone_number_id = integration.config.phone_number_id
        access_token = await self._registry.get_integration_secret(
            integration.id, ACCESS_TOKEN_KEY
        )
        if not phone_number_id or not access_token:
            raise IntegrationNotConfiguredError("WhatsApp integration not configured")

        body = {"messaging_product": "whatsapp", "to": to, **content}
        request_log = {"to": to, "content": content}

        try:
            response = await self._http.post(
                f"{self._graph_url}/{phone_number_id}/messages",
                json=body,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            error = UpstreamAPIError(self.provider, None, str(exc) or type(exc).__name__)
            await self._registry.log_execution(
                integration.id,
                "whatsapp.send_message",
                LogStatus.FAILED,
                payload=request_log,
                response={"error": str(error)},
            )
            raise error from exc

        try:
            data: Any = response.json()
        except ValueError:
            data = {"raw": response.text}

        status = LogStatus.SUCCESS if response.is_success else LogStatus.FAILED
        await self._registry.log_execution(
            integration.id,
            "whatsapp.send_message",
            status,
            payload=request_log,
            response=data,
        )

        if not response.is_success:
            logger.warning(
                "whatsapp.send_failed", status_code=response.status_code, to=to
            )
            raise UpstreamAPIError(self.provider, response.status_code, response.text)

        logger.info("whatsapp.message_sent", to=to)
        return data


def _iter_messages(payload: dict[str, Any]):
    """Yield one dispatch body per message in a Business Account event."""
    if payload.get("object") != "whatsapp_business_account":
        return
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for message in value.get("messages") or []:
                yield {
                    "message": message,
                    "contacts": value.get("contacts") or [],
                    "metadata": value.get("metadata") or {},
                }
