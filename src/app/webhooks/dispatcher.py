"""Outbound webhook dispatcher with HMAC signing and scheduled redelivery.

dispatch() fans one internal event out to every active endpoint subscribed
to it. All deliveries run concurrently; each one is attempted and then
unconditionally recorded as a WebhookDelivery row, so one endpoint's failure
never blocks or fails its siblings.

Failed attempts are scheduled for redelivery with exponential backoff
(base * 2^(attempt-1), capped) until WEBHOOK_MAX_ATTEMPTS is reached.
retry_due() is the sweep that performs those redeliveries; it is driven by
WebhookRetryScheduler.
"""

from __future__ import annotations

import asyncio
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from src.app.core.monitoring import webhook_deliveries_total, webhook_delivery_duration_seconds
from src.app.integrations.errors import RecordNotFoundError
from src.app.webhooks.repository import WebhookRepository
from src.app.webhooks.schemas import (
    DeliveryCreate,
    DeliveryFailed,
    DeliveryOutcome,
    DeliverySucceeded,
    DispatchResult,
    WebhookDeliveryRead,
    WebhookEndpointCreate,
    WebhookEndpointRead,
    WebhookEnvelope,
)
from src.app.webhooks.signing import compute_signature, serialize_payload

logger = structlog.get_logger(__name__)

EVENT_HEADER = "X-CRM-Event"
SIGNATURE_HEADER = "X-CRM-Signature"
TIMESTAMP_HEADER = "X-CRM-Timestamp"
EVENT_ID_HEADER = "X-CRM-Event-Id"
ATTEMPT_HEADER = "X-CRM-Delivery-Attempt"


class WebhookDispatcher:
    """Signs, delivers and records outbound webhook events.

    Args:
        repository: WebhookRepository (or a test double with the same methods).
        http_client: Shared httpx.AsyncClient used for subscriber POSTs.
        max_attempts: Total attempts per endpoint per event, first one included.
        retry_base_seconds: Delay before the first redelivery.
        retry_max_seconds: Upper bound on any single redelivery delay.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        repository: WebhookRepository,
        http_client: httpx.AsyncClient,
        max_attempts: int = 5,
        retry_base_seconds: int = 60,
        retry_max_seconds: int = 3600,
        timeout: float = 10.0,
    ) -> None:
        self._repository = repository
        self._http = http_client
        self._max_attempts = max(1, max_attempts)
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds
        self._timeout = timeout

    # ── Dispatch ────────────────────────────────────────────────────────────

    async def dispatch(self, event_name: str, data: Any) -> DispatchResult:
        """Deliver one event to every active endpoint subscribed to it.

        Returns an empty DispatchResult when nobody is subscribed.
        Resolves only after every delivery has been attempted and recorded.
        """
        endpoints = await self._repository.list_active_for_event(event_name)
        if not endpoints:
            logger.debug("webhook.no_subscribers", event_name=event_name)
            return DispatchResult(event=event_name)

        envelope = WebhookEnvelope(
            event=event_name,
            event_id=str(uuid.uuid4()),
            occurred_at=datetime.now(timezone.utc).isoformat(),
            data=data,
        )
        body = serialize_payload(envelope.model_dump())
        # Persist exactly what was sent
        request_payload = json.loads(body)

        outcomes = await asyncio.gather(
            *(
                self._deliver_and_record(endpoint, event_name, envelope.event_id, body, request_payload, 1)
                for endpoint in endpoints
            )
        )

        result = DispatchResult(
            event=event_name,
            event_id=envelope.event_id,
            deliveries=list(outcomes),
        )
        logger.info(
            "webhook.dispatched",
            event_name=event_name,
            event_id=envelope.event_id,
            endpoints=len(endpoints),
            succeeded=result.succeeded,
            failed=result.failed,
        )
        return result

    async def retry_due(self, now: datetime | None = None, limit: int = 100) -> int:
        """Redeliver failed attempts whose next_retry_at has passed.

        Each due row is claimed (next_retry_at cleared) before the POST, then
        a new delivery row is recorded with attempt + 1 and the same event_id.
        Endpoints that were deleted or disabled in the meantime are skipped.

        Returns:
            Number of redeliveries performed.
        """
        now = now or datetime.now(timezone.utc)
        due = await self._repository.list_due_deliveries(now, limit=limit)
        if not due:
            return 0

        tasks = []
        for delivery in due:
            if not await self._repository.claim_delivery(delivery.id):
                continue
            endpoint = await self._repository.get_endpoint(delivery.endpoint_id)
            if endpoint is None or not endpoint.is_active:
                logger.info(
                    "webhook.retry_skipped_endpoint_unavailable",
                    delivery_id=delivery.id,
                    endpoint_id=delivery.endpoint_id,
                )
                continue
            body = serialize_payload(delivery.request_payload)
            tasks.append(
                self._deliver_and_record(
                    endpoint,
                    delivery.event_name,
                    delivery.event_id,
                    body,
                    delivery.request_payload,
                    delivery.attempt + 1,
                )
            )

        if tasks:
            await asyncio.gather(*tasks)
        logger.info("webhook.retry_sweep_complete", due=len(due), redelivered=len(tasks))
        return len(tasks)

    async def _deliver_and_record(
        self,
        endpoint: WebhookEndpointRead,
        event_name: str,
        event_id: str,
        body: bytes,
        request_payload: dict[str, Any],
        attempt: int,
    ) -> DeliveryOutcome:
        outcome = await self._deliver(endpoint, event_name, event_id, body, attempt)
        await self._record(endpoint, event_name, event_id, request_payload, outcome)
        return outcome

    async def _deliver(
        self,
        endpoint: WebhookEndpointRead,
        event_name: str,
        event_id: str,
        body: bytes,
        attempt: int,
    ) -> DeliveryOutcome:
        """POST the signed body once. Never raises."""
        timestamp = datetime.now(timezone.utc).isoformat()
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: event_name,
            SIGNATURE_HEADER: compute_signature(body, endpoint.secret),
            TIMESTAMP_HEADER: timestamp,
            EVENT_ID_HEADER: event_id,
            ATTEMPT_HEADER: str(attempt),
        }

        start_time = time.perf_counter()
        try:
            response = await self._http.post(
                endpoint.url,
                content=body,
                headers=headers,
                timeout=self._timeout,
            )
            status_code = response.status_code
            response_body = response.text
        except Exception as exc:
            # Transport errors and requests httpx cannot build (non-ASCII headers)
            status_code = 500
            response_body = str(exc) or type(exc).__name__
            logger.warning(
                "webhook.delivery_transport_error",
                endpoint_id=endpoint.id,
                event_name=event_name,
                error=response_body,
            )
        finally:
            webhook_delivery_duration_seconds.labels(event=event_name).observe(
                time.perf_counter() - start_time
            )

        if 200 <= status_code < 300:
            webhook_deliveries_total.labels(event=event_name, outcome="success").inc()
            return DeliverySucceeded(
                endpoint_id=endpoint.id,
                status_code=status_code,
                body=response_body,
                attempt=attempt,
            )

        webhook_deliveries_total.labels(event=event_name, outcome="failed").inc()
        next_retry_at = self.next_retry_at(attempt)
        logger.warning(
            "webhook.delivery_failed",
            endpoint_id=endpoint.id,
            event_name=event_name,
            event_id=event_id,
            status_code=status_code,
            attempt=attempt,
            next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
        )
        return DeliveryFailed(
            endpoint_id=endpoint.id,
            status_code=status_code,
            body=response_body,
            attempt=attempt,
            next_retry_at=next_retry_at,
        )

    async def _record(
        self,
        endpoint: WebhookEndpointRead,
        event_name: str,
        event_id: str,
        request_payload: dict[str, Any],
        outcome: DeliveryOutcome,
    ) -> None:
        """Persist the attempt. Storage errors are reported, not raised."""
        record = DeliveryCreate(
            endpoint_id=endpoint.id,
            event_id=event_id,
            event_name=event_name,
            request_payload=request_payload,
            response_status=outcome.status_code,
            response_body=outcome.body,
            attempt=outcome.attempt,
            next_retry_at=outcome.next_retry_at if isinstance(outcome, DeliveryFailed) else None,
        )
        try:
            await self._repository.insert_delivery(record)
        except Exception:
            logger.error(
                "webhook.delivery_record_failed",
                endpoint_id=endpoint.id,
                event_id=event_id,
                exc_info=True,
            )

    def next_retry_at(self, attempt: int, now: datetime | None = None) -> datetime | None:
        """When to retry after a failed attempt, or None once the budget is spent."""
        if attempt >= self._max_attempts:
            return None
        delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
        return (now or datetime.now(timezone.utc)) + timedelta(seconds=delay)

    # ── Endpoint Management ─────────────────────────────────────────────────

    async def create_endpoint(
        self,
        url: str,
        events: list[str],
        description: str | None = None,
        created_by: str | None = None,
    ) -> WebhookEndpointRead:
        """Register an endpoint with a server-generated 32-byte hex secret.

        The returned record carries the secret; it is not shown again by
        the listing API.
        """
        data = WebhookEndpointCreate(url=url, events=events, description=description)
        endpoint = await self._repository.create_endpoint(
            url=data.url,
            events=data.events,
            secret=secrets.token_hex(32),
            description=data.description,
            created_by=created_by,
        )
        logger.info("webhook.endpoint_created", endpoint_id=endpoint.id, events=endpoint.events)
        return endpoint

    async def get_endpoints(self) -> list[WebhookEndpointRead]:
        return await self._repository.list_endpoints()

    async def delete_endpoint(self, endpoint_id: str) -> None:
        """Hard delete.

        Raises:
            RecordNotFoundError: If the endpoint does not exist.
        """
        if not await self._repository.delete_endpoint(endpoint_id):
            raise RecordNotFoundError(f"Webhook endpoint not found: {endpoint_id}")
        logger.info("webhook.endpoint_deleted", endpoint_id=endpoint_id)

    async def set_endpoint_active(self, endpoint_id: str, is_active: bool) -> WebhookEndpointRead:
        endpoint = await self._repository.set_endpoint_active(endpoint_id, is_active)
        if endpoint is None:
            raise RecordNotFoundError(f"Webhook endpoint not found: {endpoint_id}")
        logger.info("webhook.endpoint_toggled", endpoint_id=endpoint_id, is_active=is_active)
        return endpoint

    async def get_deliveries(self, endpoint_id: str, limit: int = 50) -> list[WebhookDeliveryRead]:
        if await self._repository.get_endpoint(endpoint_id) is None:
            raise RecordNotFoundError(f"Webhook endpoint not found: {endpoint_id}")
        return await self._repository.list_deliveries(endpoint_id, limit=limit)
