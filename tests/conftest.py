"""Shared fixtures: in-memory repositories, services and an ASGI test client.

The repositories here implement the same async method surface as the
SQLAlchemy ones, so services run unmodified without a database. Outbound
HTTP goes through httpx.MockTransport handlers supplied per test.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.billing.schemas import PaymentUpsert, SubscriptionUpsert
from src.app.core.crypto import SecretCipher
from src.app.core.security import create_access_token
from src.app.integrations.errors import RecordNotFoundError
from src.app.integrations.registry import IntegrationRegistry
from src.app.integrations.schemas import (
    IntegrationConfig,
    IntegrationLogRead,
    IntegrationRead,
    IntegrationUpdate,
    LogStatus,
)
from src.app.webhooks.dispatcher import WebhookDispatcher
from src.app.webhooks.schemas import DeliveryCreate, WebhookDeliveryRead, WebhookEndpointRead

TEST_ENCRYPTION_KEY = "test-encryption-key"


def _clock() -> Callable[[], datetime]:
    """Strictly increasing timestamps so newest-first ordering is stable."""
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    def tick() -> datetime:
        counter["n"] += 1
        return base + timedelta(seconds=counter["n"])

    return tick


# ── In-Memory Repositories ────────────────────────────────────────────────


class InMemoryIntegrationRepository:
    """Dict-backed stand-in for IntegrationRepository."""

    def __init__(self) -> None:
        self.integrations: dict[str, IntegrationRead] = {}
        self.secrets: dict[tuple[str, str], str] = {}
        self.logs: list[IntegrationLogRead] = []
        self.fail_log_writes = False
        self._now = _clock()

    def add(
        self,
        provider: str,
        config: dict[str, Any] | None = None,
        is_active: bool = True,
        name: str | None = None,
    ) -> IntegrationRead:
        integration = IntegrationRead(
            id=str(uuid.uuid4()),
            name=name or provider.title(),
            provider=provider,
            is_active=is_active,
            config=IntegrationConfig.from_stored(config),
        )
        self.integrations[integration.id] = integration
        return integration

    async def list_integrations(self, only_active: bool = False) -> list[IntegrationRead]:
        items = sorted(self.integrations.values(), key=lambda i: i.name)
        return [i for i in items if i.is_active or not only_active]

    async def get_by_provider(self, provider: str) -> IntegrationRead | None:
        for integration in self.integrations.values():
            if integration.provider == provider:
                return integration
        return None

    async def get_by_id(self, integration_id: str) -> IntegrationRead | None:
        return self.integrations.get(integration_id)

    async def ensure_integration(
        self,
        provider: str,
        name: str,
        description: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> IntegrationRead:
        existing = await self.get_by_provider(provider)
        if existing is not None:
            return existing
        integration = self.add(provider, config=config, is_active=False, name=name)
        integration = integration.model_copy(update={"description": description})
        self.integrations[integration.id] = integration
        return integration

    async def update_integration(
        self, integration_id: str, data: IntegrationUpdate
    ) -> IntegrationRead:
        current = self.integrations.get(integration_id)
        if current is None:
            raise RecordNotFoundError(f"Integration not found: {integration_id}")
        changes: dict[str, Any] = {"updated_at": self._now()}
        if data.is_active is not None:
            changes["is_active"] = data.is_active
        if data.config is not None:
            changes["config"] = IntegrationConfig.model_validate(data.config.to_json())
        if data.triggers is not None:
            changes["triggers"] = list(data.triggers)
        updated = current.model_copy(update=changes)
        self.integrations[integration_id] = updated
        return updated

    async def upsert_secret(self, integration_id: str, key_name: str, stored_value: str) -> None:
        self.secrets[(integration_id, key_name)] = stored_value

    async def get_secret(self, integration_id: str, key_name: str) -> str | None:
        return self.secrets.get((integration_id, key_name))

    async def list_secrets(self, integration_id: str) -> dict[str, str]:
        return {k: v for (i, k), v in self.secrets.items() if i == integration_id}

    async def insert_log(
        self,
        integration_id: str,
        event: str,
        status: LogStatus,
        payload: Any,
        response: Any,
    ) -> IntegrationLogRead:
        if self.fail_log_writes:
            raise RuntimeError("log table unavailable")
        entry = IntegrationLogRead(
            id=str(uuid.uuid4()),
            integration_id=integration_id,
            event=event,
            status=status,
            payload=payload,
            response=response,
            created_at=self._now(),
        )
        self.logs.append(entry)
        return entry

    async def list_logs(self, integration_id: str, limit: int = 50) -> list[IntegrationLogRead]:
        entries = [e for e in self.logs if e.integration_id == integration_id]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    def events(self, integration_id: str | None = None) -> list[str]:
        """Log event names in insertion order."""
        return [
            e.event for e in self.logs if integration_id is None or e.integration_id == integration_id
        ]


class InMemoryWebhookRepository:
    """List-backed stand-in for WebhookRepository."""

    def __init__(self) -> None:
        self.endpoints: dict[str, WebhookEndpointRead] = {}
        self.deliveries: list[WebhookDeliveryRead] = []
        self.fail_inserts = False
        self._now = _clock()

    def add_endpoint(
        self,
        url: str,
        events: list[str],
        secret: str = "s3cret",
        is_active: bool = True,
    ) -> WebhookEndpointRead:
        endpoint = WebhookEndpointRead(
            id=str(uuid.uuid4()),
            url=url,
            events=events,
            secret=secret,
            is_active=is_active,
            created_at=self._now(),
        )
        self.endpoints[endpoint.id] = endpoint
        return endpoint

    async def list_active_for_event(self, event_name: str) -> list[WebhookEndpointRead]:
        return [e for e in self.endpoints.values() if e.is_active and event_name in e.events]

    async def create_endpoint(
        self,
        url: str,
        events: list[str],
        secret: str,
        description: str | None = None,
        created_by: str | None = None,
    ) -> WebhookEndpointRead:
        endpoint = self.add_endpoint(url, events, secret=secret)
        endpoint = endpoint.model_copy(
            update={"description": description, "created_by": created_by}
        )
        self.endpoints[endpoint.id] = endpoint
        return endpoint

    async def list_endpoints(self) -> list[WebhookEndpointRead]:
        return sorted(self.endpoints.values(), key=lambda e: e.created_at, reverse=True)

    async def get_endpoint(self, endpoint_id: str) -> WebhookEndpointRead | None:
        return self.endpoints.get(endpoint_id)

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        if endpoint_id not in self.endpoints:
            return False
        del self.endpoints[endpoint_id]
        self.deliveries = [d for d in self.deliveries if d.endpoint_id != endpoint_id]
        return True

    async def set_endpoint_active(
        self, endpoint_id: str, is_active: bool
    ) -> WebhookEndpointRead | None:
        endpoint = self.endpoints.get(endpoint_id)
        if endpoint is None:
            return None
        endpoint = endpoint.model_copy(update={"is_active": is_active})
        self.endpoints[endpoint_id] = endpoint
        return endpoint

    async def insert_delivery(self, data: DeliveryCreate) -> WebhookDeliveryRead:
        if self.fail_inserts:
            raise RuntimeError("delivery table unavailable")
        delivery = WebhookDeliveryRead(
            id=str(uuid.uuid4()),
            created_at=self._now(),
            **data.model_dump(),
        )
        self.deliveries.append(delivery)
        return delivery

    async def list_deliveries(
        self, endpoint_id: str, limit: int = 50
    ) -> list[WebhookDeliveryRead]:
        items = [d for d in self.deliveries if d.endpoint_id == endpoint_id]
        items.sort(key=lambda d: d.created_at, reverse=True)
        return items[:limit]

    async def list_due_deliveries(
        self, now: datetime, limit: int = 100
    ) -> list[WebhookDeliveryRead]:
        due = [
            d
            for d in self.deliveries
            if d.next_retry_at is not None and d.next_retry_at <= now and not d.succeeded
        ]
        due.sort(key=lambda d: d.next_retry_at)
        return due[:limit]

    async def claim_delivery(self, delivery_id: str) -> bool:
        for index, delivery in enumerate(self.deliveries):
            if delivery.id == delivery_id:
                if delivery.next_retry_at is None:
                    return False
                self.deliveries[index] = delivery.model_copy(update={"next_retry_at": None})
                return True
        return False


class InMemoryBillingRepository:
    """Dict-backed stand-in for BillingRepository."""

    def __init__(self) -> None:
        self.customers: dict[str, str] = {}
        self.payments: dict[str, PaymentUpsert] = {}
        self.subscriptions: dict[str, SubscriptionUpsert] = {}

    def add_customer(self, stripe_customer_id: str) -> str:
        customer_id = str(uuid.uuid4())
        self.customers[stripe_customer_id] = customer_id
        return customer_id

    async def get_customer_id_by_stripe_id(self, stripe_customer_id: str) -> str | None:
        return self.customers.get(stripe_customer_id)

    async def upsert_payment(self, data: PaymentUpsert) -> None:
        self.payments[data.stripe_payment_intent_id] = data

    async def upsert_subscription(self, data: SubscriptionUpsert) -> None:
        self.subscriptions[data.stripe_subscription_id] = data


# ── HTTP Helpers ──────────────────────────────────────────────────────────


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def auth_headers(role: str = "user", permissions: list[str] | None = None) -> dict[str, str]:
    token = create_access_token(
        {
            "sub": "user-1",
            "email": "ops@example.com",
            "role": role,
            "permissions": permissions or [],
        }
    )
    return {"Authorization": f"Bearer {token}"}


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def integration_repo() -> InMemoryIntegrationRepository:
    return InMemoryIntegrationRepository()


@pytest.fixture
def registry(integration_repo) -> IntegrationRegistry:
    return IntegrationRegistry(integration_repo, cipher=SecretCipher(TEST_ENCRYPTION_KEY))


@pytest.fixture
def webhook_repo() -> InMemoryWebhookRepository:
    return InMemoryWebhookRepository()


@pytest.fixture
def billing_repo() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def http_client():
    """Factory fixture: ``http_client(handler)`` -> MockTransport-backed AsyncClient."""
    return mock_client


@pytest.fixture
def auth():
    """Factory fixture: ``auth(role=..., permissions=[...])`` -> Authorization header."""
    return auth_headers


@pytest.fixture
def make_dispatcher(webhook_repo):
    """Build a WebhookDispatcher whose subscriber POSTs hit ``handler``."""

    def _make(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> WebhookDispatcher:
        return WebhookDispatcher(webhook_repo, mock_client(handler), **kwargs)

    return _make


@pytest_asyncio.fixture
async def api_app():
    """Application with services on app.state and no lifespan (no database)."""
    from src.app.main import create_app

    return create_app()


@pytest_asyncio.fixture
async def client(api_app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=api_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
