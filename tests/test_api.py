"""API tests over httpx.ASGITransport.

Services are placed on app.state directly (the lifespan is not run), backed
by the in-memory repositories from conftest, so no database is needed.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time

import httpx
import pytest
import pytest_asyncio

from src.app.billing.stripe_webhooks import StripeWebhookHandler
from src.app.core.crypto import SecretCipher
from src.app.integrations.registry import IntegrationRegistry
from src.app.integrations.providers import WhatsAppService, build_sync_adapters
from src.app.webhooks.dispatcher import SIGNATURE_HEADER
from src.app.webhooks.signing import verify_signature

STRIPE_SECRET = "whsec_api_test"

ADMIN = {"role": "admin"}


def _unexpected(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected HTTP call: {request.url}")


@pytest_asyncio.fixture
async def services(api_app, registry, make_dispatcher, billing_repo, http_client):
    """Wire services onto app.state; subscriber POSTs are captured."""
    received: list[httpx.Request] = []

    def subscriber(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200, text="ok")

    dispatcher = make_dispatcher(subscriber)
    provider_http = http_client(_unexpected)
    api_app.state.integration_registry = registry
    api_app.state.webhook_dispatcher = dispatcher
    api_app.state.sync_adapters = build_sync_adapters(registry, dispatcher, provider_http)
    api_app.state.whatsapp_service = WhatsAppService(registry, dispatcher, provider_http)
    api_app.state.stripe_handler = StripeWebhookHandler(
        billing_repo, STRIPE_SECRET, dispatcher=dispatcher
    )
    return {"received": received, "dispatcher": dispatcher}


# ── Auth and Envelope ─────────────────────────────────────────────────────


class TestAuth:
    async def test_health_is_public(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_missing_token_401(self, client, services):
        response = await client.get("/api/crm/integrations")
        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Not authenticated"}

    async def test_invalid_token_401(self, client, services):
        response = await client.get(
            "/api/crm/integrations", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    async def test_missing_permission_403(self, client, services, auth):
        response = await client.get(
            "/api/crm/integrations", headers=auth(permissions=["webhooks.view"])
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Missing permission: integrations.view"

    async def test_permission_grants_access(self, client, services, auth):
        response = await client.get(
            "/api/crm/integrations", headers=auth(permissions=["integrations.view"])
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "data": []}

    async def test_service_not_initialized_503(self, client, auth):
        response = await client.get("/api/crm/webhooks/endpoints", headers=auth(**ADMIN))
        assert response.status_code == 503
        assert response.json()["success"] is False

    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


# ── Integrations ──────────────────────────────────────────────────────────


class TestIntegrationsAPI:
    async def test_patch_updates_config_and_secrets(
        self, client, services, auth, integration_repo, registry
    ):
        integration = integration_repo.add("zoho", is_active=False)

        response = await client.patch(
            f"/api/crm/integrations/{integration.id}",
            headers=auth(**ADMIN),
            json={
                "is_active": True,
                "config": {"baseUrl": "https://zoho.example.com"},
                "secrets": {"zoho_access_token": "tok"},
            },
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["is_active"] is True
        assert data["config"] == {"baseUrl": "https://zoho.example.com"}
        assert "zoho_access_token" not in json.dumps(data)
        assert await registry.get_integration_secret(integration.id, "zoho_access_token") == "tok"

    async def test_patch_invalid_base_url_400(self, client, services, auth, integration_repo):
        integration = integration_repo.add("zoho")
        response = await client.patch(
            f"/api/crm/integrations/{integration.id}",
            headers=auth(**ADMIN),
            json={"config": {"baseUrl": "zoho.example.com"}},
        )
        assert response.status_code == 400
        assert "config.baseUrl" in response.json()["error"]

    async def test_patch_unknown_id_404(self, client, services, auth):
        response = await client.patch(
            "/api/crm/integrations/00000000-0000-0000-0000-000000000000",
            headers=auth(**ADMIN),
            json={"is_active": True},
        )
        assert response.status_code == 404

    async def test_malformed_id_400(self, client, services, auth):
        response = await client.get("/api/crm/integrations/not-a-uuid/logs", headers=auth(**ADMIN))
        assert response.status_code == 400

    async def test_list_active_filter(self, client, services, auth, integration_repo):
        integration_repo.add("zoho", is_active=True)
        integration_repo.add("orocrm", is_active=False)

        response = await client.get("/api/crm/integrations?active=true", headers=auth(**ADMIN))

        assert [i["provider"] for i in response.json()["data"]] == ["zoho"]


# ── Provider Sync and Inbound Webhooks ────────────────────────────────────


class TestProvidersAPI:
    async def test_unknown_provider_404(self, client, services, auth):
        response = await client.post("/api/crm/integrations/hubspot/sync", headers=auth(**ADMIN))
        assert response.status_code == 404

    async def test_sync_unconfigured_500_envelope(self, client, services, auth, integration_repo):
        integration_repo.add("zoho")
        response = await client.post("/api/crm/integrations/zoho/sync", headers=auth(**ADMIN))
        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": "Please configure the Zoho base URL in the integration settings.",
        }

    async def test_unexpected_error_uses_500_envelope(
        self, api_app, services, auth, integration_repo
    ):
        integration = integration_repo.add("zoho", config={"baseUrl": "https://crm.example.com"})
        rotated = IntegrationRegistry(integration_repo, cipher=SecretCipher("previous-key"))
        await rotated.set_integration_secret(integration.id, "zoho_access_token", "tok-123")

        transport = httpx.ASGITransport(app=api_app, raise_app_exceptions=False)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/crm/integrations/zoho/sync", headers=auth(**ADMIN))

        assert response.status_code == 500
        assert response.headers["content-type"] == "application/json"
        assert response.json() == {
            "success": False,
            "error": "Secret was encrypted with a different key",
        }

    async def test_status_unconfigured(self, client, services, auth):
        response = await client.get("/api/crm/integrations/suitecrm/status", headers=auth(**ADMIN))
        assert response.status_code == 200
        assert response.json()["data"] == {
            "lastSyncAt": None,
            "latestLog": None,
            "isConfigured": False,
        }

    async def test_provider_webhook_public(self, client, services, integration_repo):
        integration_repo.add("espocrm")
        response = await client.post(
            "/api/crm/integrations/espocrm/webhook", json={"entityType": "Lead"}
        )
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert integration_repo.logs[-1].event == "espocrm.webhook"

    async def test_whatsapp_verify_handshake(self, client, services, integration_repo):
        integration_repo.add("whatsapp", config={"verifyToken": "hub-secret"})
        response = await client.get(
            "/api/crm/integrations/whatsapp/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "hub-secret", "hub.challenge": "42"},
        )
        assert response.status_code == 200
        assert response.text == "42"

    async def test_whatsapp_verify_mismatch_403(self, client, services, integration_repo):
        integration_repo.add("whatsapp", config={"verifyToken": "hub-secret"})
        response = await client.get(
            "/api/crm/integrations/whatsapp/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "42"},
        )
        assert response.status_code == 403

    async def test_whatsapp_verify_missing_params_400(self, client, services):
        response = await client.get("/api/crm/integrations/whatsapp/webhook")
        assert response.status_code == 400

    async def test_whatsapp_inbound(self, client, services):
        response = await client.post(
            "/api/crm/integrations/whatsapp/webhook",
            json={"object": "whatsapp_business_account", "entry": []},
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"received": True, "messages": 0}}

    async def test_whatsapp_send_requires_auth(self, client, services):
        response = await client.post(
            "/api/crm/integrations/whatsapp/send", json={"to": "1", "content": {}}
        )
        assert response.status_code == 401


# ── Webhook Endpoints ─────────────────────────────────────────────────────


class TestWebhooksAPI:
    async def test_endpoint_lifecycle(self, client, services, auth):
        headers = auth(**ADMIN)

        created = await client.post(
            "/api/crm/webhooks/endpoints",
            headers=headers,
            json={"url": "https://hooks.example.com/in", "events": ["deal.created"]},
        )
        assert created.status_code == 201
        endpoint = created.json()["data"]
        assert len(endpoint["secret"]) == 64
        assert endpoint["created_by"] == "user-1"

        listed = await client.get("/api/crm/webhooks/endpoints", headers=headers)
        assert [e["id"] for e in listed.json()["data"]] == [endpoint["id"]]
        assert "secret" not in listed.json()["data"][0]

        toggled = await client.patch(
            f"/api/crm/webhooks/endpoints/{endpoint['id']}",
            headers=headers,
            json={"is_active": False},
        )
        assert toggled.json()["data"]["is_active"] is False

        deleted = await client.delete(f"/api/crm/webhooks/endpoints/{endpoint['id']}", headers=headers)
        assert deleted.json() == {"success": True}

        missing = await client.delete(f"/api/crm/webhooks/endpoints/{endpoint['id']}", headers=headers)
        assert missing.status_code == 404

    async def test_create_rejects_bad_url(self, client, services, auth):
        response = await client.post(
            "/api/crm/webhooks/endpoints",
            headers=auth(**ADMIN),
            json={"url": "ftp://hooks.example.com", "events": ["deal.created"]},
        )
        assert response.status_code == 400
        assert response.json()["success"] is False

    async def test_test_dispatch_delivers_signed_event(self, client, services, auth, webhook_repo):
        endpoint = webhook_repo.add_endpoint("https://hooks.example.com/in", ["deal.created"])

        response = await client.post(
            "/api/crm/webhooks/test",
            headers=auth(permissions=["webhooks.create"]),
            json={"event": "deal.created", "data": {"id": "d1"}},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["message"] == "Test event dispatched"
        assert body["data"]["succeeded"] == 1
        request = services["received"][0]
        assert verify_signature(request.content, endpoint.secret, request.headers[SIGNATURE_HEADER])

        deliveries = await client.get(
            f"/api/crm/webhooks/endpoints/{endpoint.id}/deliveries",
            headers=auth(permissions=["webhooks.view"]),
        )
        rows = deliveries.json()["data"]
        assert len(rows) == 1
        assert rows[0]["succeeded"] is True
        assert rows[0]["request_payload"]["data"] == {"id": "d1"}


# ── Stripe ────────────────────────────────────────────────────────────────


def _stripe_signature(payload: bytes) -> str:
    timestamp = int(time.time())
    digest = hmac.new(
        STRIPE_SECRET.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestStripeAPI:
    @pytest.fixture
    def payload(self) -> bytes:
        return json.dumps(
            {
                "id": "evt_1",
                "object": "event",
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": "pi_1", "amount": 1200, "currency": "usd"}},
            }
        ).encode()

    async def test_valid_event_recorded(self, client, services, billing_repo, payload):
        response = await client.post(
            "/api/crm/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": _stripe_signature(payload)},
        )
        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert billing_repo.payments["pi_1"].amount == 1200

    async def test_missing_signature_400(self, client, services, billing_repo, payload):
        response = await client.post("/api/crm/webhooks/stripe", content=payload)
        assert response.status_code == 400
        assert billing_repo.payments == {}

    async def test_tampered_body_400(self, client, services, billing_repo, payload):
        signature = _stripe_signature(payload)
        response = await client.post(
            "/api/crm/webhooks/stripe",
            content=payload.replace(b"1200", b"9999"),
            headers={"Stripe-Signature": signature},
        )
        assert response.status_code == 400
        assert billing_repo.payments == {}




class TestMetrics:
    async def test_metrics_exposed(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "webhook_deliveries_total" in response.text
        assert "provider_sync_runs_total" in response.text
