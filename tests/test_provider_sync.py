"""Unit tests for the CRM pull-sync adapters (Zoho, SuiteCRM, EspoCRM, OroCRM).

Provider APIs are served by httpx.MockTransport handlers; the webhook
dispatcher is an AsyncMock so broadcasts can be asserted on.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from src.app.integrations.errors import IntegrationNotConfiguredError, UpstreamAPIError
from src.app.integrations.providers import (
    SYNC_ADAPTERS,
    EspoCRMSyncAdapter,
    OroCRMSyncAdapter,
    ProviderSyncAdapter,
    SuiteCRMSyncAdapter,
    ZohoSyncAdapter,
    build_sync_adapters,
)
from src.app.integrations.providers import espocrm, suitecrm
from src.app.integrations.schemas import LogStatus


# ── Helpers ────────────────────────────────────────────────────────────────


async def _configure(registry, integration_repo, provider, secret_key, base_url="https://crm.example.com"):
    integration = integration_repo.add(provider, config={"baseUrl": base_url} if base_url else {})
    if secret_key:
        await registry.set_integration_secret(integration.id, secret_key, "tok-123")
    return integration


def _fail_on_request(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected HTTP call: {request.url}")


@pytest.fixture
def dispatcher():
    mock = AsyncMock()
    mock.dispatch.return_value = None
    return mock


# ── Interface ─────────────────────────────────────────────────────────────


class TestAdapterInterface:
    def test_abstract_methods(self):
        assert ProviderSyncAdapter.__abstractmethods__ == {"fetch_page", "_collect"}

    def test_registry_of_adapters(self, registry, dispatcher, http_client):
        adapters = build_sync_adapters(registry, dispatcher, http_client(_fail_on_request))
        assert set(adapters) == {"zoho", "suitecrm", "espocrm", "orocrm"}
        assert set(SYNC_ADAPTERS) == set(adapters)
        assert isinstance(adapters["zoho"], ZohoSyncAdapter)


# ── Configuration Checks ──────────────────────────────────────────────────


class TestMissingConfiguration:
    @pytest.mark.parametrize(
        "adapter_cls", [ZohoSyncAdapter, SuiteCRMSyncAdapter, EspoCRMSyncAdapter, OroCRMSyncAdapter]
    )
    async def test_missing_base_url_fails_before_http(
        self, adapter_cls, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, adapter_cls.provider, adapter_cls.secret_key, base_url=None)
        adapter = adapter_cls(registry, dispatcher, http_client(_fail_on_request))

        with pytest.raises(IntegrationNotConfiguredError, match="base URL"):
            await adapter.sync()

    @pytest.mark.parametrize(
        "adapter_cls", [ZohoSyncAdapter, SuiteCRMSyncAdapter, EspoCRMSyncAdapter, OroCRMSyncAdapter]
    )
    async def test_missing_secret_fails_before_http(
        self, adapter_cls, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, adapter_cls.provider, secret_key=None)
        adapter = adapter_cls(registry, dispatcher, http_client(_fail_on_request))

        with pytest.raises(IntegrationNotConfiguredError, match=adapter_cls.secret_key):
            await adapter.sync()

    async def test_missing_integration_row(self, registry, dispatcher, http_client):
        adapter = ZohoSyncAdapter(registry, dispatcher, http_client(_fail_on_request))
        with pytest.raises(IntegrationNotConfiguredError):
            await adapter.sync()


# ── Zoho ──────────────────────────────────────────────────────────────────


class TestZohoSync:
    async def test_two_page_scenario(self, registry, integration_repo, dispatcher, http_client):
        """Page 1: two records and next_page=2. Page 2: one record, no next page."""
        integration = await _configure(registry, integration_repo, "zoho", "zoho_access_token")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json={"data": [{"id": 3}], "info": {}})
            return httpx.Response(
                200,
                json={"data": [{"id": 1}, {"id": 2}], "info": {"next_page": {"page": 2}}},
            )

        adapter = ZohoSyncAdapter(registry, dispatcher, http_client(handler))
        result = await adapter.sync()

        assert [s.model_dump(exclude_none=True) for s in result.summary] == [
            {"batch": 1, "count": 2},
            {"batch": 2, "count": 1},
        ]
        assert result.count == 3
        assert result.counts == {"Leads": 3}

        stored = integration_repo.integrations[integration.id]
        assert stored.config.zoho_last_sync_at == result.synced_at.isoformat()
        assert stored.config.base_url == "https://crm.example.com"

        assert seen[0].url.path == "/crm/v2/Leads"
        assert seen[0].headers["Authorization"] == "Zoho-oauthtoken tok-123"
        assert seen[0].url.params["per_page"] == "200"

        assert integration_repo.events(integration.id) == ["zoho.batch", "zoho.batch", "zoho.sync"]
        dispatcher.dispatch.assert_awaited_once()
        event_name, data = dispatcher.dispatch.await_args.args
        assert event_name == "zoho.synced"
        assert data["count"] == 3
        assert "syncedAt" in data

    async def test_more_records_flag(self, registry, integration_repo, dispatcher, http_client):
        await _configure(registry, integration_repo, "zoho", "zoho_access_token")

        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params.get("page", "1"))
            more = page < 3
            return httpx.Response(
                200, json={"data": [{"id": page}], "info": {"page": page, "more_records": more}}
            )

        result = await ZohoSyncAdapter(registry, dispatcher, http_client(handler)).sync()

        assert [s.count for s in result.summary] == [1, 1, 1]

    async def test_empty_204(self, registry, integration_repo, dispatcher, http_client):
        await _configure(registry, integration_repo, "zoho", "zoho_access_token")
        adapter = ZohoSyncAdapter(registry, dispatcher, http_client(lambda r: httpx.Response(204)))

        result = await adapter.sync()

        assert result.count == 0
        assert [s.count for s in result.summary] == [0]

    async def test_upstream_failure_logged_and_raised(
        self, registry, integration_repo, dispatcher, http_client
    ):
        integration = await _configure(registry, integration_repo, "zoho", "zoho_access_token")
        adapter = ZohoSyncAdapter(
            registry, dispatcher, http_client(lambda r: httpx.Response(401, text="INVALID_TOKEN"))
        )

        with pytest.raises(UpstreamAPIError) as exc_info:
            await adapter.sync()

        assert exc_info.value.status_code == 401
        failed = integration_repo.logs[-1]
        assert failed.event == "zoho.sync"
        assert failed.status == LogStatus.FAILED
        assert failed.response["statusCode"] == 401
        assert integration_repo.integrations[integration.id].config.zoho_last_sync_at is None
        dispatcher.dispatch.assert_not_awaited()

    async def test_non_object_body_logged_as_failure(
        self, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, "zoho", "zoho_access_token")
        adapter = ZohoSyncAdapter(
            registry, dispatcher, http_client(lambda r: httpx.Response(200, json=[]))
        )

        with pytest.raises(UpstreamAPIError, match="not a JSON object"):
            await adapter.sync()

        failed = integration_repo.logs[-1]
        assert failed.event == "zoho.sync"
        assert failed.status == LogStatus.FAILED
        assert failed.response["statusCode"] == 200
        dispatcher.dispatch.assert_not_awaited()

    async def test_unexpected_error_logged_and_raised(
        self, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, "zoho", "zoho_access_token")
        adapter = ZohoSyncAdapter(registry, dispatcher, http_client(_fail_on_request))
        adapter._collect = AsyncMock(side_effect=RuntimeError("parser exploded"))

        with pytest.raises(RuntimeError):
            await adapter.sync()

        failed = integration_repo.logs[-1]
        assert failed.status == LogStatus.FAILED
        assert failed.response == {"error": "parser exploded", "statusCode": None}

    async def test_log_write_failure_does_not_fail_sync(
        self, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, "zoho", "zoho_access_token")
        integration_repo.fail_log_writes = True
        adapter = ZohoSyncAdapter(
            registry, dispatcher, http_client(lambda r: httpx.Response(200, json={"data": [{}]}))
        )

        result = await adapter.sync()

        assert result.count == 1
        assert integration_repo.logs == []

    async def test_broadcast_failure_does_not_fail_sync(
        self, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, "zoho", "zoho_access_token")
        dispatcher.dispatch.side_effect = RuntimeError("webhooks down")
        adapter = ZohoSyncAdapter(
            registry, dispatcher, http_client(lambda r: httpx.Response(200, json={"data": []}))
        )

        result = await adapter.sync()

        assert result.count == 0


# ── SuiteCRM ──────────────────────────────────────────────────────────────


class TestSuiteCRMSync:
    async def test_modules_and_incremental_filter(
        self, registry, integration_repo, dispatcher, http_client
    ):
        integration = integration_repo.add(
            "suitecrm",
            config={"baseUrl": "https://suite.example.com", "last_sync_at": "2026-01-01T00:00:00Z"},
        )
        await registry.set_integration_secret(integration.id, "suitecrm_api_key", "tok")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/api/Leads":
                return httpx.Response(200, json={"records": [{"id": "l1"}, {"id": "l2"}]})
            return httpx.Response(200, json={"records": [{"id": "o1"}]})

        result = await SuiteCRMSyncAdapter(registry, dispatcher, http_client(handler)).sync()

        assert result.counts == {"Leads": 2, "Opportunities": 1}
        assert result.count == 3
        assert [r.url.path for r in seen] == ["/api/Leads", "/api/Opportunities"]
        params = seen[0].url.params
        assert params["max_num"] == str(suitecrm.PAGE_SIZE)
        assert params["offset"] == "0"
        assert params["filter[0][date_modified][$gt]"] == "2026-01-01T00:00:00Z"
        assert integration_repo.events(integration.id) == [
            "suitecrm.lead.synced",
            "suitecrm.deal.synced",
            "suitecrm.sync",
        ]
        stored = integration_repo.integrations[integration.id]
        assert stored.config.last_sync_at == result.synced_at.isoformat()

    async def test_first_sync_has_no_filter(self, registry, integration_repo, dispatcher, http_client):
        await _configure(registry, integration_repo, "suitecrm", "suitecrm_api_key")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"records": []})

        await SuiteCRMSyncAdapter(registry, dispatcher, http_client(handler)).sync()

        assert all("filter[0][date_modified][$gt]" not in r.url.params for r in seen)

    async def test_offset_cap_terminates_runaway_pagination(
        self, registry, integration_repo, dispatcher, http_client
    ):
        """An API that always returns a full page still ends at the offset cap."""
        await _configure(registry, integration_repo, "suitecrm", "suitecrm_api_key")
        full_page = {"records": [{"id": i} for i in range(suitecrm.PAGE_SIZE)]}
        calls = {"Leads": 0, "Opportunities": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls[request.url.path.rsplit("/", 1)[-1]] += 1
            return httpx.Response(200, json=full_page)

        result = await SuiteCRMSyncAdapter(registry, dispatcher, http_client(handler)).sync()

        pages_per_module = suitecrm.OFFSET_CAP // suitecrm.PAGE_SIZE
        assert calls == {"Leads": pages_per_module, "Opportunities": pages_per_module}
        assert result.counts == {"Leads": suitecrm.OFFSET_CAP, "Opportunities": suitecrm.OFFSET_CAP}

    async def test_pagination_by_offset(self, registry, integration_repo, dispatcher, http_client):
        await _configure(registry, integration_repo, "suitecrm", "suitecrm_api_key")
        offsets: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path != "/api/Leads":
                return httpx.Response(200, json={"records": []})
            offset = request.url.params["offset"]
            offsets.append(offset)
            size = suitecrm.PAGE_SIZE if offset == "0" else 10
            return httpx.Response(200, json={"records": [{}] * size})

        result = await SuiteCRMSyncAdapter(registry, dispatcher, http_client(handler)).sync()

        assert offsets == ["0", str(suitecrm.PAGE_SIZE)]
        assert result.counts == {"Leads": suitecrm.PAGE_SIZE + 10}


# ── EspoCRM ───────────────────────────────────────────────────────────────


class TestEspoCRMSync:
    async def test_decreasing_pages_terminate(self, registry, integration_repo, dispatcher, http_client):
        """Full, full, undersized: three batches whose counts sum to the records served."""
        integration = await _configure(registry, integration_repo, "espocrm", "espocrm_token")
        sizes = iter([espocrm.PAGE_SIZE, espocrm.PAGE_SIZE, 7])
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"total": 207, "list": [{}] * next(sizes)})

        result = await EspoCRMSyncAdapter(registry, dispatcher, http_client(handler)).sync()

        assert [s.count for s in result.summary] == [espocrm.PAGE_SIZE, espocrm.PAGE_SIZE, 7]
        assert result.count == 2 * espocrm.PAGE_SIZE + 7
        assert [r.url.params["offset"] for r in seen] == ["0", "100", "200"]
        assert seen[0].url.path == "/api/v1/Leads"
        assert seen[0].headers["Authorization"] == "Bearer tok-123"
        batch_logs = [e for e in integration_repo.logs if e.event == "espocrm.batch"]
        assert sum(e.payload["count"] for e in batch_logs) == result.count
        stored = integration_repo.integrations[integration.id]
        assert stored.config.espocrm_last_sync_at == result.synced_at.isoformat()

    async def test_empty_page_ends_without_batch(
        self, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, "espocrm", "espocrm_token")
        adapter = EspoCRMSyncAdapter(
            registry, dispatcher, http_client(lambda r: httpx.Response(200, json={"list": []}))
        )

        result = await adapter.sync()

        assert result.summary == []
        assert result.count == 0

    async def test_records_key_fallback(self, registry, integration_repo, dispatcher, http_client):
        await _configure(registry, integration_repo, "espocrm", "espocrm_token")
        adapter = EspoCRMSyncAdapter(
            registry,
            dispatcher,
            http_client(lambda r: httpx.Response(200, json={"records": [{}, {}]})),
        )

        assert (await adapter.sync()).count == 2

    async def test_array_body_is_upstream_error(
        self, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, "espocrm", "espocrm_token")
        adapter = EspoCRMSyncAdapter(
            registry, dispatcher, http_client(lambda r: httpx.Response(200, json=[{"id": 1}]))
        )

        with pytest.raises(UpstreamAPIError):
            await adapter.sync()
        assert integration_repo.logs[-1].status == LogStatus.FAILED


# ── OroCRM ────────────────────────────────────────────────────────────────


class TestOroCRMSync:
    async def test_single_fetch(self, registry, integration_repo, dispatcher, http_client):
        await _configure(registry, integration_repo, "orocrm", "orocrm_api_key")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": [{"id": 1}, {"id": 2}]})

        result = await OroCRMSyncAdapter(registry, dispatcher, http_client(handler)).sync()

        assert len(seen) == 1
        assert seen[0].url.path == "/api/lead"
        assert seen[0].headers["Accept"] == "application/json"
        assert result.counts == {"lead": 2}

    async def test_invalid_json_is_upstream_error(
        self, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, "orocrm", "orocrm_api_key")
        adapter = OroCRMSyncAdapter(
            registry, dispatcher, http_client(lambda r: httpx.Response(200, text="<html>"))
        )

        with pytest.raises(UpstreamAPIError, match="not valid JSON"):
            await adapter.sync()

    async def test_transport_error_is_upstream_error(
        self, registry, integration_repo, dispatcher, http_client
    ):
        await _configure(registry, integration_repo, "orocrm", "orocrm_api_key")

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        adapter = OroCRMSyncAdapter(registry, dispatcher, http_client(handler))

        with pytest.raises(UpstreamAPIError) as exc_info:
            await adapter.sync()
        assert exc_info.value.status_code is None


# ── Status and Inbound Webhooks ───────────────────────────────────────────


class TestStatus:
    async def test_unconfigured_provider(self, registry, dispatcher, http_client):
        status = await ZohoSyncAdapter(registry, dispatcher, http_client(_fail_on_request)).get_status()
        assert status.is_configured is False
        assert status.last_sync_at is None
        assert status.latest_log is None

    async def test_status_read_is_idempotent(self, registry, integration_repo, dispatcher, http_client):
        await _configure(registry, integration_repo, "zoho", "zoho_access_token")
        adapter = ZohoSyncAdapter(
            registry, dispatcher, http_client(lambda r: httpx.Response(200, json={"data": [{}]}))
        )
        result = await adapter.sync()

        first = await adapter.get_status()
        second = await adapter.get_status()

        assert first == second
        assert first.last_sync_at == result.synced_at.isoformat()
        assert first.latest_log.event == "zoho.sync"
        assert first.to_response()["isConfigured"] is True

    async def test_unusable_stored_base_url(self, registry, integration_repo, dispatcher, http_client):
        integration = integration_repo.add("suitecrm", config={"baseUrl": "crm.example.com"})
        await registry.set_integration_secret(integration.id, "suitecrm_api_key", "tok")
        adapter = SuiteCRMSyncAdapter(registry, dispatcher, http_client(_fail_on_request))

        status = await adapter.get_status()
        assert status.is_configured is True
        assert status.last_sync_at is None

        with pytest.raises(IntegrationNotConfiguredError, match="base URL"):
            await adapter.sync()


class TestProviderWebhook:
    async def test_logs_and_redispatches(self, registry, integration_repo, dispatcher, http_client):
        integration = integration_repo.add("espocrm")
        adapter = EspoCRMSyncAdapter(registry, dispatcher, http_client(_fail_on_request))
        payload = {"entityType": "Lead", "id": "abc"}

        result = await adapter.handle_webhook(payload)

        assert result == {"success": True}
        log = integration_repo.logs[-1]
        assert log.event == "espocrm.webhook"
        assert log.integration_id == integration.id
        assert log.payload == payload
        dispatcher.dispatch.assert_awaited_once_with("espocrm.webhook", payload)

    async def test_unconfigured_provider_rejected(self, registry, dispatcher, http_client):
        adapter = ZohoSyncAdapter(registry, dispatcher, http_client(_fail_on_request))
        with pytest.raises(IntegrationNotConfiguredError):
            await adapter.handle_webhook({})
        dispatcher.dispatch.assert_not_awaited()
