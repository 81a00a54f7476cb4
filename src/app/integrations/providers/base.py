"""Provider sync adapter abstract base class.

Every external CRM connector (Zoho, SuiteCRM, EspoCRM, OroCRM) implements
this ABC. The shared run logic lives here once:

1. Resolve the integration row (fatal if absent)
2. Resolve base URL and access secret (fatal before any HTTP call)
3. Subclass pulls pages via fetch_page() and logs each batch
4. Any failure while fetching: write a ``failed`` <provider>.sync log, re-raise
5. Success: stamp the provider's last-sync key (config merge), write the
   summary log, broadcast ``<provider>.synced`` to webhook subscribers

Fetched records are counted and logged, not persisted locally.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter as TallyCounter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from src.app.core.monitoring import provider_sync_records_total, provider_sync_runs_total
from src.app.integrations.errors import IntegrationNotConfiguredError, UpstreamAPIError
from src.app.integrations.registry import IntegrationRegistry
from src.app.integrations.schemas import (
    BatchSummary,
    IntegrationRead,
    IntegrationUpdate,
    LogStatus,
    SyncResult,
    SyncStatus,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProviderCredentials:
    """Resolved connection settings for one sync run."""

    base_url: str
    token: str


@dataclass
class Page:
    """One fetched page. ``next_cursor`` is None when the provider is exhausted."""

    records: list[Any] = field(default_factory=list)
    next_cursor: Any = None


class ProviderSyncAdapter(ABC):
    """Abstract interface plus shared run logic for CRM pull syncs.

    Subclasses set the class attributes and implement fetch_page() and
    _collect().

    Attributes:
        provider: Provider key, matches integrations.provider.
        display_name: Human-readable name used in error messages.
        secret_key: integration_secrets.key_name of the access credential.
        last_sync_key: Config key stamped with the sync time.
        module: Default module name used in the per-module counts.

    Args:
        registry: IntegrationRegistry for lookups, config writes and logs.
        dispatcher: WebhookDispatcher for the synced/webhook broadcasts.
        http_client: Shared httpx.AsyncClient for provider calls.
        timeout: Per-request timeout in seconds.
    """

    provider: str = ""
    display_name: str = ""
    secret_key: str = ""
    last_sync_key: str = ""
    module: str = "Leads"

    def __init__(
        self,
        registry: IntegrationRegistry,
        dispatcher: Any,
        http_client: httpx.AsyncClient,
        timeout: float = 30.0,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._http = http_client
        self._timeout = timeout

    # ── Subclass Hooks ──────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_page(
        self, credentials: ProviderCredentials, cursor: Any = None, **options: Any
    ) -> Page:
        """Fetch one page from the provider API.

        Raises:
            UpstreamAPIError: On a non-2xx response or transport failure.
        """
        ...

    @abstractmethod
    async def _collect(
        self, integration: IntegrationRead, credentials: ProviderCredentials
    ) -> list[BatchSummary]:
        """Pull every page for this run, logging each batch as it lands."""
        ...

    # ── Resolution ──────────────────────────────────────────────────────────

    async def resolve_integration(self) -> IntegrationRead:
        return await self._registry.get_integration_by_provider(self.provider)

    async def resolve_credentials(self, integration: IntegrationRead) -> ProviderCredentials:
        """Base URL from config, token from the secret store.

        Raises:
            IntegrationNotConfiguredError: Naming whichever setting is missing.
        """
        base_url = integration.config.base_url
        if not base_url:
            raise IntegrationNotConfiguredError(
                f"Please configure the {self.display_name} base URL in the integration settings."
            )
        token = await self._registry.get_integration_secret(integration.id, self.secret_key)
        if not token:
            raise IntegrationNotConfiguredError(
                f"{self.display_name} secret '{self.secret_key}' is missing. "
                "Save it via the integration secrets screen."
            )
        return ProviderCredentials(base_url=base_url, token=token)

    # ── Operations ──────────────────────────────────────────────────────────

    async def sync(self) -> SyncResult:
        """Run one full pull sync.

        Raises:
            IntegrationNotConfiguredError: Row, base URL or secret missing.
            UpstreamAPIError: Provider failure, after a ``failed`` log entry.
        """
        integration = await self.resolve_integration()
        credentials = await self.resolve_credentials(integration)

        sync_logger = logger.bind(provider=self.provider, integration_id=integration.id)
        sync_logger.info("provider.sync_started")

        try:
            summary = await self._collect(integration, credentials)
        except Exception as exc:
            status_code = exc.status_code if isinstance(exc, UpstreamAPIError) else None
            provider_sync_runs_total.labels(provider=self.provider, status="failed").inc()
            sync_logger.warning(
                "provider.sync_failed",
                status_code=status_code,
                error=str(exc) or type(exc).__name__,
            )
            await self._registry.log_execution(
                integration.id,
                f"{self.provider}.sync",
                LogStatus.FAILED,
                payload={"baseUrl": credentials.base_url},
                response={"error": str(exc) or type(exc).__name__, "statusCode": status_code},
            )
            raise

        synced_at = datetime.now(timezone.utc)
        await self._registry.update_integration(
            integration.id,
            IntegrationUpdate(
                config=integration.config.merged(**{self.last_sync_key: synced_at.isoformat()})
            ),
        )

        counts: TallyCounter[str] = TallyCounter()
        for entry in summary:
            counts[entry.module or self.module] += entry.count
        result = SyncResult(
            provider=self.provider,
            count=sum(counts.values()),
            summary=summary,
            counts=dict(counts),
            synced_at=synced_at,
        )

        await self._registry.log_execution(
            integration.id,
            f"{self.provider}.sync",
            LogStatus.SUCCESS,
            payload={
                "summary": [s.model_dump(exclude_none=True) for s in summary],
                "counts": result.counts,
            },
            response={"syncedAt": synced_at.isoformat()},
        )

        provider_sync_runs_total.labels(provider=self.provider, status="success").inc()
        provider_sync_records_total.labels(provider=self.provider).inc(result.count)
        sync_logger.info(
            "provider.sync_complete",
            count=result.count,
            batches=len(summary),
        )

        await self._broadcast(f"{self.provider}.synced", result.to_response())
        return result

    async def get_status(self) -> SyncStatus:
        """Last sync time and newest log entry. Pure read.

        Returns ``is_configured=False`` instead of raising when the provider
        has no integration row.
        """
        integration = await self._registry.find_integration_by_provider(self.provider)
        if integration is None:
            return SyncStatus(is_configured=False)
        logs = await self._registry.get_logs(integration.id, limit=1)
        return SyncStatus(
            last_sync_at=integration.config.get(self.last_sync_key),
            latest_log=logs[0] if logs else None,
        )

    async def handle_webhook(self, payload: Any) -> dict[str, Any]:
        """Record an inbound provider webhook and re-dispatch it internally.

        The payload is accepted as-is; there is no signature check or
        deduplication for CRM providers.
        """
        integration = await self.resolve_integration()
        event_name = f"{self.provider}.webhook"
        await self._registry.log_execution(
            integration.id, event_name, LogStatus.SUCCESS, payload=payload, response={}
        )
        await self._dispatcher.dispatch(event_name, payload)
        return {"success": True}

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _get_json(
        self,
        url: str,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """GET and decode JSON, mapping every failure to UpstreamAPIError.

        An empty body (Zoho answers 204 when there is nothing to return)
        decodes to ``{}``.
        """
        try:
            response = await self._http.get(
                url, headers=headers, params=params, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            raise UpstreamAPIError(self.provider, None, str(exc) or type(exc).__name__) from exc

        if not response.is_success:
            raise UpstreamAPIError(self.provider, response.status_code, response.text)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamAPIError(
                self.provider, response.status_code, "Response body is not valid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamAPIError(
                self.provider, response.status_code, "Response body is not a JSON object"
            )
        return payload

    async def _log_batch(
        self, integration: IntegrationRead, event: str, payload: dict[str, Any]
    ) -> None:
        await self._registry.log_execution(
            integration.id, event, LogStatus.SUCCESS, payload=payload, response={}
        )
        logger.debug("provider.batch_fetched", provider=self.provider, log_event=event, **payload)

    async def _broadcast(self, event_name: str, data: dict[str, Any]) -> None:
        """Fan the sync summary out to subscribers without failing the sync."""
        try:
            await self._dispatcher.dispatch(event_name, data)
        except Exception:
            logger.error(
                "provider.synced_broadcast_failed",
                provider=self.provider,
                event_name=event_name,
                exc_info=True,
            )
