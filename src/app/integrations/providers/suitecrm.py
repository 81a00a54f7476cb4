"""SuiteCRM sync over the /api/{Module} endpoints, Leads then Opportunities.

Each module is paged by offset with one page size for both the request
and the completion check. Only records modified after the previous sync
are requested. A hard offset cap ends runaway pagination.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from src.app.integrations.providers.base import Page, ProviderCredentials, ProviderSyncAdapter
from src.app.integrations.schemas import BatchSummary, IntegrationRead

logger = structlog.get_logger(__name__)

PAGE_SIZE = 250
OFFSET_CAP = 10_000
DEFAULT_FIELDS = ("id", "name", "email", "date_modified", "assigned_user_id", "status")


@dataclass(frozen=True)
class SuiteCRMModule:
    name: str
    event: str


MODULES = (
    SuiteCRMModule(name="Leads", event="suitecrm.lead.synced"),
    SuiteCRMModule(name="Opportunities", event="suitecrm.deal.synced"),
)


class SuiteCRMSyncAdapter(ProviderSyncAdapter):
    """Incremental per-module pull from SuiteCRM."""

    provider = "suitecrm"
    display_name = "SuiteCRM"
    secret_key = "suitecrm_api_key"
    last_sync_key = "last_sync_at"
    module = "Leads"

    async def fetch_page(
        self, credentials: ProviderCredentials, cursor: Any = None, **options: Any
    ) -> Page:
        """Fetch one page of ``options['module']`` starting at offset ``cursor``.

        ``options['since']`` adds a date_modified filter when set.
        """
        offset = int(cursor or 0)
        module = options.get("module", self.module)
        params: dict[str, Any] = {
            "max_num": PAGE_SIZE,
            "offset": offset,
            "fields": ",".join(DEFAULT_FIELDS),
        }
        since = options.get("since")
        if since:
            params["filter[0][date_modified][$gt]"] = since

        payload = await self._get_json(
            f"{credentials.base_url}/api/{module}",
            headers={
                "Authorization": f"Bearer {credentials.token}",
                "Content-Type": "application/json",
            },
            params=params,
        )
        records = payload.get("records") if isinstance(payload, dict) else None
        if not isinstance(records, list):
            records = []
        next_cursor = offset + len(records) if len(records) == PAGE_SIZE else None
        return Page(records=records, next_cursor=next_cursor)

    async def _collect(
        self, integration: IntegrationRead, credentials: ProviderCredentials
    ) -> list[BatchSummary]:
        since = integration.config.last_sync_at
        summary: list[BatchSummary] = []

        for module in MODULES:
            offset = 0
            batch = 1
            while True:
                page = await self.fetch_page(
                    credentials, offset, module=module.name, since=since
                )
                if not page.records:
                    break

                offset += len(page.records)
                summary.append(
                    BatchSummary(batch=batch, count=len(page.records), module=module.name)
                )
                await self._log_batch(
                    integration,
                    module.event,
                    {
                        "module": module.name,
                        "since": since,
                        "batchCount": len(page.records),
                        "offset": offset,
                    },
                )

                if page.next_cursor is None:
                    break
                if offset >= OFFSET_CAP:
                    logger.warning(
                        "suitecrm.offset_cap_reached",
                        module=module.name,
                        offset=offset,
                    )
                    break
                batch += 1

        return summary
