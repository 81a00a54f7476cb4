"""EspoCRM lead sync via /api/v1/Leads."""

from __future__ import annotations

from typing import Any

from src.app.integrations.providers.base import Page, ProviderCredentials, ProviderSyncAdapter
from src.app.integrations.schemas import BatchSummary, IntegrationRead

PAGE_SIZE = 100


class EspoCRMSyncAdapter(ProviderSyncAdapter):
    """Offset-paged pull; an undersized or empty page ends the run."""

    provider = "espocrm"
    display_name = "EspoCRM"
    secret_key = "espocrm_token"
    last_sync_key = "espocrm_last_sync_at"
    module = "Leads"

    async def fetch_page(
        self, credentials: ProviderCredentials, cursor: Any = None, **options: Any
    ) -> Page:
        offset = int(cursor or 0)
        payload = await self._get_json(
            f"{credentials.base_url}/api/v1/{self.module}",
            headers={
                "Authorization": f"Bearer {credentials.token}",
                "Content-Type": "application/json",
            },
            params={"limit": PAGE_SIZE, "offset": offset},
        )
        # EspoCRM answers {"total", "list"}; older proxies use "records"
        records = payload.get("list")
        if not isinstance(records, list):
            records = payload.get("records")
        if not isinstance(records, list):
            records = []
        next_cursor = offset + PAGE_SIZE if len(records) == PAGE_SIZE else None
        return Page(records=records, next_cursor=next_cursor)

    async def _collect(
        self, integration: IntegrationRead, credentials: ProviderCredentials
    ) -> list[BatchSummary]:
        summary: list[BatchSummary] = []
        offset = 0
        batch = 1
        while True:
            page = await self.fetch_page(credentials, offset)
            if not page.records:
                break
            summary.append(BatchSummary(batch=batch, count=len(page.records)))
            await self._log_batch(
                integration, "espocrm.batch", {"batch": batch, "count": len(page.records)}
            )
            if page.next_cursor is None:
                break
            offset = page.next_cursor
            batch += 1
        return summary
