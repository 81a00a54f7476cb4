"""OroCRM lead sync. Single unpaginated fetch of /api/lead."""

from __future__ import annotations

from typing import Any

from src.app.integrations.providers.base import Page, ProviderCredentials, ProviderSyncAdapter
from src.app.integrations.schemas import BatchSummary, IntegrationRead


class OroCRMSyncAdapter(ProviderSyncAdapter):
    provider = "orocrm"
    display_name = "OroCRM"
    secret_key = "orocrm_api_key"
    last_sync_key = "orocrm_last_sync_at"
    module = "lead"

    async def fetch_page(
        self, credentials: ProviderCredentials, cursor: Any = None, **options: Any
    ) -> Page:
        payload = await self._get_json(
            f"{credentials.base_url}/api/{self.module}",
            headers={
                "Authorization": f"Bearer {credentials.token}",
                "Accept": "application/json",
            },
        )
        records = payload.get("data") if isinstance(payload, dict) else None
        return Page(records=records if isinstance(records, list) else [])

    async def _collect(
        self, integration: IntegrationRead, credentials: ProviderCredentials
    ) -> list[BatchSummary]:
        page = await self.fetch_page(credentials)
        return [BatchSummary(batch=1, count=len(page.records))]
