"""Zoho CRM lead sync via the v2 REST API."""

from __future__ import annotations

from typing import Any

from src.app.integrations.providers.base import Page, ProviderCredentials, ProviderSyncAdapter
from src.app.integrations.schemas import BatchSummary, IntegrationRead

PAGE_SIZE = 200


class ZohoSyncAdapter(ProviderSyncAdapter):
    """Pulls Leads page by page until Zoho stops returning a next page."""

    provider = "zoho"
    display_name = "Zoho"
    secret_key = "zoho_access_token"
    last_sync_key = "zoho_last_sync_at"
    module = "Leads"

    async def fetch_page(
        self, credentials: ProviderCredentials, cursor: Any = None, **options: Any
    ) -> Page:
        params: dict[str, Any] = {"per_page": PAGE_SIZE}
        if cursor:
            params["page"] = cursor
        payload = await self._get_json(
            f"{credentials.base_url}/crm/v2/{self.module}",
            headers={
                "Authorization": f"Zoho-oauthtoken {credentials.token}",
                "Content-Type": "application/json",
            },
            params=params,
        )
        records = payload.get("data") or []
        return Page(records=records, next_cursor=_next_page(payload.get("info") or {}))

    async def _collect(
        self, integration: IntegrationRead, credentials: ProviderCredentials
    ) -> list[BatchSummary]:
        summary: list[BatchSummary] = []
        cursor: Any = None
        batch = 1
        while True:
            page = await self.fetch_page(credentials, cursor)
            summary.append(BatchSummary(batch=batch, count=len(page.records)))
            await self._log_batch(
                integration, "zoho.batch", {"batch": batch, "records": len(page.records)}
            )
            if not page.next_cursor:
                break
            cursor = page.next_cursor
            batch += 1
        return summary


def _next_page(info: dict[str, Any]) -> Any:
    """Next page token from a Zoho ``info`` block, or None.

    Accepts an explicit ``next_page.page`` as well as the standard
    ``more_records`` flag paired with the current ``page`` number.
    """
    next_page = (info.get("next_page") or {}).get("page")
    if next_page:
        return next_page
    if info.get("more_records") and info.get("page"):
        return int(info["page"]) + 1
    return None
