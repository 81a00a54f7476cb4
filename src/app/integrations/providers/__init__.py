"""External CRM and messaging connectors.

- ProviderSyncAdapter: ABC with the shared sync/status/webhook run logic
- ZohoSyncAdapter, SuiteCRMSyncAdapter, EspoCRMSyncAdapter, OroCRMSyncAdapter
- WhatsAppService: Cloud API handshake, inbound events, outbound messages
"""

from __future__ import annotations

from typing import Any

import httpx

from src.app.integrations.providers.base import Page, ProviderCredentials, ProviderSyncAdapter
from src.app.integrations.providers.espocrm import EspoCRMSyncAdapter
from src.app.integrations.providers.orocrm import OroCRMSyncAdapter
from src.app.integrations.providers.suitecrm import SuiteCRMSyncAdapter
from src.app.integrations.providers.whatsapp import WhatsAppService
from src.app.integrations.providers.zoho import ZohoSyncAdapter

SYNC_ADAPTERS: dict[str, type[ProviderSyncAdapter]] = {
    adapter.provider: adapter
    for adapter in (ZohoSyncAdapter, SuiteCRMSyncAdapter, EspoCRMSyncAdapter, OroCRMSyncAdapter)
}


def build_sync_adapters(
    registry: Any,
    dispatcher: Any,
    http_client: httpx.AsyncClient,
    timeout: float = 30.0,
) -> dict[str, ProviderSyncAdapter]:
    """One adapter instance per provider key, sharing the same collaborators."""
    return {
        provider: adapter_cls(registry, dispatcher, http_client, timeout=timeout)
        for provider, adapter_cls in SYNC_ADAPTERS.items()
    }


__all__ = [
    "Page",
    "ProviderCredentials",
    "ProviderSyncAdapter",
    "ZohoSyncAdapter",
    "SuiteCRMSyncAdapter",
    "EspoCRMSyncAdapter",
    "OroCRMSyncAdapter",
    "WhatsAppService",
    "SYNC_ADAPTERS",
    "build_sync_adapters",
]
