"""Integration registry and external CRM sync.

- IntegrationRegistry: Provider lookup, config updates, encrypted secrets, audit logs
- IntegrationRepository: Persistence for integrations, secrets and logs
- Provider adapters (see ``providers``): Zoho, SuiteCRM, EspoCRM, OroCRM, WhatsApp

One integrations row per provider. Sync runs are operator-triggered pulls;
every page, failure and completion is written to integration_logs.
"""

from src.app.integrations.errors import (
    IntegrationError,
    IntegrationNotConfiguredError,
    RecordNotFoundError,
    SignatureVerificationError,
    UpstreamAPIError,
)
from src.app.integrations.registry import IntegrationRegistry
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    IntegrationConfig,
    IntegrationLogRead,
    IntegrationRead,
    IntegrationUpdate,
    LogStatus,
    Provider,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "IntegrationRegistry",
    "IntegrationRepository",
    "IntegrationConfig",
    "IntegrationLogRead",
    "IntegrationRead",
    "IntegrationUpdate",
    "LogStatus",
    "Provider",
    "SyncResult",
    "SyncStatus",
    "IntegrationError",
    "IntegrationNotConfiguredError",
    "RecordNotFoundError",
    "SignatureVerificationError",
    "UpstreamAPIError",
]
