"""Integration registry -- lookup, config updates, secret access and audit logging.

The single service the sync adapters and inbound handlers go through to
touch integration state. Secrets are encrypted with SecretCipher before they
reach the repository and decrypted on the way out.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.app.core.crypto import SecretCipher
from src.app.integrations.errors import IntegrationNotConfiguredError, RecordNotFoundError
from src.app.integrations.repository import IntegrationRepository
from src.app.integrations.schemas import (
    IntegrationLogRead,
    IntegrationRead,
    IntegrationUpdate,
    LogStatus,
)

logger = structlog.get_logger(__name__)


class IntegrationRegistry:
    """Service facade over IntegrationRepository.

    Args:
        repository: IntegrationRepository (or a test double with the same methods).
        cipher: SecretCipher for secrets at rest. When None, secrets are
            stored as given and a warning is logged on every write.
    """

    def __init__(
        self,
        repository: IntegrationRepository,
        cipher: SecretCipher | None = None,
    ) -> None:
        self._repository = repository
        self._cipher = cipher

    # ── Integrations ────────────────────────────────────────────────────────

    async def list_integrations(self, only_active: bool = False) -> list[IntegrationRead]:
        return await self._repository.list_integrations(only_active=only_active)

    async def find_integration_by_provider(self, provider: str) -> IntegrationRead | None:
        """Non-raising lookup, for status reads on possibly unconfigured providers."""
        return await self._repository.get_by_provider(provider)

    async def get_integration_by_provider(self, provider: str) -> IntegrationRead:
        """Lookup that treats absence as a configuration error.

        Raises:
            IntegrationNotConfiguredError: If no row exists for the provider.
        """
        integration = await self._repository.get_by_provider(provider)
        if integration is None:
            raise IntegrationNotConfiguredError(f"{provider} integration is not configured.")
        return integration

    async def get_integration(self, integration_id: str) -> IntegrationRead:
        integration = await self._repository.get_by_id(integration_id)
        if integration is None:
            raise RecordNotFoundError(f"Integration not found: {integration_id}")
        return integration

    async def ensure_integration(
        self,
        provider: str,
        name: str,
        description: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> IntegrationRead:
        """Idempotently create the row for a provider (used by seeding)."""
        integration = await self._repository.ensure_integration(
            provider, name, description=description, config=config
        )
        logger.info("integration.ensured", provider=provider, integration_id=integration.id)
        return integration

    async def update_integration(
        self, integration_id: str, data: IntegrationUpdate
    ) -> IntegrationRead:
        """Partial update. A supplied config replaces the stored blob.

        Callers that change a single key must start from the current config
        (``integration.config.merged(...)``) so sibling keys survive. There
        is no version check: concurrent writers are last-write-wins.
        """
        updated = await self._repository.update_integration(integration_id, data)
        logger.info(
            "integration.updated",
            integration_id=integration_id,
            provider=updated.provider,
            fields=sorted(data.model_dump(exclude_none=True).keys()),
        )
        return updated

    # ── Secrets ─────────────────────────────────────────────────────────────

    async def set_integration_secret(
        self, integration_id: str, key_name: str, value: str
    ) -> None:
        """Upsert a secret by (integration_id, key_name)."""
        if self._cipher is not None:
            stored = self._cipher.encrypt(value)
        else:
            logger.warning(
                "integration.secret_stored_unencrypted",
                integration_id=integration_id,
                key_name=key_name,
            )
            stored = value
        await self._repository.upsert_secret(integration_id, key_name, stored)
        logger.info("integration.secret_set", integration_id=integration_id, key_name=key_name)

    async def get_integration_secret(self, integration_id: str, key_name: str) -> str | None:
        stored = await self._repository.get_secret(integration_id, key_name)
        if not stored:
            return None
        return self._decrypt(stored)

    async def get_integration_secrets(self, integration_id: str) -> dict[str, str]:
        stored = await self._repository.list_secrets(integration_id)
        return {key: self._decrypt(value) for key, value in stored.items() if value}

    def _decrypt(self, stored: str) -> str:
        if self._cipher is None:
            return stored
        return self._cipher.decrypt(stored)

    # ── Logs ────────────────────────────────────────────────────────────────

    async def log_execution(
        self,
        integration_id: str,
        event: str,
        status: LogStatus,
        payload: Any = None,
        response: Any = None,
    ) -> IntegrationLogRead | None:
        """Append an audit log entry. Never raises.

        A failed log write is reported and swallowed so that it cannot mask
        the outcome of the sync or webhook it describes.
        """
        try:
            return await self._repository.insert_log(
                integration_id, event, status, payload, response
            )
        except Exception:
            logger.error(
                "integration.log_write_failed",
                integration_id=integration_id,
                log_event=event,
                status=status.value,
                exc_info=True,
            )
            return None

    async def get_logs(self, integration_id: str, limit: int = 50) -> list[IntegrationLogRead]:
        return await self._repository.list_logs(integration_id, limit=limit)
