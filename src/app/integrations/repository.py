"""Integration repository -- async persistence for integrations, secrets and logs.

Uses the session_factory callable pattern: every method opens its own
session from the factory, so repositories hold no connection state and tests
swap in in-memory doubles with the same method surface.

Secret values arrive here already encrypted; this layer never sees plaintext.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.integrations.errors import RecordNotFoundError
from src.app.integrations.models import (
    IntegrationLogModel,
    IntegrationModel,
    IntegrationSecretModel,
)
from src.app.integrations.schemas import (
    IntegrationConfig,
    IntegrationLogRead,
    IntegrationRead,
    IntegrationUpdate,
    LogStatus,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_integration(model: IntegrationModel) -> IntegrationRead:
    return IntegrationRead(
        id=str(model.id),
        name=model.name,
        provider=model.provider,
        description=model.description,
        is_active=bool(model.is_active),
        config=IntegrationConfig.from_stored(model.config),
        triggers=list(model.triggers or []),
        updated_at=model.updated_at,
    )


def _model_to_log(model: IntegrationLogModel) -> IntegrationLogRead:
    return IntegrationLogRead(
        id=str(model.id),
        integration_id=str(model.integration_id),
        event=model.event,
        status=LogStatus(model.status),
        payload=model.payload,
        response=model.response,
        created_at=model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class IntegrationRepository:
    """Async CRUD over integrations, integration_secrets and integration_logs.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Integrations ────────────────────────────────────────────────────────

    async def list_integrations(self, only_active: bool = False) -> list[IntegrationRead]:
        """List integrations ordered by name, optionally only active ones."""
        async for session in self._session_factory():
            stmt = select(IntegrationModel).order_by(IntegrationModel.name)
            if only_active:
                stmt = stmt.where(IntegrationModel.is_active.is_(True))
            result = await session.execute(stmt)
            return [_model_to_integration(m) for m in result.scalars().all()]

    async def get_by_provider(self, provider: str) -> IntegrationRead | None:
        """Get the single integration row for a provider."""
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(IntegrationModel.provider == provider)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_integration(model)

    async def get_by_id(self, integration_id: str) -> IntegrationRead | None:
        async for session in self._session_factory():
            model = await session.get(IntegrationModel, uuid.UUID(integration_id))
            if model is None:
                return None
            return _model_to_integration(model)

    async def ensure_integration(
        self,
        provider: str,
        name: str,
        description: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> IntegrationRead:
        """Create the provider row if missing; an existing row is left as is."""
        async for session in self._session_factory():
            stmt = (
                insert(IntegrationModel)
                .values(
                    id=uuid.uuid4(),
                    name=name,
                    provider=provider,
                    description=description,
                    is_active=False,
                    config=config or {},
                    triggers=[],
                )
                .on_conflict_do_nothing(index_elements=["provider"])
            )
            await session.execute(stmt)
            await session.commit()
            result = await session.execute(
                select(IntegrationModel).where(IntegrationModel.provider == provider)
            )
            return _model_to_integration(result.scalar_one())

    async def update_integration(
        self, integration_id: str, data: IntegrationUpdate
    ) -> IntegrationRead:
        """Apply a partial update. The config blob is replaced, not merged.

        Raises:
            RecordNotFoundError: If no integration has this id.
        """
        values: dict[str, Any] = {}
        if data.is_active is not None:
            values["is_active"] = data.is_active
        if data.config is not None:
            values["config"] = data.config.to_json()
        if data.triggers is not None:
            values["triggers"] = data.triggers

        async for session in self._session_factory():
            model = await session.get(IntegrationModel, uuid.UUID(integration_id))
            if model is None:
                raise RecordNotFoundError(f"Integration not found: {integration_id}")
            if values:
                await session.execute(
                    update(IntegrationModel)
                    .where(IntegrationModel.id == model.id)
                    .values(**values)
                )
                await session.commit()
                await session.refresh(model)
            return _model_to_integration(model)

    # ── Secrets ─────────────────────────────────────────────────────────────

    async def upsert_secret(
        self, integration_id: str, key_name: str, stored_value: str
    ) -> None:
        """Insert or replace the secret for (integration_id, key_name)."""
        async for session in self._session_factory():
            stmt = insert(IntegrationSecretModel).values(
                integration_id=uuid.UUID(integration_id),
                key_name=key_name,
                encrypted_value=stored_value,
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_integration_secret_key",
                set_={"encrypted_value": stmt.excluded.encrypted_value, "updated_at": func.now()},
            )
            await session.execute(stmt)
            await session.commit()

    async def get_secret(self, integration_id: str, key_name: str) -> str | None:
        async for session in self._session_factory():
            stmt = select(IntegrationSecretModel.encrypted_value).where(
                IntegrationSecretModel.integration_id == uuid.UUID(integration_id),
                IntegrationSecretModel.key_name == key_name,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_secrets(self, integration_id: str) -> dict[str, str]:
        async for session in self._session_factory():
            stmt = select(
                IntegrationSecretModel.key_name,
                IntegrationSecretModel.encrypted_value,
            ).where(IntegrationSecretModel.integration_id == uuid.UUID(integration_id))
            result = await session.execute(stmt)
            return {row.key_name: row.encrypted_value for row in result.all()}

    # ── Logs ────────────────────────────────────────────────────────────────

    async def insert_log(
        self,
        integration_id: str,
        event: str,
        status: LogStatus,
        payload: Any,
        response: Any,
    ) -> IntegrationLogRead:
        async for session in self._session_factory():
            model = IntegrationLogModel(
                integration_id=uuid.UUID(integration_id),
                event=event,
                status=status.value,
                payload=payload,
                response=response,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_log(model)

    async def list_logs(self, integration_id: str, limit: int = 50) -> list[IntegrationLogRead]:
        """Newest-first log entries for an integration."""
        async for session in self._session_factory():
            stmt = (
                select(IntegrationLogModel)
                .where(IntegrationLogModel.integration_id == uuid.UUID(integration_id))
                .order_by(IntegrationLogModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_log(m) for m in result.scalars().all()]
