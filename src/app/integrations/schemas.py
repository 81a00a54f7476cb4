"""Pydantic schemas for integrations, secrets, logs and sync results.

The integration ``config`` blob is typed as IntegrationConfig: known keys are
named and validated, unknown keys pass through untouched so the blob stays an
extension point. Keys keep their stored spelling (``baseUrl``,
``zoho_last_sync_at``) via aliases.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class LogStatus(str, Enum):
    """Outcome recorded on an integration log entry."""

    SUCCESS = "success"
    FAILED = "failed"


class Provider(str, Enum):
    """Known integration providers (one integrations row each)."""

    ZOHO = "zoho"
    SUITECRM = "suitecrm"
    ESPOCRM = "espocrm"
    OROCRM = "orocrm"
    WHATSAPP = "whatsapp"


# ── Integration Config ──────────────────────────────────────────────────────


class IntegrationConfig(BaseModel):
    """Typed view over the integrations.config JSON blob."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    base_url: str | None = Field(default=None, alias="baseUrl")
    last_sync_at: str | None = None
    zoho_last_sync_at: str | None = None
    espocrm_last_sync_at: str | None = None
    orocrm_last_sync_at: str | None = None
    phone_number_id: str | None = Field(default=None, alias="phoneNumberId")
    verify_token: str | None = Field(default=None, alias="verifyToken")
    api_version: str | None = Field(default=None, alias="apiVersion")

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError("baseUrl must start with http:// or https://")
        return value.rstrip("/")

    @classmethod
    def from_stored(cls, data: dict[str, Any] | None) -> IntegrationConfig:
        """Load a config row as stored.

        baseUrl is validated on write; a row written before that (or by hand)
        with an unusable baseUrl reads as having no base URL at all.
        """
        data = dict(data or {})
        try:
            return cls.model_validate(data)
        except ValidationError:
            data.pop("baseUrl", None)
            data.pop("base_url", None)
            return cls.model_validate(data)

    def get(self, key: str) -> Any:
        """Read a config value by its stored key (alias or extra key)."""
        return self.to_json().get(key)

    def merged(self, **updates: Any) -> IntegrationConfig:
        """Return a copy with the given stored keys overwritten."""
        data = self.to_json()
        data.update(updates)
        return IntegrationConfig.model_validate(data)

    def to_json(self) -> dict[str, Any]:
        """Serialize using stored key spelling, dropping unset known keys."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ── Integration CRUD ────────────────────────────────────────────────────────


class IntegrationRead(BaseModel):
    """Full integration record."""

    id: str
    name: str
    provider: str
    description: str | None = None
    is_active: bool = False
    config: IntegrationConfig = Field(default_factory=IntegrationConfig)
    triggers: list[str] = Field(default_factory=list)
    updated_at: datetime | None = None


class IntegrationUpdate(BaseModel):
    """Partial update for an integration (all fields optional).

    ``config`` replaces the stored blob; callers merge existing keys first.
    """

    is_active: bool | None = None
    config: IntegrationConfig | None = None
    triggers: list[str] | None = None


class IntegrationLogRead(BaseModel):
    """One integration audit log entry."""

    id: str
    integration_id: str
    event: str
    status: LogStatus
    payload: Any = None
    response: Any = None
    created_at: datetime | None = None


# ── Sync Results ────────────────────────────────────────────────────────────


class BatchSummary(BaseModel):
    """Size of one fetched page."""

    batch: int
    count: int
    module: str | None = None


class SyncResult(BaseModel):
    """Summary returned by a provider sync run."""

    provider: str
    count: int = 0
    summary: list[BatchSummary] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)
    synced_at: datetime = Field(serialization_alias="syncedAt")

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SyncStatus(BaseModel):
    """Last-sync bookkeeping for a provider."""

    last_sync_at: str | None = Field(default=None, serialization_alias="lastSyncAt")
    latest_log: IntegrationLogRead | None = Field(default=None, serialization_alias="latestLog")
    is_configured: bool = Field(default=True, serialization_alias="isConfigured")

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
