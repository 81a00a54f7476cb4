"""Pydantic schemas and delivery result types for outbound webhooks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, Field, field_validator

# Persisted response bodies are cut to this many characters
RESPONSE_BODY_LIMIT = 1000


# ── Endpoints ───────────────────────────────────────────────────────────────


class WebhookEndpointCreate(BaseModel):
    """Request body for registering a subscriber endpoint."""

    url: str
    events: list[str] = Field(min_length=1)
    description: str | None = None

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value

    @field_validator("events")
    @classmethod
    def _validate_events(cls, value: list[str]) -> list[str]:
        cleaned = [e.strip() for e in value if e and e.strip()]
        if not cleaned:
            raise ValueError("events must contain at least one event name")
        # Preserve order, drop duplicates
        return list(dict.fromkeys(cleaned))


class WebhookEndpointRead(BaseModel):
    """Stored endpoint including its signing secret."""

    id: str
    url: str
    events: list[str] = Field(default_factory=list)
    description: str | None = None
    secret: str
    is_active: bool = True
    created_by: str | None = None
    created_at: datetime | None = None


# ── Deliveries ──────────────────────────────────────────────────────────────


class WebhookEnvelope(BaseModel):
    """JSON body POSTed to subscribers."""

    event: str
    event_id: str
    occurred_at: str
    data: Any = None


class DeliveryCreate(BaseModel):
    """Row to persist for one delivery attempt."""

    endpoint_id: str
    event_id: str
    event_name: str
    request_payload: dict[str, Any]
    response_status: int
    response_body: str = ""
    attempt: int = 1
    next_retry_at: datetime | None = None

    @field_validator("response_body")
    @classmethod
    def _truncate_body(cls, value: str) -> str:
        return value[:RESPONSE_BODY_LIMIT]


class WebhookDeliveryRead(BaseModel):
    """Persisted delivery attempt."""

    id: str
    endpoint_id: str
    event_id: str
    event_name: str
    request_payload: dict[str, Any]
    response_status: int
    response_body: str | None = None
    attempt: int = 1
    next_retry_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return 200 <= self.response_status < 300


# ── Delivery Outcomes ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class DeliverySucceeded:
    """Subscriber answered 2xx."""

    endpoint_id: str
    status_code: int
    body: str
    attempt: int = 1


@dataclass(frozen=True)
class DeliveryFailed:
    """Subscriber answered non-2xx or could not be reached.

    Transport failures carry status 500 and the error text as body.
    """

    endpoint_id: str
    status_code: int
    body: str
    attempt: int = 1
    next_retry_at: datetime | None = None


DeliveryOutcome = Union[DeliverySucceeded, DeliveryFailed]


@dataclass
class DispatchResult:
    """All delivery outcomes for one dispatched event."""

    event: str
    event_id: str | None = None
    deliveries: list[DeliveryOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for d in self.deliveries if isinstance(d, DeliverySucceeded))

    @property
    def failed(self) -> int:
        return sum(1 for d in self.deliveries if isinstance(d, DeliveryFailed))
