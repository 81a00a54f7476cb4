"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Sync and webhook delivery counters used by the integration services
- init_sentry(): Initialize Sentry for the FastAPI app
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

METRICS_PATH = "/metrics"

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Integration Metrics ──────────────────────────────────────────────────────

provider_sync_runs_total = Counter(
    "provider_sync_runs_total",
    "External CRM sync runs",
    ["provider", "status"],
)

provider_sync_records_total = Counter(
    "provider_sync_records_total",
    "Records fetched from external CRMs",
    ["provider"],
)

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Outbound webhook delivery attempts",
    ["event", "outcome"],
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Outbound webhook delivery duration in seconds",
    ["event"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts and times every HTTP request except scrapes of /metrics.

    Labels use the matched route template (``/api/crm/webhooks/endpoints/{endpoint_id}``)
    so endpoint and integration ids do not explode the label set.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == METRICS_PATH:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        route = request.scope.get("route")
        template = getattr(route, "path", None) or "unmatched"
        http_requests_total.labels(
            method=request.method, endpoint=template, status_code=str(response.status_code)
        ).inc()
        http_request_duration_seconds.labels(method=request.method, endpoint=template).observe(
            elapsed
        )
        return response


# ── Sentry Integration ───────────────────────────────────────────────────────

# Credentials that must never leave the process in an error report
SCRUBBED_HEADERS = frozenset({"authorization", "stripe-signature", "x-crm-signature"})


def _scrub_event(event: dict, hint: dict) -> dict:
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in SCRUBBED_HEADERS:
                headers[name] = "[Filtered]"
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry with request headers carrying credentials scrubbed.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if environment == "production" else 1.0,
        send_default_pii=False,
        before_send=_scrub_event,
        integrations=[StarletteIntegration(), FastApiIntegration()],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Prometheus text exposition of the default registry."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
