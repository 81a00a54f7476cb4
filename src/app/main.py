"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
envelope exception handlers, lifespan events for database and service
initialization, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
import stripe
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.api.errors import register_exception_handlers
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.billing.repository import BillingRepository
from src.app.billing.stripe_webhooks import StripeWebhookHandler
from src.app.config import Settings, get_settings
from src.app.core.crypto import SecretCipher
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.integrations.providers import WhatsAppService, build_sync_adapters
from src.app.integrations.registry import IntegrationRegistry
from src.app.integrations.repository import IntegrationRepository
from src.app.webhooks.dispatcher import WebhookDispatcher
from src.app.webhooks.repository import WebhookRepository
from src.app.webhooks.scheduler import WebhookRetryScheduler

log = structlog.get_logger(__name__)


def init_services(
    app: FastAPI,
    settings: Settings,
    session_factory: Callable[..., Any],
    provider_http: httpx.AsyncClient,
    webhook_http: httpx.AsyncClient,
) -> None:
    """Construct the service graph and store it on app.state."""
    cipher = None
    if settings.SECRET_ENCRYPTION_KEY:
        cipher = SecretCipher(settings.SECRET_ENCRYPTION_KEY)
    else:
        log.warning("startup.secret_encryption_disabled")

    registry = IntegrationRegistry(IntegrationRepository(session_factory), cipher=cipher)
    dispatcher = WebhookDispatcher(
        WebhookRepository(session_factory),
        webhook_http,
        max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
        retry_base_seconds=settings.WEBHOOK_RETRY_BASE_SECONDS,
        retry_max_seconds=settings.WEBHOOK_RETRY_MAX_SECONDS,
        timeout=settings.WEBHOOK_HTTP_TIMEOUT,
    )

    app.state.integration_registry = registry
    app.state.webhook_dispatcher = dispatcher
    app.state.sync_adapters = build_sync_adapters(
        registry, dispatcher, provider_http, timeout=settings.PROVIDER_HTTP_TIMEOUT
    )
    app.state.whatsapp_service = WhatsAppService(
        registry,
        dispatcher,
        provider_http,
        graph_url=settings.WHATSAPP_GRAPH_URL,
        timeout=settings.PROVIDER_HTTP_TIMEOUT,
    )
    if settings.STRIPE_SECRET_KEY:
        stripe.api_key = settings.STRIPE_SECRET_KEY
    app.state.stripe_handler = StripeWebhookHandler(
        BillingRepository(session_factory),
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET or None,
        dispatcher=dispatcher,
    )
    log.info(
        "startup.services_initialized",
        providers=sorted(app.state.sync_adapters),
        secrets_encrypted=cipher is not None,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    provider_http = httpx.AsyncClient(timeout=settings.PROVIDER_HTTP_TIMEOUT)
    webhook_http = httpx.AsyncClient(timeout=settings.WEBHOOK_HTTP_TIMEOUT)
    init_services(app, settings, get_session, provider_http, webhook_http)

    # Webhook redelivery sweep. A scheduler failure leaves delivery itself
    # working; failed attempts simply wait for the next start.
    retry_scheduler = WebhookRetryScheduler(
        app.state.webhook_dispatcher,
        interval_seconds=settings.WEBHOOK_RETRY_SWEEP_SECONDS,
    )
    try:
        retry_scheduler.start()
    except Exception:
        log.warning("startup.retry_scheduler_failed", exc_info=True)
    app.state.retry_scheduler = retry_scheduler

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    retry_scheduler.stop()
    await provider_http.aclose()
    await webhook_http.aclose()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Integration Hub",
        version="0.1.0",
        description="Outbound webhooks, external CRM sync and inbound provider webhooks",
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
