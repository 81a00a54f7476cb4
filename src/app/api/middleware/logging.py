"""Structured request logging middleware.

Every request produces one ``request.completed`` (or ``request.error``) line
carrying method, route path, status, duration and the request id. Calls to
the public inbound receivers (provider, WhatsApp and Stripe webhooks) are
tagged ``inbound=True`` so third-party traffic can be filtered apart from
operator traffic; everything else carries the caller's ``user_id`` when the
bearer token verifies.

The request id comes from an incoming X-Request-ID or is generated, is bound
into structlog's context vars so service log lines carry it, and is echoed
on the response.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings
from src.app.core.security import subject_from_token

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
INBOUND_SUFFIXES = ("/webhook", "/webhooks/stripe")


def configure_structlog() -> None:
    """Console output in development, JSON lines in production."""
    settings = get_settings()

    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _caller_fields(request: Request) -> dict:
    if request.url.path.endswith(INBOUND_SUFFIXES):
        return {"inbound": True}
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return {"user_id": subject_from_token(auth_header[7:])}
    return {"user_id": None}


class LoggingMiddleware(BaseHTTPMiddleware):
    """One structured log line per request, with the request id in context."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        fields = {"method": request.method, "path": request.url.path, **_caller_fields(request)}
        started = time.monotonic()

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "request.error",
                status_code=500,
                duration_ms=_elapsed_ms(started),
                **fields,
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        else:
            log = logger.info
        log(
            "request.completed",
            status_code=response.status_code,
            duration_ms=_elapsed_ms(started),
            request_id=request_id,
            **fields,
        )
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
