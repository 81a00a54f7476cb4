"""Exception handlers that render the ``{"success": false, "error": ...}`` envelope.

Service exceptions map to status codes here so endpoints can let them
propagate:

- IntegrationNotConfiguredError, UpstreamAPIError -> 500 with the message
- RecordNotFoundError -> 404
- SignatureVerificationError -> 400
- request and service-side validation -> 400
- anything else -> 500 with the message, logged with its traceback
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.app.api.responses import error_response
from src.app.integrations.errors import (
    IntegrationError,
    RecordNotFoundError,
    SignatureVerificationError,
    UpstreamAPIError,
)

logger = structlog.get_logger(__name__)


async def _integration_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, RecordNotFoundError):
        return error_response(status.HTTP_404_NOT_FOUND, str(exc))
    if isinstance(exc, SignatureVerificationError):
        return error_response(status.HTTP_400_BAD_REQUEST, str(exc))

    log_fields = {"path": request.url.path, "error": str(exc)}
    if isinstance(exc, UpstreamAPIError):
        log_fields["provider"] = exc.provider
        log_fields["upstream_status"] = exc.status_code
    logger.error("api.integration_error", **log_fields)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


async def _http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, StarletteHTTPException)
    return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


async def _validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, (RequestValidationError, ValidationError))
    message = "; ".join(_describe(err) for err in exc.errors()) or "Invalid request"
    return error_response(status.HTTP_400_BAD_REQUEST, message)


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "api.unhandled_error",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc) or "Internal Server Error"
    )


def _describe(err: dict) -> str:
    loc = [str(p) for p in err.get("loc", ())]
    if loc and loc[0] in ("body", "query", "path", "header"):
        loc = loc[1:]
    return f"{'.'.join(loc) or 'body'}: {err.get('msg')}"


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IntegrationError, _integration_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(ValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
