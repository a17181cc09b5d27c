"""Global error handlers rendering the response envelope with request_id."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contract_confirm.api.request_id import get_request_id
from contract_confirm.domain.confirmation.policy import ConfirmationError, Throttled
from contract_confirm.infra.rate_limit import RateLimitExceeded

logger = logging.getLogger(__name__)

PUBLIC_PREFIX = "/contracts/confirm/"


def envelope_error(request: Request, error: str, *, reason: str | None = None, **extra) -> dict:
    payload = {"success": False, "error": error, "request_id": get_request_id(request)}
    if reason is not None:
        payload["reason"] = reason
    payload.update(extra)
    return payload


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        payload = envelope_error(request, str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        if request.url.path.startswith(PUBLIC_PREFIX):
            return JSONResponse(status_code=400, content=envelope_error(request, "Invalid request", reason="validation_error"))
        payload = envelope_error(request, "validation_error", errors=exc.errors())
        return JSONResponse(status_code=400, content=payload)

    @app.exception_handler(ConfirmationError)
    async def confirmation_exc_handler(request: Request, exc: ConfirmationError):  # type: ignore[override]
        headers = None
        extra = {}
        if isinstance(exc, Throttled):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
            extra["retry_after"] = exc.retry_after_seconds
        status_code = 400 if request.url.path.startswith(PUBLIC_PREFIX) else exc.http_status
        payload = envelope_error(request, exc.message, reason=exc.reason, **extra)
        return JSONResponse(status_code=status_code, content=payload, headers=headers)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_exc_handler(request: Request, exc: RateLimitExceeded):  # type: ignore[override]
        return JSONResponse(status_code=429, content=envelope_error(request, "rate_limited", reason="rate_limited"))

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.exception("unhandled_error", extra={"path_prefix": request.url.path[:32]})
        return JSONResponse(status_code=500, content=envelope_error(request, "server_error"))
