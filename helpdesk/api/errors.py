"""Translate domain exceptions into structured JSON error responses.

Every error body has the same shape: ``{"kind", "message", "errors"}`` where
``errors`` lists field-level violations and is empty otherwise.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from helpdesk.identity import IdentityError
from helpdesk.security import RateLimitExceeded
from helpdesk.tickets.errors import FieldError, TicketServiceError

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[str, int] = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "storage_error": status.HTTP_503_SERVICE_UNAVAILABLE,
}

_KIND_BY_STATUS: dict[int, str] = {
    status.HTTP_400_BAD_REQUEST: "validation_error",
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
    status.HTTP_429_TOO_MANY_REQUESTS: "rate_limited",
    status.HTTP_503_SERVICE_UNAVAILABLE: "unavailable",
}


def error_response(
    status_code: int,
    *,
    kind: str,
    message: str,
    errors: Iterable[FieldError] = (),
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    content: dict[str, Any] = {
        "kind": kind,
        "message": message,
        "errors": [{"field": error.field, "message": error.message} for error in errors],
    }
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def ticket_error_handler(request: Request, exc: TicketServiceError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error("Ticket operation failed on %s: %s", request.url.path, exc)
    else:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.kind)
    return error_response(
        status_code,
        kind=exc.kind,
        message=str(exc),
        errors=getattr(exc, "errors", ()),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for err in exc.errors():
        # drop the leading "body"/"query"/"path" location marker
        location = [str(part) for part in err.get("loc", ())[1:]] or ["__root__"]
        message = str(err.get("msg", "invalid value"))
        if message.startswith("Value error,"):
            message = message.replace("Value error,", "").strip()
        errors.append(FieldError(field=".".join(location), message=message))
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        kind="validation_error",
        message="Invalid request data",
        errors=errors,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("HTTP exception: %s (%s)", exc.detail, exc.status_code)
    return error_response(
        exc.status_code,
        kind=_KIND_BY_STATUS.get(exc.status_code, "http_error"),
        message=str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(
        "Rate limit exceeded for %s on %s",
        request.client.host if request.client else "unknown",
        request.url.path,
    )
    return error_response(
        status.HTTP_429_TOO_MANY_REQUESTS,
        kind="rate_limited",
        message=exc.detail,
        headers={"Retry-After": str(exc.retry_after)},
    )


async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    logger.error("Identity store failure on %s: %s", request.url.path, exc)
    return error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        kind="storage_error",
        message="User directory is unavailable",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TicketServiceError, ticket_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(IdentityError, identity_error_handler)
