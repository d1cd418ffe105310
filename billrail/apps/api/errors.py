from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from billrail.core.errors import (
    AuthenticationError,
    BillrailError,
    NotFoundError,
    ValidationError,
)
from billrail.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}

_STATUS_BY_ERROR: tuple[tuple[type[BillrailError], int], ...] = (
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str]:
    # Extract code/message from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        return code, message
    if isinstance(detail, str):
        return _default_code(status_code), detail
    return _default_code(status_code), "Request failed"


def _error_body(code: str, message: str) -> dict[str, Any]:
    return {"error": {"code": code, "message": message}}


def status_for_error(exc: BillrailError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(exc: BillrailError) -> HTTPException:
    """Map a domain error onto the HTTP status the API exposes for it."""
    status_code = status_for_error(exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": exc.message},
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=_error_body(code, message),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def billrail_exception_handler(request: Request, exc: BillrailError) -> JSONResponse:
    http_exc = to_http_exception(exc)
    if http_exc.status_code >= 500:
        logger.error("unhandled_domain_error path=%s code=%s", request.url.path, exc.code, exc_info=exc)
        return JSONResponse(content=_error_body("INTERNAL_ERROR", "Internal server error"), status_code=500)
    return await http_exception_handler(request, http_exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Request bodies that fail schema validation share the domain validation code.
    payload = _error_body("VALIDATION_ERROR", "Validation error")
    payload["error"]["details"] = {"errors": exc.errors()}
    return JSONResponse(content=jsonable_encoder(payload), status_code=422)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A missing organization scope is a server bug; never echo the query back.
    logger.error("tenant_predicate_missing path=%s", request.url.path, exc_info=exc)
    return JSONResponse(content=_error_body("INTERNAL_ERROR", "Internal server error"), status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return JSONResponse(content=_error_body("INTERNAL_ERROR", "Internal server error"), status_code=500)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(BillrailError, billrail_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
