from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from digestcron.apps.api.response import error_json
from digestcron.core.errors import BlobStoreError, ConfigError


logger = logging.getLogger(__name__)

# Only the statuses these routes actually produce.
_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _code_and_message(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Routes raise HTTPException(detail={"code", "message", ...}); plain strings come from Starlette.
    fallback = _STATUS_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
        return str(detail.get("code") or fallback), str(detail.get("message") or "Request failed"), extra or None
    return fallback, str(detail) if detail else "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _code_and_message(exc.detail, exc.status_code)
    return error_json(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_json(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    # Schedule writes are validated strictly; the message names the offending field.
    return error_json(request, status_code=400, code="CONFIG_INVALID", message=str(exc))


async def blob_store_error_handler(request: Request, exc: BlobStoreError) -> JSONResponse:
    logger.warning("blob_store_unavailable path=%s error=%s", request.url.path, exc)
    return error_json(request, status_code=503, code="STORE_UNAVAILABLE", message="Document store unavailable")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path)
    return error_json(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
