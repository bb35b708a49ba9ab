from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from digestcron.apps.api.errors import (
    blob_store_error_handler,
    config_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from digestcron.apps.api.response import API_VERSION, REQUEST_ID_HEADER, request_id_for, success_response
from digestcron.apps.api.routes.cron import router as cron_router
from digestcron.apps.api.routes.ops import router as ops_router
from digestcron.core.config import get_settings
from digestcron.core.errors import BlobStoreError, ConfigError
from digestcron.core.logging import configure_logging


logger = logging.getLogger(__name__)

# Most specific first; the catch-all stays last.
_EXCEPTION_HANDLERS = (
    (StarletteHTTPException, http_exception_handler),
    (RequestValidationError, validation_exception_handler),
    (ConfigError, config_error_handler),
    (BlobStoreError, blob_store_error_handler),
    (Exception, unhandled_exception_handler),
)


async def _log_requests(request: Request, call_next):  # type: ignore[no-untyped-def]
    request_id = request_id_for(request)
    started = time.monotonic()
    response = await call_next(request)
    logger.info(
        "request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
        request.method,
        request.url.path,
        response.status_code,
        (time.monotonic() - started) * 1000.0,
        request_id,
    )
    response.headers.setdefault(REQUEST_ID_HEADER, request_id)
    return response


async def _health(request: Request) -> dict:
    return success_response(request=request, data={"status": "ok"})


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)
    app.middleware("http")(_log_requests)
    for exc_class, handler in _EXCEPTION_HANDLERS:
        app.add_exception_handler(exc_class, handler)

    prefix = f"/{API_VERSION}"
    app.include_router(cron_router, prefix=prefix)
    app.include_router(ops_router, prefix=prefix)
    app.add_api_route(f"{prefix}/health", _health, methods=["GET"], include_in_schema=False)
    return app


app = create_app()
