"""
Global middleware and error mapping.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from core.errors import (
    CredentialDecryptionError,
    NotFoundError,
    ProviderAPIError,
    SyncEngineError,
    UnknownProviderError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (UnknownProviderError, 404),
    (ProviderAPIError, 502),
    (CredentialDecryptionError, 500),
)


def status_for(exc: SyncEngineError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and the engine error handler."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s (%.3fs)", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(SyncEngineError)
    async def sync_engine_error(request: Request, exc: SyncEngineError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status_code, content=exc.to_dict())
