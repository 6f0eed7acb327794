"""Map service errors to HTTP error responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.core.errors import (
    BackupEngineError,
    DatabaseNotInitializedError,
    LockUnavailableError,
    OperationTimeoutError,
    ServiceError,
    to_message,
)


logger = logging.getLogger(__name__)


def setup_exception_handlers(app: FastAPI) -> None:
    """Register handlers turning domain errors into `{"detail": ...}` responses.

    Args:
        app: The FastAPI application instance
    """

    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content={"detail": to_message(exc)})

    @app.exception_handler(LockUnavailableError)
    async def _lock_unavailable(request: Request, exc: LockUnavailableError):
        return JSONResponse(status_code=409, content={"detail": to_message(exc)})

    @app.exception_handler(OperationTimeoutError)
    async def _timeout(request: Request, exc: OperationTimeoutError):
        return JSONResponse(status_code=504, content={"detail": to_message(exc)})

    @app.exception_handler(BackupEngineError)
    async def _engine_error(request: Request, exc: BackupEngineError):
        logger.error("%s %s failed: %s", request.method, request.url.path, to_message(exc))
        return JSONResponse(status_code=502, content={"detail": to_message(exc)})

    @app.exception_handler(DatabaseNotInitializedError)
    async def _database_not_ready(request: Request, exc: DatabaseNotInitializedError):
        return JSONResponse(status_code=503, content={"detail": "Service is not ready"})
