"""Request logging middleware for debugging."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import FastAPI, Request


logger = logging.getLogger(__name__)

_SENSITIVE_JSON_KEYS = {
    "password",
    "private_key",
    "access_key_id",
    "secret_access_key",
    "account_key",
    "credentials_json",
    "custom_password",
    "bot_token",
    "url",
}


def _redact_json(value: Any) -> Any:
    """Recursively redact credential fields in a JSON-like value."""

    if isinstance(value, dict):
        return {
            k: "<redacted>" if str(k).lower() in _SENSITIVE_JSON_KEYS else _redact_json(v) for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact_json(v) for v in value]
    return value


async def log_requests(request: Request, call_next):
    """Log method, path, redacted JSON body, status and duration of each request."""

    if request.url.path in ("/health", "/events"):
        return await call_next(request)

    started = time.monotonic()
    body = await request.body()
    if body and "application/json" in (request.headers.get("content-type") or "").lower():
        try:
            logger.debug("Request body: %s", json.dumps(_redact_json(json.loads(body))))
        except json.JSONDecodeError:
            logger.debug("Request body: <invalid json body: %d bytes>", len(body))

    response = await call_next(request)
    logger.debug(
        "%s %s -> %s (%.1f ms)",
        request.method,
        request.url.path,
        response.status_code,
        (time.monotonic() - started) * 1000,
    )
    return response


def setup_logging_middleware(app: FastAPI, *, debug: bool) -> None:
    """Enable request logging when `debug` is set.

    Args:
        app: The FastAPI application instance
        debug: Settings DEBUG flag.
    """

    if debug:
        app.middleware("http")(log_requests)
