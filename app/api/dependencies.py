"""FastAPI dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request

from backend.core.context import AppContext


def get_context(request: Request) -> AppContext:
    """Return the application context attached to the app at startup.

    Raises:
        HTTPException: 503 while the context is not available.
    """

    ctx = getattr(request.app.state, "ctx", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Service is not ready")
    return ctx
