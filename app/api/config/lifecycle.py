"""Application lifecycle handling."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable

from fastapi import FastAPI

from backend.core.context import AppContext
from backend.core.startup import shutdown, startup


def create_lifespan(ctx: AppContext, *, start_scheduler: bool = True) -> Callable[[FastAPI], AsyncContextManager[None]]:
    """Build the FastAPI lifespan running startup and shutdown for `ctx`.

    Args:
        ctx: Application context attached to the app.
        start_scheduler: Start the periodic jobs (disabled in tests).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await startup(ctx, start_scheduler=start_scheduler)
        try:
            yield
        finally:
            await shutdown(ctx)

    return lifespan
