"""Entry point for the FastAPI app."""

from __future__ import annotations

from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI

from api.config.errors import setup_exception_handlers
from api.config.lifecycle import create_lifespan
from api.dependencies import get_context
from api.logging_config import configure_logging, get_logger
from api.middleware import setup_middleware
from api.routes import events, notifications, repositories, schedules, volumes
from api.settings import Settings, settings
from backend.core.context import AppContext, build_app_context


logger = get_logger(__name__)


def create_app(
    ctx: Optional[AppContext] = None,
    *,
    app_settings: Optional[Settings] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Create the API application.

    Args:
        ctx: Prebuilt application context (tests); built from settings otherwise.
        app_settings: Settings used when `ctx` is not given.
        start_scheduler: Start periodic jobs during startup.

    Returns:
        FastAPI: Configured application.
    """

    ctx = ctx or build_app_context(app_settings or settings)

    app = FastAPI(
        title="Volume Backup Service",
        description="Scheduled restic backups of mounted volumes (NFS, SMB, WebDAV, SFTP, rclone, local directories)",
        version=ctx.settings.IMAGE_TAG,
        lifespan=create_lifespan(ctx, start_scheduler=start_scheduler),
    )
    app.state.ctx = ctx

    setup_exception_handlers(app)
    setup_middleware(app, debug=ctx.settings.DEBUG)

    for module in (volumes, repositories, schedules, notifications, events):
        app.include_router(module.router)

    @app.get("/health", tags=["System"])
    async def health(ctx: AppContext = Depends(get_context)):
        """Liveness and component status."""

        return {
            "status": "healthy" if ctx.db.initialized else "starting",
            "database": ctx.db.initialized,
            "scheduler": ctx.scheduler.running,
            "running_backups": sorted(ctx.engine.running),
        }

    @app.get("/version", tags=["System"])
    async def version():
        return {"version": app.version}

    return app


configure_logging(
    log_dir=settings.LOG_DIR,
    log_level=settings.LOG_LEVEL,
    debug=settings.DEBUG,
    log_filename=settings.LOG_FILENAME,
)

app = create_app()


def serve() -> None:
    """Serve the API with uvicorn on HOST:PORT."""

    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    serve()
