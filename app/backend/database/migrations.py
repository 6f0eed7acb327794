"""Alembic migration runner."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from alembic import command
from alembic.config import Config


logger = logging.getLogger(__name__)

ALEMBIC_DIR = Path(__file__).resolve().parents[3] / "alembic"


def build_alembic_config(database_url: str) -> Config:
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("sqlalchemy.url", database_url)
    return config


async def run_migrations(database_url: str) -> None:
    """Upgrade the database to the latest revision.

    Alembic's env runs its own event loop for the async engine, so the upgrade
    is executed in a worker thread.
    """

    logger.info("Running database migrations from %s", ALEMBIC_DIR)
    config = build_alembic_config(database_url)
    await asyncio.to_thread(command.upgrade, config, "head")
    logger.info("Database migrations completed")
