"""Async SQLAlchemy handler."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from backend.core.errors import DatabaseNotInitializedError
from models.sql.base import Base
import models.sql.backup_automation  # noqa: F401  (registers models on Base.metadata)


logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SQLHandler:
    """Owns the async engine and the session factory.

    The handler is inert until `initialize()` completes; touching
    `AsyncSessionLocal` or `engine` before that raises
    `DatabaseNotInitializedError`.

    Attributes:
        database_url: SQLAlchemy URL (async driver).
    """

    def __init__(self, database_url: str, *, echo: bool = False):
        self.database_url = database_url
        self._echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise DatabaseNotInitializedError("Database is not initialized; call initialize() first")
        return self._engine

    @property
    def AsyncSessionLocal(self) -> async_sessionmaker:
        if self._session_factory is None:
            raise DatabaseNotInitializedError("Database is not initialized; call initialize() first")
        return self._session_factory

    async def initialize(self, *, run_migrations: bool = False) -> None:
        """Create the engine, apply the schema and verify connectivity.

        Args:
            run_migrations: Upgrade with Alembic instead of `create_all`.
        """

        if self._engine is not None:
            return

        url = make_url(self.database_url)
        is_sqlite = url.get_backend_name() == "sqlite"
        if is_sqlite and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        connect_args = {"timeout": 30} if is_sqlite else {}
        engine = create_async_engine(self.database_url, echo=self._echo, connect_args=connect_args)
        if is_sqlite:
            event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        if run_migrations:
            from backend.database.migrations import run_migrations as upgrade_to_head

            await upgrade_to_head(self.database_url)
        else:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        self._engine = engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)
        logger.info("Database initialized (%s)", engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None
