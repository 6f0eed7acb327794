"""Database lifecycle helpers."""

from __future__ import annotations

from backend.database.sql_handler import SQLHandler


async def initialize_database(database_url: str, *, run_migrations: bool = False, echo: bool = False) -> SQLHandler:
    """Create and initialize a handler for `database_url`."""

    handler = SQLHandler(database_url, echo=echo)
    await handler.initialize(run_migrations=run_migrations)
    return handler


async def close_database(handler: SQLHandler) -> None:
    await handler.close()


__all__ = ["SQLHandler", "initialize_database", "close_database"]
