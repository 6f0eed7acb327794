"""Periodic repository health checks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from backend.core.errors import LockUnavailableError, to_message

if TYPE_CHECKING:
    from backend.core.context import AppContext


logger = logging.getLogger(__name__)


async def run_repository_healthchecks(ctx: "AppContext") -> Dict[str, Any]:
    """Run `restic check` on every idle repository.

    Repositories that currently hold a lock are skipped for this cycle so the
    sweep never queues behind a running backup.
    """

    checked = skipped = failed = 0

    for repository in await ctx.repositories.list_repository_models():
        if ctx.mutex.is_locked(repository.id):
            logger.debug("Skipping health check for repository %s: repository is locked", repository.name)
            skipped += 1
            continue

        try:
            await ctx.repositories.check_health(repository.id, wait=False)
            checked += 1
        except LockUnavailableError:
            logger.debug("Skipping health check for repository %s: lock taken meanwhile", repository.name)
            skipped += 1
        except Exception as exc:
            failed += 1
            logger.error("Health check failed for repository %s: %s", repository.name, to_message(exc))

    return {"checked": checked, "skipped": skipped, "failed": failed}
