"""Service startup and shutdown."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from backend.core.context import AppContext
from backend.core.errors import ServiceError, to_message
from backend.jobs import register_jobs
from backend.services.volumes.backends import MOUNTED


logger = logging.getLogger(__name__)

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def interpolate_env(text: str) -> str:
    """Replace `${NAME}` with the value of environment variable NAME."""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        value = os.environ.get(name)
        if value is None:
            logger.warning("Environment variable %s referenced in bootstrap config is not set", name)
            return ""
        return value

    return _ENV_REFERENCE.sub(_replace, text)


def load_bootstrap_config(source: Optional[str]) -> List[Dict[str, Any]]:
    """Load a bootstrap list from inline JSON or from a JSON file path.

    Args:
        source: Inline JSON (starting with `[` or `{`) or a file path.

    Returns:
        List[Dict[str, Any]]: Entries; an object with an `items` key or a
        single object are accepted as well.

    Raises:
        ValueError: When the content is not valid JSON.
    """

    if not source or not source.strip():
        return []

    raw = source.strip()
    if not raw.startswith(("[", "{")):
        raw = Path(raw).read_text(encoding="utf-8")

    try:
        data = json.loads(interpolate_env(raw))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid bootstrap config: {exc}") from exc

    if isinstance(data, dict):
        data = data.get("items", [data])
    if not isinstance(data, list):
        raise ValueError("Bootstrap config must be a list of objects")
    return [item for item in data if isinstance(item, dict)]


async def bootstrap_from_config(ctx: AppContext) -> Dict[str, int]:
    """Create volumes and repositories listed in VOLUMES_CONFIG / REPOSITORIES_CONFIG.

    Entries whose name already exists are skipped; a failing entry is logged
    and does not stop the others.
    """

    created = {"volumes": 0, "repositories": 0}

    try:
        repositories = load_bootstrap_config(ctx.settings.REPOSITORIES_CONFIG)
    except (OSError, ValueError) as exc:
        logger.error("Could not load REPOSITORIES_CONFIG: %s", to_message(exc))
        repositories = []

    if repositories:
        existing = {r["name"] for r in await ctx.repositories.list_repositories()}
        for entry in repositories:
            name = str(entry.get("name") or "").strip()
            if not name or name in existing:
                logger.debug("Skipping bootstrap repository %r", name)
                continue
            try:
                await ctx.repositories.create_repository(
                    name,
                    entry.get("config"),
                    compression_mode=entry.get("compression_mode", "auto"),
                    short_id=entry.get("short_id"),
                )
                created["repositories"] += 1
            except Exception as exc:
                logger.error("Bootstrap of repository %s failed: %s", name, to_message(exc))

    try:
        volumes = load_bootstrap_config(ctx.settings.VOLUMES_CONFIG)
    except (OSError, ValueError) as exc:
        logger.error("Could not load VOLUMES_CONFIG: %s", to_message(exc))
        volumes = []

    if volumes:
        existing = {v["name"] for v in await ctx.volumes.list_volumes()}
        for entry in volumes:
            name = str(entry.get("name") or "").strip()
            if not name or name in existing:
                logger.debug("Skipping bootstrap volume %r", name)
                continue
            try:
                await ctx.volumes.create_volume(name, entry.get("config"), auto_remount=entry.get("auto_remount", True))
                created["volumes"] += 1
            except ServiceError as exc:
                logger.error("Bootstrap of volume %s failed: %s", name, to_message(exc))

    if created["volumes"] or created["repositories"]:
        logger.info("Bootstrapped %d volume(s) and %d repository(ies)", created["volumes"], created["repositories"])
    return created


async def remount_volumes(ctx: AppContext) -> int:
    """Mount volumes that were mounted before the restart, or failed with auto remount."""

    mounted = 0
    for volume in await ctx.volumes.volumes_to_monitor():
        try:
            result = await ctx.volumes.ensure_mounted(volume)
        except Exception as exc:
            logger.error("Auto remount of volume %s failed: %s", volume.name, to_message(exc))
            continue
        if result.status == MOUNTED:
            mounted += 1
        else:
            logger.warning("Auto remount of volume %s failed: %s", volume.name, result.error)
    return mounted


async def startup(ctx: AppContext, *, start_scheduler: bool = True) -> None:
    """Bring the service up: database, pass file, recovery, bootstrap, jobs."""

    settings = ctx.settings

    ctx.restic.ensure_passfile()
    await ctx.db.initialize(run_migrations=settings.RUN_MIGRATIONS)

    await ctx.engine.mark_stale_in_progress()
    await bootstrap_from_config(ctx)
    await remount_volumes(ctx)

    register_jobs(ctx)
    if start_scheduler and settings.SCHEDULER_ENABLED:
        ctx.scheduler.start()
    logger.info("Startup complete (scheduler %s)", "running" if ctx.scheduler.running else "disabled")


async def shutdown(ctx: AppContext) -> None:
    ctx.scheduler.stop()
    await ctx.engine.cancel_all()
    await ctx.db.close()
    logger.info("Shutdown complete")
