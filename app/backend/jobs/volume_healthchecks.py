"""Periodic volume health checks with automatic remount."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from backend.core.errors import to_message
from backend.services.volumes.backends import MOUNTED

if TYPE_CHECKING:
    from backend.core.context import AppContext


logger = logging.getLogger(__name__)


async def run_volume_healthchecks(ctx: "AppContext") -> Dict[str, Any]:
    """Check every monitored volume; remount the ones with auto remount that are down."""

    volumes = await ctx.volumes.volumes_to_monitor()
    checked = remounted = failed = 0

    for volume in volumes:
        try:
            result = await ctx.volumes.check_health(volume.name)
            checked += 1
            if result.status != MOUNTED and volume.auto_remount:
                logger.info("Volume %s is %s; remounting", volume.name, result.status)
                remount = await ctx.volumes.mount_volume(volume.name)
                if remount.status == MOUNTED:
                    remounted += 1
                else:
                    logger.warning("Remount of volume %s failed: %s", volume.name, remount.error)
        except Exception as exc:
            failed += 1
            logger.error("Health check failed for volume %s: %s", volume.name, to_message(exc))

    return {"checked": checked, "remounted": remounted, "failed": failed}
