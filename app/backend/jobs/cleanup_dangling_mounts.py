"""Unmount leftovers below the volume mount base."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, Dict, List

from backend.utils.mountinfo import list_mount_points_under

if TYPE_CHECKING:
    from backend.core.context import AppContext


logger = logging.getLogger(__name__)


def _owned(mount_point: str, known: List[str]) -> bool:
    return any(mount_point == path or mount_point.startswith(path.rstrip("/") + "/") for path in known)


async def run_cleanup_dangling_mounts(ctx: "AppContext") -> Dict[str, Any]:
    """Lazily unmount every mount under VOLUME_MOUNT_BASE no known volume owns."""

    known = [os.path.normpath(path) for path in await ctx.volumes.known_mount_paths()]
    entries = list_mount_points_under(ctx.settings.VOLUME_MOUNT_BASE, ctx.runtime.mountinfo_path)

    unmounted: List[str] = []
    for entry in entries:
        mount_point = os.path.normpath(entry.mount_point)
        if _owned(mount_point, known):
            continue

        logger.info("Unmounting dangling mount %s (%s)", mount_point, entry.fstype)
        result = await ctx.runtime.runner("umount", ["-l", mount_point])
        if result.exit_code != 0:
            logger.warning("Failed to unmount dangling mount %s: %s", mount_point, result.stderr.strip())
            continue
        unmounted.append(mount_point)

    return {"unmounted": unmounted}
