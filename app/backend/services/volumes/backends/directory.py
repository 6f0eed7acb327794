"""Host directory volumes.

Nothing is mounted: the volume is "mounted" as long as the configured
directory exists and is readable.
"""

from __future__ import annotations

import asyncio
import logging
import os

from backend.services.volumes.backends.base import OperationResult, VolumeBackend


logger = logging.getLogger(__name__)


class DirectoryBackend(VolumeBackend):
    label = "Directory"
    requires_linux = False

    def matches_fstype(self, fstype: str) -> bool:
        return True

    async def _mount(self) -> None:
        return None

    def _probe(self) -> OperationResult:
        if not os.path.isdir(self.path):
            return OperationResult.failed(f"Directory {self.path} does not exist")
        if not os.access(self.path, os.R_OK | os.X_OK):
            return OperationResult.failed(f"Directory {self.path} is not readable")
        return OperationResult.mounted()

    async def mount(self) -> OperationResult:
        result = await asyncio.to_thread(self._probe)
        if result.status == "mounted":
            logger.info("Directory volume at %s is available.", self.path)
        else:
            logger.error("Directory volume unavailable: %s", result.error)
        return result

    async def unmount(self) -> OperationResult:
        return OperationResult.unmounted()

    async def check_health(self) -> OperationResult:
        return await asyncio.to_thread(self._probe)
