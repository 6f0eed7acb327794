"""NFS volumes (`mount -t nfs`)."""

from __future__ import annotations

import logging

from backend.core.errors import MountError
from backend.services.volumes.backends.base import VolumeBackend


logger = logging.getLogger(__name__)


class NfsBackend(VolumeBackend):
    label = "NFS"

    def matches_fstype(self, fstype: str) -> bool:
        return fstype.startswith("nfs")

    def build_mount_args(self):
        config = self.config
        source = f"{config.server}:{config.export_path}"
        options = [f"vers={config.version}", f"port={config.port}"]
        if config.version == "3":
            options.append("nolock")
        if config.read_only:
            options.append("ro")
        return ["-t", "nfs", "-o", ",".join(options), source, self.path]

    async def _mount(self) -> None:
        self._ensure_mount_dir()
        args = self.build_mount_args()
        logger.info("Executing mount: mount %s", " ".join(args))
        try:
            await self.execute_mount(args)
        except MountError as exc:
            if exc.reason == "already_mounted":
                raise
            # Retry without the external mount helper
            logger.warning("NFS mount failed (%s), retrying with -i", exc)
            await self.execute_mount(["-i", *args])
