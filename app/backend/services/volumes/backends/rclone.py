"""rclone remote volumes (`rclone mount --daemon`)."""

from __future__ import annotations

import logging

from backend.core.errors import MountError
from backend.services.volumes.backends.base import VolumeBackend, classify_mount_failure


logger = logging.getLogger(__name__)


class RcloneBackend(VolumeBackend):
    label = "rclone"

    def matches_fstype(self, fstype: str) -> bool:
        return fstype == "fuse.rclone"

    def build_mount_args(self):
        config = self.config
        args = ["mount", f"{config.remote}:{config.path}", self.path, "--daemon"]
        if config.read_only:
            args.append("--read-only")
        args.extend(["--vfs-cache-mode", "writes", "--allow-non-empty", "--allow-other"])
        return args

    async def _mount(self) -> None:
        self._ensure_mount_dir()
        args = self.build_mount_args()
        logger.info("Executing rclone: rclone %s", " ".join(args))

        result = await self._run("rclone", args)
        if result.exit_code != 0:
            output = (result.stderr or result.stdout or "Unknown error").strip()
            raise MountError(f"Failed to mount rclone volume: {output}", reason=classify_mount_failure(output))
