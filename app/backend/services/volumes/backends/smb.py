"""SMB/CIFS volumes (`mount -t cifs`)."""

from __future__ import annotations

import logging

from backend.core.errors import sanitize_sensitive_data
from backend.services.volumes.backends.base import VolumeBackend, uid_gid_options


logger = logging.getLogger(__name__)


class SmbBackend(VolumeBackend):
    label = "SMB"

    def matches_fstype(self, fstype: str) -> bool:
        return fstype in ("cifs", "smb3")

    def build_mount_args(self):
        config = self.config
        password = self._resolve(config.password)
        uid, gid = uid_gid_options()

        options = [
            f"username={config.username}",
            f"password={password}",
            f"vers={config.vers}",
            f"port={config.port}",
            uid,
            gid,
        ]
        if config.domain:
            options.append(f"domain={config.domain}")
        if config.read_only:
            options.append("ro")

        source = f"//{config.server}/{config.share}"
        return ["-t", "cifs", "-o", ",".join(options), source, self.path]

    async def _mount(self) -> None:
        self._ensure_mount_dir()
        args = self.build_mount_args()
        logger.info("Executing mount: mount %s", sanitize_sensitive_data(" ".join(args)))
        await self.execute_mount(args)
