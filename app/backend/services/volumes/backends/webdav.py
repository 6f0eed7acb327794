"""WebDAV volumes (`mount -t davfs`).

Credentials are kept in the davfs2 secrets file, one line per URL, which
`mount.davfs` reads for the matching URL. The line is removed on unmount.
"""

from __future__ import annotations

import logging
import os

from backend.services.volumes.backends.base import VolumeBackend, uid_gid_options


logger = logging.getLogger(__name__)


class WebdavBackend(VolumeBackend):
    label = "WebDAV"

    def matches_fstype(self, fstype: str) -> bool:
        return fstype in ("fuse", "davfs")

    @property
    def source(self) -> str:
        config = self.config
        protocol = "https" if config.ssl else "http"
        default_port = 443 if config.ssl else 80
        port = f":{config.port}" if config.port != default_port else ""
        path = config.path if config.path.startswith("/") else f"/{config.path}"
        return f"{protocol}://{config.server}{port}{path}"

    def build_mount_args(self):
        uid, gid = uid_gid_options()
        if self.config.read_only:
            options = [uid, gid, "file_mode=0444", "dir_mode=0555", "ro"]
        else:
            options = [uid, gid, "file_mode=0664", "dir_mode=0775"]
        return ["-t", "davfs", "-o", ",".join(options), self.source, self.path]

    def _read_secret_lines(self):
        try:
            with open(self.runtime.davfs_secrets_file, "r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except FileNotFoundError:
            return []
        prefix = f"{self.source} "
        return [line for line in lines if not line.startswith(prefix)]

    def _write_secret_lines(self, lines) -> None:
        secrets_file = self.runtime.davfs_secrets_file
        os.makedirs(os.path.dirname(secrets_file), exist_ok=True)
        fd = os.open(secrets_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.writelines(lines)
        os.chmod(secrets_file, 0o600)

    def _store_credentials(self) -> None:
        config = self.config
        if not (config.username and config.password):
            return
        password = self._resolve(config.password)
        lines = self._read_secret_lines()
        lines.append(f"{self.source} {config.username} {password}\n")
        self._write_secret_lines(lines)

    def _cleanup_credentials(self) -> None:
        if not os.path.exists(self.runtime.davfs_secrets_file):
            return
        try:
            self._write_secret_lines(self._read_secret_lines())
        except OSError as exc:
            logger.warning("Could not update davfs2 secrets file: %s", exc)

    async def _mount(self) -> None:
        try:
            self._ensure_mount_dir()
        except OSError as exc:
            logger.warning("Failed to create directory %s: %s", self.path, exc)

        self._store_credentials()
        await self.execute_mount(self.build_mount_args())
