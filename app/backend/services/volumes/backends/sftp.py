"""SFTP volumes (`sshfs`).

Private keys and known_hosts are written to the SSH keys directory with mode
0600 and removed again on unmount. Passwords are fed to sshfs on stdin.
"""

from __future__ import annotations

import logging
import os

from backend.core.errors import MountError
from backend.services.volumes.backends.base import (
    OperationResult,
    VolumeBackend,
    classify_mount_failure,
    uid_gid_options,
)


logger = logging.getLogger(__name__)


class SftpBackend(VolumeBackend):
    label = "SFTP"
    # ssh handshakes are slow
    mount_timeout_factor = 2.0

    @property
    def private_key_path(self) -> str:
        return os.path.join(self.runtime.ssh_keys_dir, f"{self.key_name}.key")

    @property
    def known_hosts_path(self) -> str:
        return os.path.join(self.runtime.ssh_keys_dir, f"{self.key_name}.known_hosts")

    def matches_fstype(self, fstype: str) -> bool:
        return fstype == "fuse.sshfs"

    def build_mount_args(self):
        config = self.config
        uid, gid = uid_gid_options()
        options = ["reconnect", "ServerAliveInterval=15", "ServerAliveCountMax=3", "allow_other", uid, gid]

        if config.skip_host_key_check or not config.known_hosts:
            options.extend(["StrictHostKeyChecking=no", "UserKnownHostsFile=/dev/null"])
        else:
            self._write_private_file(self.known_hosts_path, config.known_hosts)
            options.extend([f"UserKnownHostsFile={self.known_hosts_path}", "StrictHostKeyChecking=yes"])

        if config.read_only:
            options.append("ro")
        if config.port:
            options.append(f"port={config.port}")

        if config.private_key:
            key = self._resolve(config.private_key).replace("\r\n", "\n")
            if not key.endswith("\n"):
                key += "\n"
            self._write_private_file(self.private_key_path, key)
            options.append(f"IdentityFile={self.private_key_path}")

        source = f"{config.username}@{config.host}:{config.path or ''}"
        return [source, self.path, "-o", ",".join(options)]

    async def _mount(self) -> None:
        self._ensure_mount_dir()
        os.makedirs(self.runtime.ssh_keys_dir, exist_ok=True)

        args = self.build_mount_args()
        stdin = None
        if self.config.password:
            stdin = self._resolve(self.config.password) + "\n"
            args.extend(["-o", "password_stdin"])
            logger.info('Executing sshfs: echo "******" | sshfs %s', " ".join(args))
        else:
            logger.info("Executing sshfs: sshfs %s", " ".join(args))

        result = await self._run("sshfs", args, stdin=stdin)
        if result.exit_code != 0:
            output = (result.stderr or result.stdout or "Unknown error").strip()
            raise MountError(f"Failed to mount SFTP volume: {output}", reason=classify_mount_failure(output))

    def _cleanup_credentials(self) -> None:
        self._remove_file(self.private_key_path)
        self._remove_file(self.known_hosts_path)

    def _not_mounted(self) -> OperationResult:
        return OperationResult.unmounted()
