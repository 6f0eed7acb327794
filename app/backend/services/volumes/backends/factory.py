"""Volume backend registry.

Maps the `backend` discriminator of a volume config to the class that
implements it. Adding a backend means adding a config model to
`models.configs.VolumeConfig` and an entry to `VOLUME_BACKENDS`.
"""

from __future__ import annotations

import os
from typing import Dict, Optional, Type

from backend.services.volumes.backends.base import BackendRuntime, VolumeBackend
from backend.services.volumes.backends.directory import DirectoryBackend
from backend.services.volumes.backends.nfs import NfsBackend
from backend.services.volumes.backends.rclone import RcloneBackend
from backend.services.volumes.backends.sftp import SftpBackend
from backend.services.volumes.backends.smb import SmbBackend
from backend.services.volumes.backends.webdav import WebdavBackend
from models.configs import DirectoryConfig, parse_volume_config


VOLUME_BACKENDS: Dict[str, Type[VolumeBackend]] = {
    "directory": DirectoryBackend,
    "nfs": NfsBackend,
    "smb": SmbBackend,
    "webdav": WebdavBackend,
    "rclone": RcloneBackend,
    "sftp": SftpBackend,
}


def get_volume_path(volume, mount_base: str) -> str:
    """Return where `volume` is (or will be) available on the host.

    Directory volumes live at their configured path; everything else is
    mounted at `<mount_base>/<short_id>/_data`.
    """

    config = parse_volume_config(volume.config)
    if isinstance(config, DirectoryConfig):
        return config.path
    return os.path.join(mount_base, volume.short_id, "_data")


def build_volume_backend(
    volume, runtime: BackendRuntime, *, mount_base: str, path: Optional[str] = None
) -> VolumeBackend:
    """Instantiate the backend for a volume row.

    Args:
        volume: `Volume` model (or any object with `short_id` and `config`).
        runtime: Shared host facilities.
        mount_base: Root directory for mounted volumes.
        path: Override the mount path (used by connection tests).

    Raises:
        ValueError: When the config names an unknown backend.
    """

    config = parse_volume_config(volume.config)
    backend_cls = VOLUME_BACKENDS.get(config.backend)
    if backend_cls is None:
        raise ValueError(f"Unsupported volume backend: {config.backend}")
    return backend_cls(
        config,
        path or get_volume_path(volume, mount_base),
        runtime,
        key_name=volume.short_id,
    )
