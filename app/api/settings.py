"""Application settings.

Values are read from environment variables (and an optional `.env` file).
Secrets can alternatively be supplied through `*_FILE` variables pointing to
files, which is how Docker secrets are usually mounted.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _read_file(path: str) -> str:
    if not path:
        return ""
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError:
        return ""


class Settings(BaseSettings):
    """Runtime configuration for the volume backup service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    IMAGE_TAG: str = "dev"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "/app/logs"
    LOG_FILENAME: str = "volume-backup.log"

    DATABASE_URL: str = "sqlite+aiosqlite:////var/lib/volume-backup/data.db"
    RUN_MIGRATIONS: bool = False

    VOLUME_MOUNT_BASE: str = "/var/lib/volume-backup/volumes"
    REPOSITORY_BASE: str = "/var/lib/volume-backup/repositories"
    RESTIC_PASS_FILE: str = "/var/lib/volume-backup/restic.pass"
    RESTIC_CACHE_DIR: str = "/var/lib/volume-backup/restic/cache"
    RESTIC_HOSTNAME: str = "volume-backup"
    SSH_KEYS_DIR: str = "/var/lib/volume-backup/ssh"
    SECRETS_DIR: str = "/run/secrets"
    DAVFS_SECRETS_FILE: str = "/etc/davfs2/secrets"
    MOUNTINFO_PATH: str = "/proc/self/mountinfo"

    OPERATION_TIMEOUT: float = Field(default=5.0, gt=0, description="Timeout in seconds for mount operations")
    PROGRESS_THROTTLE_SECONDS: float = Field(default=1.0, ge=0)

    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"

    VOLUMES_CONFIG: Optional[str] = None
    REPOSITORIES_CONFIG: Optional[str] = None

    CONFIG_ENCRYPTION_KEY: str = ""
    CONFIG_ENCRYPTION_KEY_FILE: str = ""

    def get_config_encryption_key(self) -> str:
        """Return the key used to seal secrets stored in the database.

        Falls back to the restic pass file content when no explicit key is set,
        so an installation always has a stable key once the pass file exists.

        Returns:
            str: Raw key material (may be empty when nothing is configured).
        """

        if self.CONFIG_ENCRYPTION_KEY:
            return self.CONFIG_ENCRYPTION_KEY

        from_file = _read_file(self.CONFIG_ENCRYPTION_KEY_FILE)
        if from_file:
            return from_file

        return _read_file(self.RESTIC_PASS_FILE)

    def get_restic_env_path(self) -> str:
        return os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")


settings = Settings()
