"""restic command layer."""

from backend.services.restic.restic import (
    BackupResult,
    CheckResult,
    ResticEnvironment,
    ResticService,
    build_repo_url,
)
from backend.services.restic.retention import RetentionPolicy, retention_from_dict

__all__ = [
    "BackupResult",
    "CheckResult",
    "ResticEnvironment",
    "ResticService",
    "RetentionPolicy",
    "build_repo_url",
    "retention_from_dict",
]
