"""Mirror compatibility between repositories.

`restic copy` runs with a single environment, so a primary and a mirror
repository on the same kind of cloud backend must use the same credentials.
Credentials are resolved and compared on every check.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from backend.services.secrets import SecretResolver
from models.configs import parse_repository_config


_CONFLICT_GROUPS = {
    "s3": "s3",
    "r2": "s3",
    "gcs": "gcs",
    "azure": "azure",
    "rest": "rest",
    "sftp": "sftp",
}


@dataclass(frozen=True)
class CompatibilityResult:
    repository_id: str
    compatible: bool
    reason: Optional[str] = None


def get_backend_conflict_group(backend: str) -> Optional[str]:
    """Return the credential conflict group of a repository backend (None for local/rclone)."""

    return _CONFLICT_GROUPS.get(backend)


def has_compatible_credentials(config1: Any, config2: Any, secrets: SecretResolver) -> bool:
    config1 = parse_repository_config(config1)
    config2 = parse_repository_config(config2)

    group1 = get_backend_conflict_group(config1.backend)
    group2 = get_backend_conflict_group(config2.backend)
    if not group1 or not group2 or group1 != group2:
        return True

    resolve = secrets.resolve_secret

    if group1 == "s3":
        return resolve(config1.access_key_id) == resolve(config2.access_key_id) and resolve(
            config1.secret_access_key
        ) == resolve(config2.secret_access_key)

    if group1 == "gcs":
        return (
            resolve(config1.credentials_json) == resolve(config2.credentials_json)
            and config1.project_id == config2.project_id
        )

    if group1 == "azure":
        return config1.account_name == config2.account_name and resolve(config1.account_key) == resolve(
            config2.account_key
        )

    if group1 == "rest":
        if not any((config1.username, config1.password, config2.username, config2.password)):
            return True
        return resolve(config1.username) == resolve(config2.username) and resolve(config1.password) == resolve(
            config2.password
        )

    # sftp: one ssh key per copy invocation
    return False


def check_mirror_compatibility(
    primary_config: Any,
    mirror_config: Any,
    mirror_repository_id: str,
    secrets: SecretResolver,
) -> CompatibilityResult:
    """Check whether snapshots can be copied from the primary to a mirror repository."""

    primary = parse_repository_config(primary_config)
    mirror = parse_repository_config(mirror_config)

    primary_group = get_backend_conflict_group(primary.backend)
    mirror_group = get_backend_conflict_group(mirror.backend)

    if not primary_group or not mirror_group or primary_group != mirror_group:
        return CompatibilityResult(mirror_repository_id, True)

    if has_compatible_credentials(primary, mirror, secrets):
        return CompatibilityResult(mirror_repository_id, True)

    return CompatibilityResult(
        mirror_repository_id,
        False,
        f"Both use {primary_group.upper()} backends with different credentials",
    )


def incompatible_mirror_message(mirror_name: str, primary_backend: str, mirror_backend: str) -> str:
    return (
        f"Cannot mirror to {mirror_name}: both repositories use the same backend type "
        f"({primary_backend}/{mirror_backend}) with different credentials. "
        "Restic cannot use different credentials for the same backend in a copy operation."
    )
