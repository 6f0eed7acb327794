"""Secret resolution and sealing.

Credential fields stored in volume, repository and notification configs can
hold one of:
- a plain value (sealed on write, see `seal_secret`),
- an `env://NAME` reference to an environment variable,
- a `file://name` reference to a file under the secrets directory
  (Docker / Kubernetes secrets, single path segment only),
- an `encv1:` prefixed Fernet token produced by `seal_secret`.

The Fernet key comes from `CONFIG_ENCRYPTION_KEY` / `CONFIG_ENCRYPTION_KEY_FILE`,
falling back to the restic pass file content.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from pathlib import Path
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken

from backend.core.errors import ServiceError


SEALED_PREFIX = "encv1:"
ENV_PREFIX = "env://"
FILE_PREFIX = "file://"


class SecretResolutionError(ServiceError):
    """Raised when a secret reference cannot be resolved or decrypted."""


def _normalize_fernet_key(raw_key: str) -> bytes:
    """Normalize a user-provided key into a valid Fernet key.

    A valid Fernet key is used as-is; any other string is derived into one
    with SHA-256.

    Raises:
        SecretResolutionError: When raw_key is empty.
    """

    if not raw_key:
        raise SecretResolutionError(
            "No encryption key available. Provide CONFIG_ENCRYPTION_KEY or CONFIG_ENCRYPTION_KEY_FILE."
        )

    candidate = raw_key.strip().encode("utf-8")
    try:
        if len(base64.urlsafe_b64decode(candidate)) == 32:
            return candidate
    except (binascii.Error, ValueError):
        pass

    return base64.urlsafe_b64encode(hashlib.sha256(candidate).digest())


class SecretResolver:
    """Resolve and seal credential values.

    Args:
        key_provider: Callable returning the raw encryption key.
        secrets_dir: Directory that `file://` references are read from.
    """

    def __init__(self, key_provider: Callable[[], str], secrets_dir: str = "/run/secrets"):
        self._key_provider = key_provider
        self._secrets_dir = Path(secrets_dir)
        self._fernet: Optional[Fernet] = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(_normalize_fernet_key(self._key_provider()))
        return self._fernet

    @staticmethod
    def is_sealed(value: Optional[str]) -> bool:
        return bool(value) and value.startswith(SEALED_PREFIX)

    @staticmethod
    def is_reference(value: Optional[str]) -> bool:
        return bool(value) and (value.startswith(ENV_PREFIX) or value.startswith(FILE_PREFIX))

    def resolve_secret(self, value: Optional[str]) -> str:
        """Return the plaintext for `value`.

        Raises:
            SecretResolutionError: On unknown env vars, invalid or missing secret
                files, or tokens that cannot be decrypted.
        """

        if not value:
            return ""

        if value.startswith(ENV_PREFIX):
            name = value[len(ENV_PREFIX):]
            resolved = os.environ.get(name)
            if resolved is None:
                raise SecretResolutionError(f"Environment variable {name!r} referenced by a secret is not set")
            return resolved

        if value.startswith(FILE_PREFIX):
            name = value[len(FILE_PREFIX):]
            if not name or "/" in name or "\\" in name or name in (".", ".."):
                raise SecretResolutionError(f"Invalid secret file reference {value!r}: expected a single file name")
            path = self._secrets_dir / name
            try:
                return path.read_text(encoding="utf-8").rstrip("\r\n")
            except OSError as exc:
                raise SecretResolutionError(f"Secret file {name!r} could not be read") from exc

        if value.startswith(SEALED_PREFIX):
            token = value[len(SEALED_PREFIX):]
            try:
                return self._get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
            except InvalidToken as exc:
                raise SecretResolutionError("Invalid encryption token or wrong encryption key") from exc

        return value

    def seal_secret(self, value: Optional[str]) -> Optional[str]:
        """Encrypt a plain value for storage. References and sealed values pass through."""

        if not value or self.is_sealed(value) or self.is_reference(value):
            return value

        token = self._get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")
        return f"{SEALED_PREFIX}{token}"
