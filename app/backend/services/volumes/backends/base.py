"""Base volume backend.

A backend mounts one kind of storage at a local path and reports whether the
mount is alive. Every backend follows the same shape:

1. Refuse to run on non-Linux hosts (no side effects).
2. `mount()` is idempotent: it checks health first and only runs OS commands
   when the volume is not already mounted. A broken mount is unmounted once
   before the new attempt.
3. OS commands run with a bounded timeout.
4. `unmount()` only calls `umount -l` when the path is an actual mount point
   and always removes transient credential files.
5. `check_health()` reads the live mount table on every call.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Optional, Sequence, Tuple

from backend.core.errors import MountError, OperationTimeoutError, ServiceError, sanitize_sensitive_data, to_message
from backend.services.secrets import SecretResolver
from backend.utils.mountinfo import DEFAULT_MOUNTINFO_PATH, get_mount_for_path
from backend.utils.spawn import SpawnResult, run_command
from backend.utils.timeout import with_timeout


logger = logging.getLogger(__name__)

MOUNTED = "mounted"
UNMOUNTED = "unmounted"
ERROR = "error"

NOT_MOUNTED_MESSAGE = "Volume is not mounted"

CommandRunner = Callable[..., Awaitable[SpawnResult]]


@dataclass(frozen=True)
class OperationResult:
    status: str
    error: Optional[str] = None

    @classmethod
    def mounted(cls) -> "OperationResult":
        return cls(MOUNTED)

    @classmethod
    def unmounted(cls) -> "OperationResult":
        return cls(UNMOUNTED)

    @classmethod
    def failed(cls, error: str) -> "OperationResult":
        return cls(ERROR, error)


@dataclass
class BackendRuntime:
    """Host facilities shared by every backend instance.

    Attributes:
        secrets: Resolver for credential fields.
        runner: Coroutine running an OS command, `run_command` compatible.
        operation_timeout: Bound (seconds) for mount, unmount and health checks.
        mountinfo_path: Mount table location.
        ssh_keys_dir: Where SFTP keys and known_hosts files are written.
        davfs_secrets_file: davfs2 credentials file.
        platform: `sys.platform` value used for the Linux check.
    """

    secrets: SecretResolver
    runner: CommandRunner = run_command
    operation_timeout: float = 5.0
    mountinfo_path: str = DEFAULT_MOUNTINFO_PATH
    ssh_keys_dir: str = "/var/lib/volume-backup/ssh"
    davfs_secrets_file: str = "/etc/davfs2/secrets"
    platform: str = field(default_factory=lambda: sys.platform)

    @classmethod
    def from_settings(cls, settings: Any, secrets: SecretResolver, **overrides: Any) -> "BackendRuntime":
        values = dict(
            secrets=secrets,
            operation_timeout=settings.OPERATION_TIMEOUT,
            mountinfo_path=settings.MOUNTINFO_PATH,
            ssh_keys_dir=settings.SSH_KEYS_DIR,
            davfs_secrets_file=settings.DAVFS_SECRETS_FILE,
        )
        values.update(overrides)
        return cls(**values)

    @property
    def is_linux(self) -> bool:
        return self.platform.startswith("linux")


def classify_mount_failure(message: str) -> str:
    """Map mount tool output to a `MountError.reason`."""

    lowered = message.lower()
    if "already mounted" in lowered:
        return "already_mounted"
    if "option" in lowered and "requires argument" in lowered:
        return "invalid_options"
    if "connection refused" in lowered:
        return "connection_refused"
    if "unauthorized" in lowered or "permission denied" in lowered or "authentication failed" in lowered:
        return "auth_failed"
    return "unknown"


class VolumeBackend(ABC):
    """Mount lifecycle for one volume.

    Args:
        config: Validated backend config.
        path: Local mount path.
        runtime: Shared host facilities.
        key_name: Stable name for transient credential files (volume short id).
    """

    label: ClassVar[str] = "Volume"
    requires_linux: ClassVar[bool] = True
    mount_timeout_factor: ClassVar[float] = 1.0

    def __init__(self, config: Any, path: str, runtime: BackendRuntime, *, key_name: Optional[str] = None):
        self.config = config
        self.path = os.path.normpath(path)
        self.runtime = runtime
        self.key_name = key_name or os.path.basename(os.path.dirname(self.path)) or "volume"

    # -- hooks ---------------------------------------------------------------

    @abstractmethod
    def matches_fstype(self, fstype: str) -> bool:
        """Return True when `fstype` is what this backend mounts."""

    @abstractmethod
    async def _mount(self) -> None:
        """Run the backend specific mount command. Raise `MountError` on failure."""

    def _cleanup_credentials(self) -> None:
        """Remove transient credential files written by `_mount`."""

    def _friendly_error(self, error: MountError) -> str:
        if error.reason == "invalid_options":
            return f"Invalid mount options. Please check your {self.label} server configuration."
        if error.reason == "connection_refused":
            return f"Cannot connect to {self.label} server. Please check the server address and port."
        if error.reason == "auth_failed":
            return "Authentication failed. Please check your username and password."
        return to_message(error)

    # -- shared helpers ------------------------------------------------------

    def _unsupported(self, action: str) -> Optional[OperationResult]:
        if not self.requires_linux or self.runtime.is_linux:
            return None
        message = f"{self.label} {action} is only supported on Linux hosts."
        logger.error(message)
        return OperationResult.failed(message)

    @property
    def timeout(self) -> float:
        return self.runtime.operation_timeout

    def _ensure_mount_dir(self) -> None:
        os.makedirs(self.path, exist_ok=True)

    def _remove_mount_dir(self) -> None:
        try:
            os.rmdir(self.path)
        except OSError as exc:
            logger.debug("Could not remove mount directory %s: %s", self.path, exc)

    def _remove_file(self, path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Could not remove %s: %s", path, exc)

    def _write_private_file(self, path: str, content: str) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(path, 0o600)

    def _resolve(self, value: Optional[str]) -> str:
        return self.runtime.secrets.resolve_secret(value)

    async def _run(self, command: str, args: Sequence[str], *, stdin: Optional[str] = None) -> SpawnResult:
        logger.debug("Executing %s %s", command, sanitize_sensitive_data(" ".join(args)))
        result = await self.runtime.runner(command, list(args), stdin=stdin)
        stderr = (result.stderr or "").strip()
        if stderr:
            logger.warning("%s: %s", command, sanitize_sensitive_data(stderr))
        return result

    async def execute_mount(self, args: Sequence[str]) -> None:
        result = await self._run("mount", args)
        if result.exit_code != 0:
            stderr = (result.stderr or "").strip()
            raise MountError(
                f"Mount command failed with exit code {result.exit_code}: {stderr}",
                reason=classify_mount_failure(stderr),
            )

    async def execute_unmount(self) -> None:
        result = await self._run("umount", ["-l", self.path])
        if result.exit_code != 0:
            stderr = (result.stderr or "").strip()
            raise MountError(
                f"Unmount command failed with exit code {result.exit_code}: {stderr}",
                reason=classify_mount_failure(stderr),
            )

    def _mount_entry(self):
        return get_mount_for_path(self.path, self.runtime.mountinfo_path)

    # -- lifecycle -----------------------------------------------------------

    async def mount(self) -> OperationResult:
        logger.debug("Mounting %s volume %s...", self.label, self.path)

        unsupported = self._unsupported("mounting")
        if unsupported is not None:
            return unsupported

        health = await self.check_health()
        if health.status == MOUNTED:
            return OperationResult.mounted()

        if health.status == ERROR:
            logger.debug("Trying to unmount any existing mounts at %s before mounting...", self.path)
            await self.unmount()

        timeout = self.timeout * self.mount_timeout_factor
        try:
            await with_timeout(self._mount(), timeout, f"{self.label} mount")
        except MountError as exc:
            if exc.reason == "already_mounted":
                logger.info("%s volume at %s was already mounted", self.label, self.path)
                return OperationResult.mounted()
            logger.error("Error mounting %s volume %s: %s", self.label, self.path, to_message(exc))
            self._cleanup_credentials()
            return OperationResult.failed(self._friendly_error(exc))
        except (OperationTimeoutError, OSError, ServiceError) as exc:
            logger.error("Error mounting %s volume %s: %s", self.label, self.path, to_message(exc))
            self._cleanup_credentials()
            return OperationResult.failed(to_message(exc))

        logger.info("%s volume at %s mounted successfully.", self.label, self.path)
        return OperationResult.mounted()

    async def _unmount(self) -> None:
        entry = self._mount_entry()
        if entry is None or entry.mount_point != self.path:
            logger.debug("Path %s is not a mount point. Skipping unmount.", self.path)
        else:
            await self.execute_unmount()
        self._remove_mount_dir()

    async def unmount(self) -> OperationResult:
        unsupported = self._unsupported("unmounting")
        if unsupported is not None:
            return unsupported

        try:
            await with_timeout(self._unmount(), self.timeout, f"{self.label} unmount")
        except (MountError, OperationTimeoutError, OSError) as exc:
            logger.error("Error unmounting %s volume %s: %s", self.label, self.path, to_message(exc))
            return OperationResult.failed(to_message(exc))
        finally:
            self._cleanup_credentials()

        logger.info("%s volume at %s unmounted successfully.", self.label, self.path)
        return OperationResult.unmounted()

    def _not_mounted(self) -> OperationResult:
        return OperationResult.failed(NOT_MOUNTED_MESSAGE)

    async def _inspect(self) -> OperationResult:
        exists = await asyncio.to_thread(os.path.exists, self.path)
        if not exists:
            return self._not_mounted()

        entry = self._mount_entry()
        if entry is None or entry.mount_point != self.path:
            return self._not_mounted()

        if not self.matches_fstype(entry.fstype):
            return OperationResult.failed(f"Path {self.path} is not mounted as {self.label} (found {entry.fstype}).")

        logger.debug("%s volume at %s is healthy and mounted.", self.label, self.path)
        return OperationResult.mounted()

    async def check_health(self) -> OperationResult:
        try:
            result = await with_timeout(self._inspect(), self.timeout, f"{self.label} health check")
        except OperationTimeoutError as exc:
            result = OperationResult.failed(to_message(exc))

        if result.status == ERROR and result.error != NOT_MOUNTED_MESSAGE:
            logger.error("%s volume health check failed: %s", self.label, result.error)
        return result


def uid_gid_options() -> Tuple[str, str]:
    return f"uid={os.getuid()}", f"gid={os.getgid()}"
