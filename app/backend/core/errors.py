"""Error taxonomy shared by services, jobs and the API layer."""

from __future__ import annotations

import os
import re
from typing import Optional


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class BadRequestError(ServiceError):
    status_code = 400


class DatabaseNotInitializedError(RuntimeError):
    """Raised when the database handler is used before `initialize_database()`."""


class MountError(Exception):
    """Raised by volume backends when a mount command fails.

    Attributes:
        reason: Short machine readable classification
            (platform_unsupported, auth_failed, connection_refused,
            invalid_options, unknown).
    """

    def __init__(self, message: str, *, reason: str = "unknown"):
        super().__init__(message)
        self.reason = reason


class OperationTimeoutError(TimeoutError):
    """Raised when an operation exceeds its time bound."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


class LockUnavailableError(Exception):
    """Raised when a non-blocking repository lock acquisition fails."""

    def __init__(self, repository_id: str, mode: str):
        super().__init__(f"Repository {repository_id} is locked; {mode} lock unavailable")
        self.repository_id = repository_id
        self.mode = mode


class BackupEngineError(Exception):
    """Base class for failures of the external backup engine."""


RESTIC_EXIT_CODES = {
    1: "Command failed: An error occurred while executing the command.",
    2: "Go runtime error: A runtime error occurred in the Go program.",
    3: "Backup could not read all files: Some files could not be read during backup.",
    10: "Repository not found: The specified repository could not be found.",
    11: "Failed to lock repository: Unable to acquire a lock on the repository. Try to run doctor on the repository.",
    12: "Wrong repository password: The provided password for the repository is incorrect.",
    130: "Backup interrupted: The backup process was interrupted.",
    999: "The backup was stopped by the user.",
}

EXIT_CODE_STOPPED = 999


class ResticError(BackupEngineError):
    """A restic invocation exited with a non-zero code.

    Attributes:
        code: Process exit code.
        stderr: Captured standard error.
    """

    def __init__(self, code: int, stderr: str = ""):
        description = RESTIC_EXIT_CODES.get(code, f"Unknown restic error with code {code}")
        message = f"{description}\n{stderr}" if stderr else description
        super().__init__(message.strip())
        self.code = code
        self.stderr = stderr

    @property
    def kind(self) -> str:
        return {
            10: "repository_not_found",
            11: "locked_repository",
            12: "wrong_password",
            130: "interrupted",
            EXIT_CODE_STOPPED: "stopped",
        }.get(self.code, "unknown")


_PASSWORD_OPTION = re.compile(r"\b(pass|password)=([^\s,]+)", re.IGNORECASE)
_URL_CREDENTIALS = re.compile(r"//([^:@\s/]+):([^@\s]+)@")
_DAVFS_LINE = re.compile(r"(https?://\S+)\s+(\S+)\s+(\S+)")


def sanitize_sensitive_data(text: str) -> str:
    """Mask passwords embedded in mount options, URLs and davfs secret lines."""

    if os.environ.get("VOLUME_BACKUP_UNSAFE_LOGS") == "1":
        return text

    sanitized = _PASSWORD_OPTION.sub(r"\1=***", text)
    sanitized = _URL_CREDENTIALS.sub(r"//\1:***@", sanitized)
    sanitized = _DAVFS_LINE.sub(r"\1 \2 ***", sanitized)
    return sanitized


def to_message(error: Optional[BaseException | str]) -> str:
    """Convert an exception (or string) into a sanitized user-facing message."""

    if error is None:
        return ""
    message = str(error) if str(error) else error.__class__.__name__
    return sanitize_sensitive_data(message)
