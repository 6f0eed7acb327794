"""Volume mount backends."""

from backend.services.volumes.backends.base import (
    ERROR,
    MOUNTED,
    UNMOUNTED,
    BackendRuntime,
    CommandRunner,
    OperationResult,
    VolumeBackend,
)
from backend.services.volumes.backends.factory import VOLUME_BACKENDS, build_volume_backend, get_volume_path

__all__ = [
    "ERROR",
    "MOUNTED",
    "UNMOUNTED",
    "BackendRuntime",
    "CommandRunner",
    "OperationResult",
    "VolumeBackend",
    "VOLUME_BACKENDS",
    "build_volume_backend",
    "get_volume_path",
]
