"""Serialization helpers.

These helpers convert SQLAlchemy models into JSON-friendly dictionaries for API
responses. Sealed credential values are never returned; they are replaced by a
mask so clients can tell a secret is set.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from backend.services.backups.schedule_timing import ensure_utc
from backend.services.secrets import SEALED_PREFIX
from models.sql.backup_automation import (
    BackupSchedule,
    NotificationDestination,
    Repository,
    ScheduleMirror,
    ScheduleNotification,
    Volume,
)


SECRET_MASK = "********"


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def mask_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a copy of `config` with sealed values masked."""

    masked: Dict[str, Any] = {}
    for key, value in (config or {}).items():
        if isinstance(value, str) and value.startswith(SEALED_PREFIX):
            masked[key] = SECRET_MASK
        else:
            masked[key] = value
    return masked


def volume_to_dict(volume: Volume) -> Dict[str, Any]:
    return {
        "id": volume.id,
        "short_id": volume.short_id,
        "name": volume.name,
        "type": volume.type,
        "status": volume.status,
        "last_error": volume.last_error,
        "last_health_check": _iso(volume.last_health_check),
        "config": mask_config(volume.config),
        "auto_remount": bool(volume.auto_remount),
        "created_at": _iso(volume.created_at),
        "updated_at": _iso(volume.updated_at),
    }


def repository_to_dict(repository: Repository) -> Dict[str, Any]:
    return {
        "id": repository.id,
        "short_id": repository.short_id,
        "name": repository.name,
        "type": repository.type,
        "config": mask_config(repository.config),
        "compression_mode": repository.compression_mode,
        "status": repository.status,
        "last_checked": _iso(repository.last_checked),
        "last_error": repository.last_error,
        "created_at": _iso(repository.created_at),
        "updated_at": _iso(repository.updated_at),
    }


def schedule_to_dict(schedule: BackupSchedule, *, running: bool = False) -> Dict[str, Any]:
    """Convert a BackupSchedule to a JSON-friendly dict.

    Args:
        schedule: Schedule model (volume and repository are eagerly loaded).
        running: Whether the engine currently executes this schedule.

    Returns:
        Dict[str, Any]: Serialized schedule.
    """

    return {
        "id": schedule.id,
        "short_id": schedule.short_id,
        "name": schedule.name,
        "volume_id": schedule.volume_id,
        "volume_name": schedule.volume.name if schedule.volume else None,
        "repository_id": schedule.repository_id,
        "repository_name": schedule.repository.name if schedule.repository else None,
        "enabled": bool(schedule.enabled),
        "cron_expression": schedule.cron_expression,
        "retention_policy": schedule.retention_policy,
        "exclude_patterns": list(schedule.exclude_patterns or []),
        "exclude_if_present": list(schedule.exclude_if_present or []),
        "include_patterns": list(schedule.include_patterns or []),
        "one_file_system": bool(schedule.one_file_system),
        "sort_order": schedule.sort_order,
        "last_backup_at": _iso(schedule.last_backup_at),
        "last_backup_status": schedule.last_backup_status,
        "last_backup_error": schedule.last_backup_error,
        "next_backup_at": _iso(schedule.next_backup_at),
        "running": running,
        "created_at": _iso(schedule.created_at),
        "updated_at": _iso(schedule.updated_at),
    }


def mirror_to_dict(mirror: ScheduleMirror) -> Dict[str, Any]:
    return {
        "id": mirror.id,
        "schedule_id": mirror.schedule_id,
        "repository_id": mirror.repository_id,
        "repository_name": mirror.repository.name if mirror.repository else None,
        "enabled": bool(mirror.enabled),
        "last_copy_at": _iso(mirror.last_copy_at),
        "last_copy_status": mirror.last_copy_status,
        "last_copy_error": mirror.last_copy_error,
    }


def destination_to_dict(destination: NotificationDestination) -> Dict[str, Any]:
    return {
        "id": destination.id,
        "name": destination.name,
        "enabled": bool(destination.enabled),
        "type": destination.type,
        "config": mask_config(destination.config),
        "created_at": _iso(destination.created_at),
        "updated_at": _iso(destination.updated_at),
    }


def assignment_to_dict(assignment: ScheduleNotification) -> Dict[str, Any]:
    return {
        "schedule_id": assignment.schedule_id,
        "destination_id": assignment.destination_id,
        "destination_name": assignment.destination.name if assignment.destination else None,
        "notify_on_start": bool(assignment.notify_on_start),
        "notify_on_success": bool(assignment.notify_on_success),
        "notify_on_warning": bool(assignment.notify_on_warning),
        "notify_on_failure": bool(assignment.notify_on_failure),
    }
