"""Backup automation models.

This module contains SQLAlchemy ORM models used to persist:
- Volumes (mounted sources that backups read from)
- Repositories (restic stores that backups write to)
- Backup schedules (volume + repository + cron expression)
- Schedule mirrors (secondary repositories receiving snapshot copies)
- Notification destinations and their per-schedule assignments
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from models.sql.base import Base


class Volume(Base):
    """A storage source mounted into the container.

    Attributes:
        id (int): Primary key.
        short_id (str): Short public identifier.
        name (str): Unique slug.
        type (str): Backend discriminator (directory|nfs|smb|webdav|rclone|sftp).
        status (str): mounted|unmounted|error.
        last_error (str): Last mount/health error message.
        last_health_check (datetime): Last time the mount table was inspected.
        config (dict): Backend configuration with sealed credentials.
        auto_remount (bool): Remount automatically when the health check fails.
    """

    __tablename__ = "volumes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    short_id = Column(String(16), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    type = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False, default="unmounted")
    last_error = Column(Text, nullable=True)
    last_health_check = Column(DateTime(timezone=True), nullable=True)
    config = Column(JSON, nullable=False, default=dict)
    auto_remount = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Repository(Base):
    """A restic repository.

    Attributes:
        id (str): Primary key UUID.
        short_id (str): Short public identifier (also the local repository directory name).
        name (str): Display name.
        type (str): Backend discriminator (local|s3|r2|gcs|azure|rest|sftp|rclone).
        config (dict): Backend configuration with sealed credentials.
        compression_mode (str): auto|off|max.
        status (str): healthy|error|unknown.
        last_checked (datetime): Last health check.
        last_error (str): Last check error.
    """

    __tablename__ = "repositories"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    short_id = Column(String(16), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    type = Column(String(32), nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    compression_mode = Column(String(16), nullable=False, default="auto")
    status = Column(String(32), nullable=False, default="unknown")
    last_checked = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class BackupSchedule(Base):
    """A schedule binding a volume to a repository.

    Attributes:
        id (int): Primary key.
        short_id (str): Short identifier used as the restic snapshot tag.
        name (str): Display name.
        volume_id (int): Source volume.
        repository_id (str): Destination repository.
        enabled (bool): Disabled schedules only run when triggered manually.
        cron_expression (str): Standard 5-field cron expression.
        retention_policy (dict): keep_last/keep_hourly/.../keep_within_duration.
        exclude_patterns (list): restic --exclude patterns.
        exclude_if_present (list): restic --exclude-if-present marker names.
        include_patterns (list): Paths (relative to the volume) passed via --files-from.
        one_file_system (bool): Pass --one-file-system.
        last_backup_at (datetime): End of the last run.
        last_backup_status (str): success|warning|error|stopped|in_progress.
        last_backup_error (str): Captured stderr or failure message.
        next_backup_at (datetime): Next due time.
    """

    __tablename__ = "backup_schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    short_id = Column(String(16), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False, unique=True)
    volume_id = Column(Integer, ForeignKey("volumes.id", ondelete="CASCADE"), nullable=False, index=True)
    repository_id = Column(String, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True)
    enabled = Column(Boolean, nullable=False, default=True)
    cron_expression = Column(String(128), nullable=False)
    retention_policy = Column(JSON, nullable=True)
    exclude_patterns = Column(JSON, nullable=False, default=list)
    exclude_if_present = Column(JSON, nullable=False, default=list)
    include_patterns = Column(JSON, nullable=False, default=list)
    one_file_system = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)

    last_backup_at = Column(DateTime(timezone=True), nullable=True)
    last_backup_status = Column(String(32), nullable=True)
    last_backup_error = Column(Text, nullable=True)
    next_backup_at = Column(DateTime(timezone=True), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    volume = relationship("Volume", lazy="joined")
    repository = relationship("Repository", lazy="joined")


class ScheduleMirror(Base):
    """A secondary repository receiving copies of a schedule's snapshots."""

    __tablename__ = "schedule_mirrors"
    __table_args__ = (UniqueConstraint("schedule_id", "repository_id", name="uq_schedule_mirror"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    schedule_id = Column(Integer, ForeignKey("backup_schedules.id", ondelete="CASCADE"), nullable=False, index=True)
    repository_id = Column(String, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    last_copy_at = Column(DateTime(timezone=True), nullable=True)
    last_copy_status = Column(String(32), nullable=True)
    last_copy_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    repository = relationship("Repository", lazy="joined")


class NotificationDestination(Base):
    """A place notifications are delivered to.

    Attributes:
        type (str): webhook|telegram.
        config (dict): Type specific settings (url, bot_token, chat_id, headers).
    """

    __tablename__ = "notification_destinations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    enabled = Column(Boolean, nullable=False, default=True)
    type = Column(String(32), nullable=False)
    config = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ScheduleNotification(Base):
    """Assignment of a notification destination to a schedule with event filters."""

    __tablename__ = "schedule_notifications"

    schedule_id = Column(Integer, ForeignKey("backup_schedules.id", ondelete="CASCADE"), primary_key=True)
    destination_id = Column(Integer, ForeignKey("notification_destinations.id", ondelete="CASCADE"), primary_key=True)
    notify_on_start = Column(Boolean, nullable=False, default=False)
    notify_on_success = Column(Boolean, nullable=False, default=False)
    notify_on_warning = Column(Boolean, nullable=False, default=True)
    notify_on_failure = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    destination = relationship("NotificationDestination", lazy="joined")
