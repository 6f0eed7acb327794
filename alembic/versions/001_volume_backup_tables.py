"""Create volume backup tables.

Revision ID: 001_volume_backup_tables
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001_volume_backup_tables"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create tables for volumes, repositories, schedules, mirrors and notifications."""

    op.create_table(
        "volumes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("short_id", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="unmounted"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_health_check", sa.DateTime(timezone=True), nullable=True),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("auto_remount", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_volumes_short_id"), "volumes", ["short_id"], unique=True)
    op.create_index(op.f("ix_volumes_name"), "volumes", ["name"], unique=True)

    op.create_table(
        "repositories",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("short_id", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("compression_mode", sa.String(length=16), nullable=False, server_default="auto"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="unknown"),
        sa.Column("last_checked", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_repositories_short_id"), "repositories", ["short_id"], unique=True)
    op.create_index(op.f("ix_repositories_name"), "repositories", ["name"], unique=True)

    op.create_table(
        "backup_schedules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("short_id", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("volume_id", sa.Integer(), nullable=False),
        sa.Column("repository_id", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("cron_expression", sa.String(length=128), nullable=False),
        sa.Column("retention_policy", sa.JSON(), nullable=True),
        sa.Column("exclude_patterns", sa.JSON(), nullable=False),
        sa.Column("exclude_if_present", sa.JSON(), nullable=False),
        sa.Column("include_patterns", sa.JSON(), nullable=False),
        sa.Column("one_file_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_backup_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_backup_status", sa.String(length=32), nullable=True),
        sa.Column("last_backup_error", sa.Text(), nullable=True),
        sa.Column("next_backup_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["volume_id"], ["volumes.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["repository_id"], ["repositories.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_index(op.f("ix_backup_schedules_short_id"), "backup_schedules", ["short_id"], unique=True)
    op.create_index(op.f("ix_backup_schedules_volume_id"), "backup_schedules", ["volume_id"], unique=False)
    op.create_index(op.f("ix_backup_schedules_repository_id"), "backup_schedules", ["repository_id"], unique=False)
    op.create_index(op.f("ix_backup_schedules_next_backup_at"), "backup_schedules", ["next_backup_at"], unique=False)

    op.create_table(
        "schedule_mirrors",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("schedule_id", sa.Integer(), nullable=False),
        sa.Column("repository_id", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_copy_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_copy_status", sa.String(length=32), nullable=True),
        sa.Column("last_copy_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["schedule_id"], ["backup_schedules.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["repository_id"], ["repositories.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("schedule_id", "repository_id", name="uq_schedule_mirror"),
    )
    op.create_index(op.f("ix_schedule_mirrors_schedule_id"), "schedule_mirrors", ["schedule_id"], unique=False)

    op.create_table(
        "notification_destinations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "schedule_notifications",
        sa.Column("schedule_id", sa.Integer(), nullable=False),
        sa.Column("destination_id", sa.Integer(), nullable=False),
        sa.Column("notify_on_start", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notify_on_success", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notify_on_warning", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_on_failure", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["schedule_id"], ["backup_schedules.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["destination_id"], ["notification_destinations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("schedule_id", "destination_id"),
    )


def downgrade() -> None:
    """Drop volume backup tables."""

    op.drop_table("schedule_notifications")
    op.drop_table("notification_destinations")

    op.drop_index(op.f("ix_schedule_mirrors_schedule_id"), table_name="schedule_mirrors")
    op.drop_table("schedule_mirrors")

    op.drop_index(op.f("ix_backup_schedules_next_backup_at"), table_name="backup_schedules")
    op.drop_index(op.f("ix_backup_schedules_repository_id"), table_name="backup_schedules")
    op.drop_index(op.f("ix_backup_schedules_volume_id"), table_name="backup_schedules")
    op.drop_index(op.f("ix_backup_schedules_short_id"), table_name="backup_schedules")
    op.drop_table("backup_schedules")

    op.drop_index(op.f("ix_repositories_name"), table_name="repositories")
    op.drop_index(op.f("ix_repositories_short_id"), table_name="repositories")
    op.drop_table("repositories")

    op.drop_index(op.f("ix_volumes_name"), table_name="volumes")
    op.drop_index(op.f("ix_volumes_short_id"), table_name="volumes")
    op.drop_table("volumes")
