"""Periodic jobs and their registration in the scheduler job table."""

from __future__ import annotations

from typing import TYPE_CHECKING

from backend.jobs.backup_execution import run_backup_execution
from backend.jobs.cleanup_dangling_mounts import run_cleanup_dangling_mounts
from backend.jobs.repository_healthchecks import run_repository_healthchecks
from backend.jobs.volume_healthchecks import run_volume_healthchecks

if TYPE_CHECKING:
    from backend.core.context import AppContext


JOB_TABLE = (
    ("backup-execution", "* * * * *", run_backup_execution),
    ("volume-healthchecks", "*/30 * * * *", run_volume_healthchecks),
    ("repository-healthchecks", "0 * * * *", run_repository_healthchecks),
    ("cleanup-dangling-mounts", "0 * * * *", run_cleanup_dangling_mounts),
)


def register_jobs(ctx: "AppContext") -> None:
    """Register every periodic job on `ctx.scheduler`, bound to `ctx`."""

    for job_id, cron_expression, run in JOB_TABLE:
        ctx.scheduler.build(job_id, lambda run=run: run(ctx)).schedule(cron_expression)


__all__ = [
    "JOB_TABLE",
    "register_jobs",
    "run_backup_execution",
    "run_cleanup_dangling_mounts",
    "run_repository_healthchecks",
    "run_volume_healthchecks",
]
