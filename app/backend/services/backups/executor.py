"""Execution engine for scheduled volume backups.

This module contains the orchestration to:
- Execute a schedule (mount the volume, run restic backup, apply retention)
- Select the schedules that are due (scheduler tick)
- Copy fresh snapshots to mirror repositories
- Stop a running backup

At most one execution per schedule is in flight at any time. The `running`
map is checked and updated without an intervening await, which is what makes
the guarantee hold on a single event loop.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Dict, List, Optional, Set

from sqlalchemy import select, update

from backend.core.errors import (
    BackupEngineError,
    BadRequestError,
    ConflictError,
    EXIT_CODE_STOPPED,
    NotFoundError,
    ResticError,
    ServiceError,
    to_message,
)
from backend.core.events import (
    BACKUP_COMPLETED,
    BACKUP_PROGRESS,
    BACKUP_STARTED,
    MIRROR_COMPLETED,
    MIRROR_STARTED,
    EventBus,
)
from backend.core.repository_mutex import RepositoryMutex
from backend.database.sql_handler import SQLHandler
from backend.services.backups.compatibility import check_mirror_compatibility, incompatible_mirror_message
from backend.services.backups.schedule_timing import compute_next_run, is_due
from backend.services.notifications.notification_service import NotificationService
from backend.services.restic import ResticService, retention_from_dict
from backend.services.secrets import SecretResolver
from backend.services.volumes.backends import MOUNTED
from backend.services.volumes.volume_service import VolumeService
from backend.utils.spawn import CancelToken
from models.sql.backup_automation import BackupSchedule, ScheduleMirror


logger = logging.getLogger(__name__)

SUCCESS = "success"
WARNING = "warning"
ERROR = "error"
STOPPED = "stopped"
IN_PROGRESS = "in_progress"

STOPPED_MESSAGE = "Backup was stopped by user"
INTERRUPTED_MESSAGE = "Backup was interrupted by a server restart"

_NOTIFICATION_EVENTS = {
    SUCCESS: "success",
    WARNING: "warning",
    ERROR: "failure",
    STOPPED: "failure",
}


@dataclass
class BackupOutcome:
    status: str
    error: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None

    @property
    def snapshot_id(self) -> Optional[str]:
        return (self.summary or {}).get("snapshot_id")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BackupExecutionEngine:
    """Execute backup schedules.

    Args:
        handler: Initialized SQL handler.
        volumes: Volume service (mount resolution and source paths).
        restic: restic command layer.
        mutex: Repository lock registry.
        events: Event bus for backup and mirror events.
        notifications: Notification dispatcher.
        secrets: Secret resolver for mirror compatibility checks.
        timezone: Timezone cron expressions are evaluated in.
        progress_interval: Minimum seconds between two progress events.
    """

    def __init__(
        self,
        handler: SQLHandler,
        *,
        volumes: VolumeService,
        restic: ResticService,
        mutex: RepositoryMutex,
        events: EventBus,
        notifications: NotificationService,
        secrets: SecretResolver,
        timezone: str = "UTC",
        progress_interval: float = 1.0,
    ):
        self.handler = handler
        self.volumes = volumes
        self.restic = restic
        self.mutex = mutex
        self.events = events
        self.notifications = notifications
        self.secrets = secrets
        self.timezone = timezone
        self.progress_interval = progress_interval

        self.running: Dict[int, CancelToken] = {}
        self._tasks: Set[asyncio.Task] = set()

    # -- helpers -------------------------------------------------------------

    async def _load(self, schedule_id: int) -> BackupSchedule:
        async with self.handler.AsyncSessionLocal() as session:
            schedule = await session.get(BackupSchedule, schedule_id)
        if schedule is None:
            raise NotFoundError("Backup schedule not found")
        return schedule

    async def _update_schedule(self, schedule_id: int, **values: Any) -> None:
        async with self.handler.AsyncSessionLocal() as session:
            await session.execute(update(BackupSchedule).where(BackupSchedule.id == schedule_id).values(**values))
            await session.commit()

    def _next_run(self, cron_expression: str) -> datetime:
        now = _now()
        try:
            return compute_next_run(cron_expression, reference=now, tz=self.timezone)
        except ValueError:
            logger.error("Failed to compute next run for cron expression %r; retrying in one minute", cron_expression)
            return now + timedelta(minutes=1)

    def _detach(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Detached task %s", name)
        return task

    def _notify(self, schedule_id: int, event: str, context: Dict[str, Any]) -> None:
        self._detach(
            self.notifications.send_backup_notification(schedule_id, event, context),
            name=f"notify:{schedule_id}:{event}",
        )

    # -- queries -------------------------------------------------------------

    def is_running(self, schedule_id: int) -> bool:
        return schedule_id in self.running

    async def get_schedules_to_execute(self) -> List[int]:
        """Return ids of enabled schedules whose next run is unset or due."""

        now = _now()
        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(
                select(BackupSchedule.id, BackupSchedule.next_backup_at)
                .where(BackupSchedule.enabled.is_(True))
                .order_by(BackupSchedule.sort_order, BackupSchedule.id)
            )
            rows = result.all()
        return [row.id for row in rows if is_due(row.next_backup_at, now=now)]

    # -- execution -----------------------------------------------------------

    def dispatch(self, schedule_id: int, *, manual: bool = False) -> asyncio.Task:
        """Run `execute_backup` as a detached task; failures are logged."""

        async def _run() -> None:
            try:
                await self.execute_backup(schedule_id, manual=manual)
            except ServiceError as exc:
                logger.warning("Backup schedule %s was not executed: %s", schedule_id, to_message(exc))
            except Exception:
                logger.exception("Backup execution failed for schedule %s", schedule_id)

        return self._detach(_run(), name=f"backup:{schedule_id}")

    async def execute_backup(self, schedule_id: int, manual: bool = False) -> Optional[str]:
        """Execute a schedule.

        Args:
            schedule_id: Schedule id.
            manual: Manual triggers also run disabled schedules.

        Returns:
            Optional[str]: Final status, or None when the run was skipped.

        Raises:
            NotFoundError: Unknown schedule.
        """

        schedule = await self._load(schedule_id)

        if not schedule.enabled and not manual:
            logger.info("Backup schedule %s is disabled. Skipping execution.", schedule_id)
            return None

        if schedule_id in self.running:
            logger.info("Backup schedule %s is already in progress. Skipping execution.", schedule_id)
            return None
        token = CancelToken()
        self.running[schedule_id] = token

        volume = schedule.volume
        repository = schedule.repository
        context = {
            "schedule_name": schedule.name,
            "volume_name": volume.name,
            "repository_name": repository.name,
        }
        started = _now()

        try:
            await self._update_schedule(schedule_id, last_backup_status=IN_PROGRESS, last_backup_error=None)
            logger.info("Starting backup for volume %s to repository %s", volume.name, repository.name)
            self.events.emit(BACKUP_STARTED, {"schedule_id": schedule_id, **context})
            self._notify(schedule_id, "start", context)

            try:
                outcome = await self._run_backup(schedule, token)
            except (BackupEngineError, ServiceError, OSError, ValueError) as exc:
                logger.error(
                    "Backup failed for volume %s to repository %s: %s",
                    volume.name,
                    repository.name,
                    to_message(exc),
                )
                outcome = BackupOutcome(ERROR, to_message(exc))
            except Exception as exc:
                logger.exception(
                    "Unexpected error during backup of volume %s to repository %s", volume.name, repository.name
                )
                outcome = BackupOutcome(ERROR, to_message(exc))

            finished = _now()
            await self._update_schedule(
                schedule_id,
                last_backup_at=finished,
                last_backup_status=outcome.status,
                last_backup_error=outcome.error,
                next_backup_at=self._next_run(schedule.cron_expression),
            )
        finally:
            self.running.pop(schedule_id, None)

        if outcome.status == SUCCESS:
            logger.info("Backup completed successfully for volume %s to repository %s", volume.name, repository.name)
        elif outcome.status == WARNING:
            logger.warning("Backup completed with warnings for volume %s to repository %s", volume.name, repository.name)

        self.events.emit(BACKUP_COMPLETED, {"schedule_id": schedule_id, "status": outcome.status, **context})

        summary = outcome.summary or {}
        self._notify(
            schedule_id,
            _NOTIFICATION_EVENTS[outcome.status],
            {
                **context,
                "error": outcome.error,
                "duration": (finished - started).total_seconds(),
                "files_processed": summary.get("total_files_processed"),
                "bytes_processed": summary.get("total_bytes_processed"),
                "snapshot_id": outcome.snapshot_id,
            },
        )

        if outcome.status in (SUCCESS, WARNING):
            await self._copy_to_mirrors(schedule, outcome.snapshot_id)

        return outcome.status

    async def _run_backup(self, schedule: BackupSchedule, token: CancelToken) -> BackupOutcome:
        volume = schedule.volume
        repository = schedule.repository

        mount = await self.volumes.ensure_mounted(volume)
        if mount.status != MOUNTED:
            raise BadRequestError(f"Volume is not mounted: {mount.error or mount.status}")

        source = self.volumes.volume_path(volume)
        policy = retention_from_dict(schedule.retention_policy)

        def on_progress(progress: Dict[str, Any]) -> None:
            self.events.emit(
                BACKUP_PROGRESS,
                {
                    "schedule_id": schedule.id,
                    "volume_name": volume.name,
                    "repository_name": repository.name,
                    **progress,
                },
            )

        async with self.mutex.exclusive(repository.id, "backup"):
            try:
                result = await self.restic.backup(
                    repository.config,
                    source,
                    tags=[schedule.short_id],
                    compression_mode=repository.compression_mode or "auto",
                    one_file_system=bool(schedule.one_file_system),
                    include=schedule.include_patterns or (),
                    exclude=schedule.exclude_patterns or (),
                    exclude_if_present=schedule.exclude_if_present or (),
                    cancel=token,
                    on_progress=on_progress,
                    progress_interval=self.progress_interval,
                )
            except ResticError as exc:
                if exc.code == EXIT_CODE_STOPPED or token.cancelled:
                    logger.info("Backup for schedule %s was stopped", schedule.id)
                    return BackupOutcome(STOPPED, STOPPED_MESSAGE)
                return BackupOutcome(ERROR, to_message(exc))

            if result.exit_code == 0:
                outcome = BackupOutcome(SUCCESS, None, result.summary)
            else:
                outcome = BackupOutcome(WARNING, result.stderr.strip() or None, result.summary)

            if policy is not None:
                try:
                    await self.restic.forget(repository.config, policy, tag=schedule.short_id)
                except (BackupEngineError, OSError) as exc:
                    note = f"Retention policy could not be applied: {to_message(exc)}"
                    logger.warning("Schedule %s: %s", schedule.id, note)
                    outcome.error = f"{outcome.error}\n{note}" if outcome.error else note

        return outcome

    # -- mirrors -------------------------------------------------------------

    async def _enabled_mirrors(self, schedule_id: int) -> List[ScheduleMirror]:
        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(
                select(ScheduleMirror)
                .where(ScheduleMirror.schedule_id == schedule_id, ScheduleMirror.enabled.is_(True))
                .order_by(ScheduleMirror.id)
            )
            return list(result.scalars().unique().all())

    async def _record_mirror(self, mirror_id: int, *, status: str, error: Optional[str]) -> None:
        async with self.handler.AsyncSessionLocal() as session:
            await session.execute(
                update(ScheduleMirror)
                .where(ScheduleMirror.id == mirror_id)
                .values(last_copy_at=_now(), last_copy_status=status, last_copy_error=error)
            )
            await session.commit()

    async def _copy_to_mirrors(self, schedule: BackupSchedule, snapshot_id: Optional[str]) -> None:
        mirrors = await self._enabled_mirrors(schedule.id)
        for mirror in mirrors:
            await self._copy_to_mirror(schedule, mirror, snapshot_id)

    async def _copy_to_mirror(self, schedule: BackupSchedule, mirror: ScheduleMirror, snapshot_id: Optional[str]) -> None:
        source = schedule.repository
        target = mirror.repository
        payload = {
            "schedule_id": schedule.id,
            "repository_id": target.id,
            "repository_name": target.name,
        }

        try:
            compatibility = check_mirror_compatibility(source.config, target.config, target.id, self.secrets)
        except (ServiceError, ValueError) as exc:
            await self._record_mirror(mirror.id, status=ERROR, error=to_message(exc))
            logger.error("Mirror %s for schedule %s skipped: %s", target.name, schedule.id, to_message(exc))
            return

        if not compatibility.compatible:
            message = incompatible_mirror_message(target.name, source.type, target.type)
            await self._record_mirror(mirror.id, status=ERROR, error=message)
            logger.warning("Mirror %s for schedule %s skipped: %s", target.name, schedule.id, compatibility.reason)
            return

        self.events.emit(MIRROR_STARTED, payload)
        logger.info("Copying snapshot of schedule %s to mirror %s", schedule.id, target.name)

        # Locks are always taken in repository id order.
        locks = sorted(
            [
                (source.id, self.mutex.shared, f"mirror_source:{schedule.short_id}"),
                (target.id, self.mutex.exclusive, f"mirror:{schedule.short_id}"),
            ],
            key=lambda item: item[0],
        )

        status, error = SUCCESS, None
        try:
            async with AsyncExitStack() as stack:
                for repository_id, acquire, operation in locks:
                    await stack.enter_async_context(acquire(repository_id, operation))
                await self.restic.copy(source.config, target.config, tag=schedule.short_id, snapshot_id=snapshot_id)
        except (BackupEngineError, ServiceError, OSError) as exc:
            status, error = ERROR, to_message(exc)
            logger.error("Mirror copy to %s failed for schedule %s: %s", target.name, schedule.id, error)

        await self._record_mirror(mirror.id, status=status, error=error)
        self.events.emit(MIRROR_COMPLETED, {**payload, "status": status, "error": error})

    # -- control -------------------------------------------------------------

    async def stop_backup(self, schedule_id: int) -> None:
        """Cancel a running backup; the engine then records `stopped`.

        Raises:
            NotFoundError: Unknown schedule.
            ConflictError: Nothing is running for the schedule.
        """

        await self._load(schedule_id)
        token = self.running.get(schedule_id)
        if token is None:
            raise ConflictError("No backup is currently running for this schedule")

        logger.info("Stopping backup for schedule %s", schedule_id)
        token.cancel()

    async def run_forget(self, schedule_id: int) -> Dict[str, Any]:
        """Apply the schedule's retention policy now."""

        schedule = await self._load(schedule_id)
        try:
            policy = retention_from_dict(schedule.retention_policy)
        except ValueError as exc:
            raise BadRequestError(f"Invalid retention policy: {exc}") from exc
        if policy is None:
            raise BadRequestError("No retention policy configured for this schedule")

        logger.info("Manually running retention policy (forget) for schedule %s", schedule_id)
        async with self.mutex.exclusive(schedule.repository_id, "forget"):
            await self.restic.forget(schedule.repository.config, policy, tag=schedule.short_id)
        logger.info("Retention policy applied successfully for schedule %s", schedule_id)
        return {"success": True}

    async def mark_stale_in_progress(self) -> int:
        """Mark schedules left `in_progress` by a previous process as failed."""

        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(
                update(BackupSchedule)
                .where(BackupSchedule.last_backup_status == IN_PROGRESS)
                .values(last_backup_status=ERROR, last_backup_error=INTERRUPTED_MESSAGE)
            )
            await session.commit()
        count = result.rowcount or 0
        if count:
            logger.warning("Marked %d interrupted backup(s) as failed", count)
        return count

    async def cancel_all(self) -> None:
        """Cancel every running backup and wait for detached tasks to settle."""

        for schedule_id, token in list(self.running.items()):
            logger.info("Cancelling backup for schedule %s", schedule_id)
            token.cancel()

        await self.wait_for_tasks()

    async def wait_for_tasks(self) -> None:
        """Wait until every detached task (backups, notifications) has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
