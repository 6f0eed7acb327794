"""Schedule CRUD, mirrors and notification assignments."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select, update

from api.logging_config import get_logger
from backend.core.errors import BadRequestError, ConflictError, NotFoundError
from backend.database.sql_handler import SQLHandler
from backend.services.backups.compatibility import check_mirror_compatibility, incompatible_mirror_message
from backend.services.backups.executor import BackupExecutionEngine
from backend.services.backups.schedule_timing import compute_next_run, validate_cron_expression
from backend.services.restic import retention_from_dict
from backend.services.secrets import SecretResolver
from backend.services.serializers import assignment_to_dict, mirror_to_dict, schedule_to_dict
from backend.utils.ids import generate_short_id
from models.sql.backup_automation import (
    BackupSchedule,
    NotificationDestination,
    Repository,
    ScheduleMirror,
    ScheduleNotification,
    Volume,
)


logger = get_logger(__name__)

_LIST_FIELDS = ("exclude_patterns", "exclude_if_present", "include_patterns")


def _clean_patterns(values: Optional[Iterable[str]]) -> List[str]:
    return [str(v).strip() for v in (values or []) if str(v).strip()]


def _validate_retention(policy: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    try:
        parsed = retention_from_dict(policy)
    except ValueError as exc:
        raise BadRequestError(f"Invalid retention policy: {exc}") from exc
    return parsed.to_dict() if parsed is not None else None


class ScheduleService:
    """Service for managing backup schedules.

    Args:
        handler: Initialized SQL handler.
        engine: Execution engine (queried for running state).
        secrets: Secret resolver for mirror compatibility checks.
        timezone: Timezone cron expressions are evaluated in.
    """

    def __init__(self, handler: SQLHandler, engine: BackupExecutionEngine, secrets: SecretResolver, *, timezone: str = "UTC"):
        self.handler = handler
        self.engine = engine
        self.secrets = secrets
        self.timezone = timezone

    def _to_dict(self, schedule: BackupSchedule) -> Dict[str, Any]:
        return schedule_to_dict(schedule, running=self.engine.is_running(schedule.id))

    def _validate_cron(self, cron_expression: str) -> str:
        try:
            return validate_cron_expression(cron_expression)
        except ValueError as exc:
            raise BadRequestError(f"Invalid cron expression: {exc}") from exc

    async def _get(self, session, schedule_id: int) -> BackupSchedule:
        schedule = await session.get(BackupSchedule, schedule_id)
        if schedule is None:
            raise NotFoundError("Backup schedule not found")
        return schedule

    async def list_schedules(self) -> List[Dict[str, Any]]:
        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(
                select(BackupSchedule).order_by(BackupSchedule.sort_order, BackupSchedule.id)
            )
            return [self._to_dict(s) for s in result.scalars().unique().all()]

    async def get_schedule(self, schedule_id: int) -> Dict[str, Any]:
        async with self.handler.AsyncSessionLocal() as session:
            return self._to_dict(await self._get(session, schedule_id))

    async def get_schedule_for_volume(self, volume_id: int) -> Optional[Dict[str, Any]]:
        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(select(BackupSchedule).where(BackupSchedule.volume_id == volume_id))
            schedule = result.scalars().first()
            return self._to_dict(schedule) if schedule else None

    async def create_schedule(
        self,
        *,
        name: str,
        volume_id: int,
        repository_id: str,
        cron_expression: str,
        enabled: bool = True,
        retention_policy: Optional[Dict[str, Any]] = None,
        exclude_patterns: Optional[List[str]] = None,
        exclude_if_present: Optional[List[str]] = None,
        include_patterns: Optional[List[str]] = None,
        one_file_system: bool = False,
    ) -> Dict[str, Any]:
        """Create a schedule; its first run is the next cron occurrence."""

        name = (name or "").strip()
        if not name:
            raise BadRequestError("Schedule name is required")
        cron_expression = self._validate_cron(cron_expression)
        retention = _validate_retention(retention_policy)

        async with self.handler.AsyncSessionLocal() as session:
            if await session.get(Volume, volume_id) is None:
                raise NotFoundError("Volume not found")
            if await session.get(Repository, repository_id) is None:
                raise NotFoundError("Repository not found")

            taken = await session.execute(select(BackupSchedule.id).where(BackupSchedule.name == name))
            if taken.first() is not None:
                raise ConflictError("A backup schedule with this name already exists")

            schedule = BackupSchedule(
                short_id=generate_short_id(),
                name=name,
                volume_id=volume_id,
                repository_id=repository_id,
                enabled=enabled,
                cron_expression=cron_expression,
                retention_policy=retention,
                exclude_patterns=_clean_patterns(exclude_patterns),
                exclude_if_present=_clean_patterns(exclude_if_present),
                include_patterns=_clean_patterns(include_patterns),
                one_file_system=one_file_system,
                next_backup_at=compute_next_run(cron_expression, tz=self.timezone),
            )
            session.add(schedule)
            await session.commit()
            schedule_id = schedule.id

        logger.info("Created backup schedule %s (%s)", name, cron_expression)
        return await self.get_schedule(schedule_id)

    async def update_schedule(self, schedule_id: int, **changes: Any) -> Dict[str, Any]:
        """Update a schedule.

        Accepted keys: name, repository_id, cron_expression, enabled,
        retention_policy, exclude_patterns, exclude_if_present,
        include_patterns, one_file_system, sort_order. A new cron expression
        recomputes `next_backup_at`.
        """

        values: Dict[str, Any] = {}
        async with self.handler.AsyncSessionLocal() as session:
            schedule = await self._get(session, schedule_id)

            name = changes.get("name")
            if name is not None and name.strip() and name.strip() != schedule.name:
                taken = await session.execute(
                    select(BackupSchedule.id).where(BackupSchedule.name == name.strip(), BackupSchedule.id != schedule_id)
                )
                if taken.first() is not None:
                    raise ConflictError("A backup schedule with this name already exists")
                values["name"] = name.strip()

            repository_id = changes.get("repository_id")
            if repository_id is not None and repository_id != schedule.repository_id:
                if await session.get(Repository, repository_id) is None:
                    raise NotFoundError("Repository not found")
                values["repository_id"] = repository_id

            cron_expression = changes.get("cron_expression")
            if cron_expression is not None:
                cron_expression = self._validate_cron(cron_expression)
                if cron_expression != schedule.cron_expression:
                    values["cron_expression"] = cron_expression
                    values["next_backup_at"] = compute_next_run(cron_expression, tz=self.timezone)

            if "retention_policy" in changes:
                values["retention_policy"] = _validate_retention(changes["retention_policy"])

            for field in _LIST_FIELDS:
                if changes.get(field) is not None:
                    values[field] = _clean_patterns(changes[field])

            for field in ("enabled", "one_file_system", "sort_order"):
                if changes.get(field) is not None:
                    values[field] = changes[field]

            if values.get("enabled") and schedule.next_backup_at is None and "next_backup_at" not in values:
                values["next_backup_at"] = compute_next_run(schedule.cron_expression, tz=self.timezone)

            if values:
                await session.execute(update(BackupSchedule).where(BackupSchedule.id == schedule_id).values(**values))
                await session.commit()

        return await self.get_schedule(schedule_id)

    async def delete_schedule(self, schedule_id: int) -> None:
        if self.engine.is_running(schedule_id):
            raise ConflictError("Cannot delete a schedule while its backup is running")
        async with self.handler.AsyncSessionLocal() as session:
            await self._get(session, schedule_id)
            await session.execute(delete(BackupSchedule).where(BackupSchedule.id == schedule_id))
            await session.commit()
        logger.info("Deleted backup schedule %s", schedule_id)

    # -- mirrors -------------------------------------------------------------

    async def list_mirrors(self, schedule_id: int) -> List[Dict[str, Any]]:
        async with self.handler.AsyncSessionLocal() as session:
            await self._get(session, schedule_id)
            result = await session.execute(
                select(ScheduleMirror).where(ScheduleMirror.schedule_id == schedule_id).order_by(ScheduleMirror.id)
            )
            return [mirror_to_dict(m) for m in result.scalars().unique().all()]

    async def get_mirror_compatibility(self, schedule_id: int) -> List[Dict[str, Any]]:
        """Report which repositories could receive copies of this schedule's snapshots."""

        async with self.handler.AsyncSessionLocal() as session:
            schedule = await self._get(session, schedule_id)
            result = await session.execute(select(Repository).where(Repository.id != schedule.repository_id))
            candidates = list(result.scalars().all())

        report = []
        for repository in candidates:
            compatibility = check_mirror_compatibility(
                schedule.repository.config, repository.config, repository.id, self.secrets
            )
            report.append(
                {
                    "repository_id": compatibility.repository_id,
                    "compatible": compatibility.compatible,
                    "reason": compatibility.reason,
                }
            )
        return report

    async def update_mirrors(self, schedule_id: int, mirrors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Replace the schedule's mirror set.

        Args:
            schedule_id: Schedule id.
            mirrors: Items with `repository_id` and optional `enabled`.

        Raises:
            BadRequestError: The primary repository is listed, or a mirror is
                incompatible with the primary repository.
            NotFoundError: Unknown schedule or repository.
        """

        async with self.handler.AsyncSessionLocal() as session:
            schedule = await self._get(session, schedule_id)
            primary = schedule.repository

            wanted: Dict[str, bool] = {}
            for item in mirrors:
                repository_id = item.get("repository_id")
                if repository_id == primary.id:
                    raise BadRequestError("Cannot add the primary repository as a mirror")
                repository = await session.get(Repository, repository_id)
                if repository is None:
                    raise NotFoundError(f"Repository not found: {repository_id}")

                compatibility = check_mirror_compatibility(primary.config, repository.config, repository.id, self.secrets)
                if not compatibility.compatible:
                    raise BadRequestError(incompatible_mirror_message(repository.name, primary.type, repository.type))
                wanted[repository.id] = bool(item.get("enabled", True))

            result = await session.execute(select(ScheduleMirror).where(ScheduleMirror.schedule_id == schedule_id))
            existing = {m.repository_id: m for m in result.scalars().unique().all()}

            for repository_id, mirror in existing.items():
                if repository_id not in wanted:
                    await session.delete(mirror)
                else:
                    mirror.enabled = wanted[repository_id]

            for repository_id, enabled in wanted.items():
                if repository_id not in existing:
                    session.add(ScheduleMirror(schedule_id=schedule_id, repository_id=repository_id, enabled=enabled))

            await session.commit()

        return await self.list_mirrors(schedule_id)

    # -- notifications -------------------------------------------------------

    async def list_notifications(self, schedule_id: int) -> List[Dict[str, Any]]:
        async with self.handler.AsyncSessionLocal() as session:
            await self._get(session, schedule_id)
            result = await session.execute(
                select(ScheduleNotification).where(ScheduleNotification.schedule_id == schedule_id)
            )
            return [assignment_to_dict(a) for a in result.scalars().unique().all()]

    async def update_notifications(self, schedule_id: int, assignments: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Replace the schedule's notification assignments."""

        async with self.handler.AsyncSessionLocal() as session:
            await self._get(session, schedule_id)

            for item in assignments:
                if await session.get(NotificationDestination, item.get("destination_id")) is None:
                    raise NotFoundError(f"Notification destination not found: {item.get('destination_id')}")

            await session.execute(delete(ScheduleNotification).where(ScheduleNotification.schedule_id == schedule_id))
            for item in assignments:
                session.add(
                    ScheduleNotification(
                        schedule_id=schedule_id,
                        destination_id=item["destination_id"],
                        notify_on_start=bool(item.get("notify_on_start", False)),
                        notify_on_success=bool(item.get("notify_on_success", False)),
                        notify_on_warning=bool(item.get("notify_on_warning", True)),
                        notify_on_failure=bool(item.get("notify_on_failure", True)),
                    )
                )
            await session.commit()

        return await self.list_notifications(schedule_id)
