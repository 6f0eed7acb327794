"""Application context.

Everything the service needs at runtime is built once by `build_app_context`
and handed to the API layer, the jobs and the runner explicitly. Nothing here
is a module level singleton.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from api.settings import Settings
from backend.core.events import EventBus
from backend.core.repository_mutex import RepositoryMutex
from backend.core.scheduler import Scheduler
from backend.database.sql_handler import SQLHandler
from backend.services.backups.executor import BackupExecutionEngine
from backend.services.backups.schedule_service import ScheduleService
from backend.services.notifications.notification_service import NotificationService
from backend.services.repositories.repository_service import RepositoryService
from backend.services.restic import ResticService
from backend.services.secrets import SecretResolver
from backend.services.volumes.backends import BackendRuntime, CommandRunner
from backend.services.volumes.volume_service import VolumeService
from backend.utils.spawn import run_command, spawn


@dataclass
class AppContext:
    settings: Settings
    db: SQLHandler
    secrets: SecretResolver
    events: EventBus
    mutex: RepositoryMutex
    runtime: BackendRuntime
    restic: ResticService
    volumes: VolumeService
    repositories: RepositoryService
    notifications: NotificationService
    engine: BackupExecutionEngine
    schedules: ScheduleService
    scheduler: Scheduler


def build_app_context(
    settings: Settings,
    *,
    runner: CommandRunner = run_command,
    spawn_fn: Any = spawn,
    platform: Optional[str] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AppContext:
    """Wire every component from `settings`.

    The database handler is created but not initialized; `startup()` (or the
    caller) must `await ctx.db.initialize()` before any service is used.

    Args:
        settings: Application settings.
        runner: OS command runner handed to the volume backends.
        spawn_fn: Subprocess spawner used by the restic layer.
        platform: Override of `sys.platform` for the backends' Linux check.
        http_transport: httpx transport for notification delivery.

    Returns:
        AppContext: The wired context.
    """

    db = SQLHandler(settings.DATABASE_URL, echo=settings.DEBUG and settings.LOG_LEVEL.upper() == "TRACE")
    secrets = SecretResolver(settings.get_config_encryption_key, secrets_dir=settings.SECRETS_DIR)
    events = EventBus()
    mutex = RepositoryMutex()

    overrides = {"runner": runner}
    if platform is not None:
        overrides["platform"] = platform
    runtime = BackendRuntime.from_settings(settings, secrets, **overrides)

    restic = ResticService(
        secrets,
        pass_file=settings.RESTIC_PASS_FILE,
        cache_dir=settings.RESTIC_CACHE_DIR,
        repository_base=settings.REPOSITORY_BASE,
        hostname=settings.RESTIC_HOSTNAME,
        spawn_fn=spawn_fn,
        path_env=settings.get_restic_env_path(),
    )

    volumes = VolumeService(db, runtime, secrets, events, mount_base=settings.VOLUME_MOUNT_BASE)
    repositories = RepositoryService(db, restic, mutex, secrets)
    notifications = NotificationService(db, secrets, transport=http_transport)
    engine = BackupExecutionEngine(
        db,
        volumes=volumes,
        restic=restic,
        mutex=mutex,
        events=events,
        notifications=notifications,
        secrets=secrets,
        timezone=settings.SCHEDULER_TIMEZONE,
        progress_interval=settings.PROGRESS_THROTTLE_SECONDS,
    )
    schedules = ScheduleService(db, engine, secrets, timezone=settings.SCHEDULER_TIMEZONE)

    return AppContext(
        settings=settings,
        db=db,
        secrets=secrets,
        events=events,
        mutex=mutex,
        runtime=runtime,
        restic=restic,
        volumes=volumes,
        repositories=repositories,
        notifications=notifications,
        engine=engine,
        schedules=schedules,
        scheduler=Scheduler(timezone=settings.SCHEDULER_TIMEZONE),
    )
