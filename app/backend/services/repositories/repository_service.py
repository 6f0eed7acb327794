"""Repository service.

Every restic call against a repository goes through the repository mutex:
read-only queries take a shared lock, anything that writes to (or may
conflict with writes to) the repository takes an exclusive one.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import delete, or_, select, update

from api.logging_config import get_logger
from backend.core.errors import (
    BackupEngineError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    ServiceError,
    to_message,
)
from backend.core.repository_mutex import RepositoryMutex
from backend.database.sql_handler import SQLHandler
from backend.services.restic import ResticService
from backend.services.secrets import SecretResolver
from backend.services.serializers import repository_to_dict
from backend.utils.ids import generate_short_id, is_valid_short_id
from models.configs import LocalRepositoryConfig, parse_repository_config, seal_config
from models.sql.backup_automation import Repository


logger = get_logger(__name__)

COMPRESSION_MODES = ("auto", "off", "max")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RepositoryService:
    """Service for managing restic repositories.

    Args:
        handler: Initialized SQL handler.
        restic: restic command layer.
        mutex: Repository lock registry.
        secrets: Secret resolver used to seal credentials.
    """

    def __init__(self, handler: SQLHandler, restic: ResticService, mutex: RepositoryMutex, secrets: SecretResolver):
        self.handler = handler
        self.restic = restic
        self.mutex = mutex
        self.secrets = secrets

    async def _find(self, session, id_or_short_id: str) -> Repository:
        result = await session.execute(
            select(Repository).where(or_(Repository.id == id_or_short_id, Repository.short_id == id_or_short_id))
        )
        repository = result.scalars().first()
        if repository is None:
            raise NotFoundError("Repository not found")
        return repository

    async def get_repository_model(self, id_or_short_id: str) -> Repository:
        async with self.handler.AsyncSessionLocal() as session:
            return await self._find(session, id_or_short_id)

    async def _set_status(self, repository_id: str, *, status: str, error: Optional[str]) -> None:
        async with self.handler.AsyncSessionLocal() as session:
            await session.execute(
                update(Repository)
                .where(Repository.id == repository_id)
                .values(status=status, last_checked=_now(), last_error=error)
            )
            await session.commit()

    async def list_repositories(self) -> List[Dict[str, Any]]:
        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(select(Repository).order_by(Repository.name))
            return [repository_to_dict(r) for r in result.scalars().all()]

    async def list_repository_models(self) -> List[Repository]:
        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(select(Repository))
            return list(result.scalars().all())

    async def get_repository(self, id_or_short_id: str) -> Dict[str, Any]:
        repository = await self.get_repository_model(id_or_short_id)
        data = repository_to_dict(repository)
        lock = self.mutex.get_lock_info(repository.id)
        data["lock"] = (
            {"mode": lock.mode, "holders": lock.holders, "waiting": lock.waiting} if lock is not None else None
        )
        return data

    async def _probe(self, config) -> bool:
        try:
            await self.restic.snapshots(config)
        except (BackupEngineError, ServiceError, OSError) as exc:
            logger.debug("Repository probe failed: %s", to_message(exc))
            return False
        return True

    async def create_repository(
        self,
        name: str,
        config: Any,
        *,
        compression_mode: str = "auto",
        short_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a repository, initializing it or adopting an existing one.

        The location is probed with `restic snapshots` first. A new repository
        must not exist yet; an adopted one (`is_existing_repository`) must be
        accessible.

        Raises:
            BadRequestError: Invalid input or an inaccessible adopted repository.
            ConflictError: Name or short id in use, or a repository already
                exists at the location.
            BackupEngineError: When `restic init` fails (the row is removed).
        """

        name = (name or "").strip()
        if not name:
            raise BadRequestError("Repository name is required")
        if compression_mode not in COMPRESSION_MODES:
            raise BadRequestError(f"Invalid compression mode: {compression_mode}")

        try:
            parsed = parse_repository_config(config)
        except ValidationError as exc:
            raise BadRequestError(f"Invalid repository configuration: {exc.errors()[0].get('msg', exc)}") from exc

        async with self.handler.AsyncSessionLocal() as session:
            if short_id:
                if not is_valid_short_id(short_id):
                    raise BadRequestError(f"Invalid short id format: {short_id!r}. Must be 8 base64url characters.")
                in_use = await session.execute(select(Repository.name).where(Repository.short_id == short_id))
                row = in_use.first()
                if row is not None:
                    raise ConflictError(f"Repository short id {short_id!r} is already in use by repository {row[0]!r}")
            name_taken = await session.execute(select(Repository.id).where(Repository.name == name))
            if name_taken.first() is not None:
                raise ConflictError("A repository with this name already exists")

        short_id = short_id or generate_short_id()
        if isinstance(parsed, LocalRepositoryConfig) and not parsed.is_existing_repository:
            parsed = parsed.model_copy(update={"name": short_id})

        sealed = seal_config(parsed, self.secrets.seal_secret)

        exists = await self._probe(sealed)
        if exists and not parsed.is_existing_repository:
            raise ConflictError(
                "A restic repository already exists at this location. "
                'If you want to use the existing repository, set "is_existing_repository": true in the config.'
            )
        if not exists and parsed.is_existing_repository:
            raise BadRequestError(
                "Cannot access existing repository. Verify the path/credentials are correct and the repository exists."
            )

        repository_id = str(uuid.uuid4())
        async with self.handler.AsyncSessionLocal() as session:
            session.add(
                Repository(
                    id=repository_id,
                    short_id=short_id,
                    name=name,
                    type=parsed.backend,
                    config=sealed.model_dump(mode="json"),
                    compression_mode=compression_mode,
                    status="unknown",
                )
            )
            await session.commit()

        if not exists:
            try:
                await self.restic.init(sealed)
            except (BackupEngineError, ServiceError, OSError) as exc:
                async with self.handler.AsyncSessionLocal() as session:
                    await session.execute(delete(Repository).where(Repository.id == repository_id))
                    await session.commit()
                logger.error("Failed to initialize repository %s: %s", name, to_message(exc))
                raise BackupEngineError(f"Failed to initialize repository: {to_message(exc)}") from exc

        await self._set_status(repository_id, status="healthy", error=None)
        logger.info("Created repository %s (%s)", name, parsed.backend)
        return await self.get_repository(repository_id)

    async def update_repository(
        self,
        id_or_short_id: str,
        *,
        name: Optional[str] = None,
        compression_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        repository = await self.get_repository_model(id_or_short_id)

        values: Dict[str, Any] = {}
        if name is not None and name.strip() and name.strip() != repository.name:
            values["name"] = name.strip()
        if compression_mode is not None:
            if compression_mode not in COMPRESSION_MODES:
                raise BadRequestError(f"Invalid compression mode: {compression_mode}")
            values["compression_mode"] = compression_mode

        if values:
            async with self.handler.AsyncSessionLocal() as session:
                if "name" in values:
                    taken = await session.execute(
                        select(Repository.id).where(Repository.name == values["name"], Repository.id != repository.id)
                    )
                    if taken.first() is not None:
                        raise ConflictError("A repository with this name already exists")
                await session.execute(update(Repository).where(Repository.id == repository.id).values(**values))
                await session.commit()

        return await self.get_repository(repository.id)

    async def delete_repository(self, id_or_short_id: str) -> None:
        """Delete the repository row. Data in the repository itself is left untouched."""

        repository = await self.get_repository_model(id_or_short_id)
        async with self.handler.AsyncSessionLocal() as session:
            await session.execute(delete(Repository).where(Repository.id == repository.id))
            await session.commit()
        logger.info("Deleted repository %s (remote data kept)", repository.name)

    async def list_snapshots(self, id_or_short_id: str, *, backup_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List snapshots, optionally only those tagged with a schedule short id."""

        repository = await self.get_repository_model(id_or_short_id)
        async with self.mutex.shared(repository.id, "snapshots"):
            return await self.restic.snapshots(repository.config, tags=[backup_id] if backup_id else ())

    async def list_snapshot_files(
        self, id_or_short_id: str, snapshot_id: str, path: Optional[str] = None
    ) -> Dict[str, Any]:
        repository = await self.get_repository_model(id_or_short_id)
        async with self.mutex.shared(repository.id, f"ls:{snapshot_id}"):
            result = await self.restic.ls(repository.config, snapshot_id, path)

        snapshot = result["snapshot"]
        if not snapshot:
            raise NotFoundError("Snapshot not found or empty")

        return {
            "snapshot": {
                "id": snapshot.get("id"),
                "short_id": snapshot.get("short_id"),
                "time": snapshot.get("time"),
                "hostname": snapshot.get("hostname"),
                "paths": snapshot.get("paths", []),
            },
            "files": result["nodes"],
        }

    async def get_snapshot_details(self, id_or_short_id: str, snapshot_id: str) -> Dict[str, Any]:
        repository = await self.get_repository_model(id_or_short_id)
        async with self.mutex.shared(repository.id, f"snapshot_details:{snapshot_id}"):
            snapshots = await self.restic.snapshots(repository.config)

        for snapshot in snapshots:
            if snapshot_id in (snapshot.get("id"), snapshot.get("short_id")):
                return snapshot
        raise NotFoundError("Snapshot not found")

    async def restore_snapshot(
        self,
        id_or_short_id: str,
        snapshot_id: str,
        *,
        target_path: Optional[str] = None,
        include: Optional[List[str]] = None,
        exclude: Optional[List[str]] = None,
        exclude_xattr: Optional[List[str]] = None,
        delete: bool = False,
        overwrite: Optional[str] = None,
    ) -> Dict[str, Any]:
        repository = await self.get_repository_model(id_or_short_id)
        async with self.mutex.exclusive(repository.id, f"restore:{snapshot_id}"):
            summary = await self.restic.restore(
                repository.config,
                snapshot_id,
                target_path or "/",
                include=include or (),
                exclude=exclude or (),
                exclude_xattr=exclude_xattr or (),
                delete=delete,
                overwrite=overwrite,
            )
        return {
            "success": True,
            "message": "Snapshot restored successfully",
            "files_restored": summary.get("files_restored", 0),
            "files_skipped": summary.get("files_skipped", 0),
        }

    async def delete_snapshot(self, id_or_short_id: str, snapshot_id: str) -> None:
        repository = await self.get_repository_model(id_or_short_id)
        async with self.mutex.exclusive(repository.id, f"delete:{snapshot_id}"):
            await self.restic.delete_snapshot(repository.config, snapshot_id)

    async def check_health(self, id_or_short_id: str, *, wait: bool = True) -> Dict[str, Any]:
        """Run `restic check` under an exclusive lock and persist the outcome.

        Raises:
            LockUnavailableError: With `wait=False` while the repository is busy.
        """

        repository = await self.get_repository_model(id_or_short_id)
        async with self.mutex.exclusive(repository.id, "check", wait=wait):
            result = await self.restic.check(repository.config)
            await self._set_status(
                repository.id,
                status="error" if result.has_errors else "healthy",
                error=result.error,
            )
        return {"status": "error" if result.has_errors else "healthy", "last_error": result.error}

    async def doctor_repository(self, id_or_short_id: str) -> Dict[str, Any]:
        """Unlock, check, and repair the index when the check reports errors.

        Every step is recorded; the repository status reflects whether all
        steps succeeded.
        """

        repository = await self.get_repository_model(id_or_short_id)
        steps: List[Dict[str, Any]] = []

        def record(step: str, success: bool, output: Optional[str], error: Optional[str]) -> None:
            steps.append({"step": step, "success": success, "output": output, "error": error})

        async def run_check(step: str) -> bool:
            try:
                result = await self.restic.check(repository.config)
            except (BackupEngineError, ServiceError, OSError) as exc:
                record(step, False, None, to_message(exc))
                return True
            record(step, result.success, result.output, result.error)
            return result.has_errors

        async with self.mutex.exclusive(repository.id, "doctor"):
            try:
                unlocked = await self.restic.unlock(repository.config)
                record("unlock", True, unlocked["message"], None)
            except (BackupEngineError, ServiceError, OSError) as exc:
                record("unlock", False, None, to_message(exc))

            if await run_check("check"):
                try:
                    repaired = await self.restic.repair_index(repository.config)
                    record("repair_index", True, repaired["output"], None)
                except (BackupEngineError, ServiceError, OSError) as exc:
                    record("repair_index", False, None, to_message(exc))
                await run_check("recheck")

        succeeded = all(step["success"] for step in steps)
        first_error = next((step["error"] for step in steps if step["error"]), None)
        await self._set_status(repository.id, status="healthy" if succeeded else "error", error=first_error)

        return {"success": succeeded, "steps": steps}

    async def unlock_repository(self, id_or_short_id: str) -> Dict[str, Any]:
        repository = await self.get_repository_model(id_or_short_id)
        async with self.mutex.exclusive(repository.id, "unlock"):
            return await self.restic.unlock(repository.config)
