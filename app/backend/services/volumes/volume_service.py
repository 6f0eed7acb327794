"""Volume service.

Volumes are addressed by their slug name. Every status change is persisted with
a single UPDATE keyed by the volume id.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import delete, or_, and_, select, update

from api.logging_config import get_logger
from backend.core.errors import BadRequestError, ConflictError, NotFoundError, to_message
from backend.core.events import VOLUME_MOUNTED, VOLUME_STATUS_CHANGED, VOLUME_UNMOUNTED, VOLUME_UPDATED, EventBus
from backend.database.sql_handler import SQLHandler
from backend.services.secrets import SecretResolver
from backend.services.serializers import volume_to_dict
from backend.services.volumes.backends import (
    MOUNTED,
    UNMOUNTED,
    BackendRuntime,
    OperationResult,
    VolumeBackend,
    build_volume_backend,
    get_volume_path,
)
from backend.utils.ids import generate_short_id, slugify
from models.configs import parse_volume_config, seal_config
from models.sql.backup_automation import Volume


logger = get_logger(__name__)

STATFS_TIMEOUT = 1.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


class VolumeService:
    """Service for managing volumes and their mounts.

    Args:
        handler: Initialized SQL handler.
        runtime: Host facilities handed to volume backends.
        secrets: Secret resolver used to seal credentials.
        events: Event bus for `volume:*` events.
        mount_base: Root directory for mounted volumes.
    """

    def __init__(
        self,
        handler: SQLHandler,
        runtime: BackendRuntime,
        secrets: SecretResolver,
        events: EventBus,
        *,
        mount_base: str,
    ):
        self.handler = handler
        self.runtime = runtime
        self.secrets = secrets
        self.events = events
        self.mount_base = mount_base

    def backend_for(self, volume: Volume) -> VolumeBackend:
        return build_volume_backend(volume, self.runtime, mount_base=self.mount_base)

    def volume_path(self, volume: Volume) -> str:
        return get_volume_path(volume, self.mount_base)

    def _parse_config(self, config: Any):
        try:
            return parse_volume_config(config)
        except ValidationError as exc:
            raise BadRequestError(f"Invalid volume configuration: {exc.errors()[0].get('msg', exc)}") from exc

    async def _get(self, session, name: str) -> Volume:
        result = await session.execute(select(Volume).where(Volume.name == name))
        volume = result.scalars().first()
        if volume is None:
            raise NotFoundError("Volume not found")
        return volume

    async def get_volume_model(self, name: str) -> Volume:
        async with self.handler.AsyncSessionLocal() as session:
            return await self._get(session, name)

    async def get_volume_by_id(self, volume_id: int) -> Optional[Volume]:
        async with self.handler.AsyncSessionLocal() as session:
            return await session.get(Volume, volume_id)

    async def _record(self, volume_id: int, result: OperationResult) -> None:
        async with self.handler.AsyncSessionLocal() as session:
            await session.execute(
                update(Volume)
                .where(Volume.id == volume_id)
                .values(status=result.status, last_error=result.error, last_health_check=_now())
            )
            await session.commit()

    async def list_volumes(self) -> List[Dict[str, Any]]:
        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(select(Volume).order_by(Volume.name))
            return [volume_to_dict(v) for v in result.scalars().all()]

    async def create_volume(self, name: str, config: Any, *, auto_remount: bool = True) -> Dict[str, Any]:
        """Create a volume and mount it right away.

        The row is kept even when the first mount fails; its status and
        last_error describe the failure.

        Raises:
            BadRequestError: Invalid name or configuration.
            ConflictError: A volume with the same slug exists.
        """

        slug = slugify(name)
        if not slug:
            raise BadRequestError("Volume name must contain letters or digits")

        parsed = self._parse_config(config)
        sealed = seal_config(parsed, self.secrets.seal_secret)

        async with self.handler.AsyncSessionLocal() as session:
            existing = await session.execute(select(Volume.id).where(Volume.name == slug))
            if existing.first() is not None:
                raise ConflictError("Volume already exists")

            volume = Volume(
                short_id=generate_short_id(),
                name=slug,
                type=parsed.backend,
                status=UNMOUNTED,
                config=sealed.model_dump(mode="json"),
                auto_remount=auto_remount,
            )
            session.add(volume)
            await session.commit()
            await session.refresh(volume)

        logger.info("Created volume %s (%s)", slug, parsed.backend)

        result = await self.backend_for(volume).mount()
        await self._record(volume.id, result)
        if result.status == MOUNTED:
            self.events.emit(VOLUME_MOUNTED, {"volume_name": slug})

        return await self.get_volume(slug)

    async def get_volume(self, name: str) -> Dict[str, Any]:
        """Return the volume with disk usage when it is mounted."""

        volume = await self.get_volume_model(name)
        data = volume_to_dict(volume)
        data["path"] = self.volume_path(volume)
        data["statfs"] = {}

        if volume.status == MOUNTED:
            try:
                usage = await asyncio.wait_for(asyncio.to_thread(shutil.disk_usage, data["path"]), STATFS_TIMEOUT)
                data["statfs"] = {"total": usage.total, "used": usage.used, "free": usage.free}
            except (OSError, asyncio.TimeoutError) as exc:
                logger.warning("Failed to get statfs for volume %s: %s", name, to_message(exc))

        return data

    async def update_volume(
        self,
        name: str,
        *,
        new_name: Optional[str] = None,
        config: Any = None,
        auto_remount: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Rename a volume and/or change its config.

        A config change unmounts the volume with the old config and mounts it
        again with the new one.
        """

        async with self.handler.AsyncSessionLocal() as session:
            existing = await self._get(session, name)

            values: Dict[str, Any] = {}
            if new_name is not None:
                slug = slugify(new_name)
                if not slug:
                    raise BadRequestError("Volume name must contain letters or digits")
                if slug != existing.name:
                    conflict = await session.execute(
                        select(Volume.id).where(Volume.name == slug, Volume.id != existing.id)
                    )
                    if conflict.first() is not None:
                        raise ConflictError("A volume with this name already exists")
                    values["name"] = slug

            config_changed = False
            if config is not None:
                parsed = self._parse_config(config)
                sealed = seal_config(parsed, self.secrets.seal_secret).model_dump(mode="json")
                config_changed = sealed != existing.config
                if config_changed:
                    values["config"] = sealed
                    values["type"] = parsed.backend

            if auto_remount is not None:
                values["auto_remount"] = auto_remount

        if config_changed:
            logger.debug("Unmounting existing volume before applying new config")
            await self.backend_for(existing).unmount()

        if values:
            async with self.handler.AsyncSessionLocal() as session:
                await session.execute(update(Volume).where(Volume.id == existing.id).values(**values))
                await session.commit()

        current_name = values.get("name", existing.name)
        if config_changed:
            updated = await self.get_volume_model(current_name)
            result = await self.backend_for(updated).mount()
            await self._record(updated.id, result)
            self.events.emit(VOLUME_UPDATED, {"volume_name": current_name, "status": result.status})

        return await self.get_volume(current_name)

    async def delete_volume(self, name: str) -> None:
        """Unmount and delete a volume.

        Raises:
            ConflictError: When the unmount fails; the row is kept.
        """

        volume = await self.get_volume_model(name)
        result = await self.backend_for(volume).unmount()
        if result.status != UNMOUNTED:
            await self._record(volume.id, result)
            raise ConflictError(f"Volume could not be unmounted: {result.error}")

        async with self.handler.AsyncSessionLocal() as session:
            await session.execute(delete(Volume).where(Volume.id == volume.id))
            await session.commit()
        logger.info("Deleted volume %s", name)

    async def mount_volume(self, name: str) -> OperationResult:
        volume = await self.get_volume_model(name)
        result = await self.backend_for(volume).mount()
        await self._record(volume.id, result)
        if result.status == MOUNTED:
            self.events.emit(VOLUME_MOUNTED, {"volume_name": name})
        return result

    async def ensure_mounted(self, volume: Volume) -> OperationResult:
        """Mount `volume` when needed. No OS command runs if it is already mounted."""

        result = await self.backend_for(volume).mount()
        if result.status != volume.status or result.error != volume.last_error:
            await self._record(volume.id, result)
            if result.status == MOUNTED:
                self.events.emit(VOLUME_MOUNTED, {"volume_name": volume.name})
        return result

    async def unmount_volume(self, name: str) -> OperationResult:
        volume = await self.get_volume_model(name)
        result = await self.backend_for(volume).unmount()
        await self._record(volume.id, result)
        if result.status == UNMOUNTED:
            self.events.emit(VOLUME_UNMOUNTED, {"volume_name": name})
        return result

    async def check_health(self, name: str) -> OperationResult:
        volume = await self.get_volume_model(name)
        result = await self.backend_for(volume).check_health()

        if result.status != volume.status:
            self.events.emit(VOLUME_STATUS_CHANGED, {"volume_name": name, "status": result.status})

        await self._record(volume.id, result)
        return result

    async def volumes_to_monitor(self) -> List[Volume]:
        """Volumes watched by the periodic health check: mounted, or failed with auto remount."""

        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(
                select(Volume).where(
                    or_(
                        Volume.status == MOUNTED,
                        and_(Volume.auto_remount.is_(True), Volume.status == "error"),
                    )
                )
            )
            return list(result.scalars().all())

    async def known_mount_paths(self) -> List[str]:
        async with self.handler.AsyncSessionLocal() as session:
            result = await session.execute(select(Volume))
            return [self.volume_path(v) for v in result.scalars().all()]

    async def test_connection(self, config: Any) -> Dict[str, Any]:
        """Mount and unmount a config in a scratch directory without persisting anything."""

        parsed = self._parse_config(config)
        temp_dir = tempfile.mkdtemp(prefix="volume-backup-test-")
        probe = SimpleNamespace(short_id=f"test-{generate_short_id()}", config=parsed)
        path = None if parsed.backend == "directory" else temp_dir
        backend = build_volume_backend(probe, self.runtime, mount_base=self.mount_base, path=path)

        try:
            result = await backend.mount()
            await backend.unmount()
        finally:
            try:
                os.rmdir(temp_dir)
            except OSError as exc:
                logger.debug("Could not remove %s: %s", temp_dir, exc)

        return {
            "success": result.status == MOUNTED,
            "message": result.error or "Connection successful",
        }

    async def list_files(self, name: str, sub_path: Optional[str] = None) -> Dict[str, Any]:
        """List one directory level inside a mounted volume.

        Raises:
            BadRequestError: The volume is not mounted or the path escapes it.
        """

        volume = await self.get_volume_model(name)
        if volume.status != MOUNTED:
            raise BadRequestError("Volume is not mounted")

        root = os.path.normpath(self.volume_path(volume))
        requested = os.path.normpath(os.path.join(root, (sub_path or "").lstrip("/")))
        if os.path.commonpath([root, requested]) != root:
            raise BadRequestError("Invalid path")

        def _scan() -> List[Dict[str, Any]]:
            files = []
            with os.scandir(requested) as entries:
                for entry in entries:
                    is_dir = entry.is_dir(follow_symlinks=False)
                    try:
                        stats = entry.stat(follow_symlinks=False)
                        size = None if is_dir else stats.st_size
                        modified = stats.st_mtime
                    except OSError:
                        size = None
                        modified = None
                    files.append(
                        {
                            "name": entry.name,
                            "path": "/" + os.path.relpath(entry.path, root),
                            "type": "directory" if is_dir else "file",
                            "size": size,
                            "modified_at": modified,
                        }
                    )
            files.sort(key=lambda f: (f["type"] != "directory", f["name"]))
            return files

        try:
            files = await asyncio.to_thread(_scan)
        except OSError as exc:
            raise BadRequestError(f"Failed to list files: {to_message(exc)}") from exc

        return {"files": files, "path": sub_path or "/"}
