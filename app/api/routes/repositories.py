"""Repository API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from api.dependencies import get_context
from api.schemas.repositories import RepositoryCreateRequest, RepositoryUpdateRequest, RestoreRequest
from backend.core.context import AppContext


router = APIRouter(prefix="/repositories", tags=["Repositories"])


@router.get("")
async def list_repositories(ctx: AppContext = Depends(get_context)):
    return await ctx.repositories.list_repositories()


@router.post("", status_code=201)
async def create_repository(payload: RepositoryCreateRequest, ctx: AppContext = Depends(get_context)):
    """Initialize a new repository or adopt an existing one (`config.is_existing_repository`)."""

    return await ctx.repositories.create_repository(
        payload.name,
        payload.config,
        compression_mode=payload.compression_mode,
        short_id=payload.short_id,
    )


@router.get("/{repository_id}")
async def get_repository(repository_id: str, ctx: AppContext = Depends(get_context)):
    return await ctx.repositories.get_repository(repository_id)


@router.put("/{repository_id}")
async def update_repository(
    repository_id: str, payload: RepositoryUpdateRequest, ctx: AppContext = Depends(get_context)
):
    return await ctx.repositories.update_repository(
        repository_id, name=payload.name, compression_mode=payload.compression_mode
    )


@router.delete("/{repository_id}", status_code=204)
async def delete_repository(repository_id: str, ctx: AppContext = Depends(get_context)):
    """Remove the repository from the service. Stored snapshots are not touched."""

    await ctx.repositories.delete_repository(repository_id)
    return Response(status_code=204)


@router.post("/{repository_id}/check")
async def check_repository(repository_id: str, ctx: AppContext = Depends(get_context)):
    return await ctx.repositories.check_health(repository_id)


@router.post("/{repository_id}/doctor")
async def doctor_repository(repository_id: str, ctx: AppContext = Depends(get_context)):
    """Unlock, check and repair the repository index when needed."""

    return await ctx.repositories.doctor_repository(repository_id)


@router.post("/{repository_id}/unlock")
async def unlock_repository(repository_id: str, ctx: AppContext = Depends(get_context)):
    return await ctx.repositories.unlock_repository(repository_id)


@router.get("/{repository_id}/snapshots")
async def list_snapshots(
    repository_id: str,
    backup_id: Optional[str] = Query(None, description="Only snapshots of this schedule short id"),
    ctx: AppContext = Depends(get_context),
):
    return await ctx.repositories.list_snapshots(repository_id, backup_id=backup_id)


@router.get("/{repository_id}/snapshots/{snapshot_id}")
async def get_snapshot(repository_id: str, snapshot_id: str, ctx: AppContext = Depends(get_context)):
    return await ctx.repositories.get_snapshot_details(repository_id, snapshot_id)


@router.get("/{repository_id}/snapshots/{snapshot_id}/files")
async def list_snapshot_files(
    repository_id: str,
    snapshot_id: str,
    path: Optional[str] = Query(None, description="Directory inside the snapshot"),
    ctx: AppContext = Depends(get_context),
):
    return await ctx.repositories.list_snapshot_files(repository_id, snapshot_id, path)


@router.delete("/{repository_id}/snapshots/{snapshot_id}", status_code=204)
async def delete_snapshot(repository_id: str, snapshot_id: str, ctx: AppContext = Depends(get_context)):
    await ctx.repositories.delete_snapshot(repository_id, snapshot_id)
    return Response(status_code=204)


@router.post("/{repository_id}/snapshots/{snapshot_id}/restore")
async def restore_snapshot(
    repository_id: str,
    snapshot_id: str,
    payload: RestoreRequest,
    ctx: AppContext = Depends(get_context),
):
    return await ctx.repositories.restore_snapshot(
        repository_id,
        snapshot_id,
        target_path=payload.target_path,
        include=payload.include,
        exclude=payload.exclude,
        exclude_xattr=payload.exclude_xattr,
        delete=payload.delete,
        overwrite=payload.overwrite,
    )
