"""Volume API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from api.dependencies import get_context
from api.schemas.volumes import TestConnectionRequest, VolumeCreateRequest, VolumeUpdateRequest
from backend.core.context import AppContext
from backend.services.volumes.backends import OperationResult


router = APIRouter(prefix="/volumes", tags=["Volumes"])


def _result(result: OperationResult) -> dict:
    return {"status": result.status, "error": result.error}


@router.get("")
async def list_volumes(ctx: AppContext = Depends(get_context)):
    """List volumes."""

    return await ctx.volumes.list_volumes()


@router.post("", status_code=201)
async def create_volume(payload: VolumeCreateRequest, ctx: AppContext = Depends(get_context)):
    """Create a volume and mount it."""

    return await ctx.volumes.create_volume(payload.name, payload.config, auto_remount=payload.auto_remount)


@router.post("/test-connection")
async def test_connection(payload: TestConnectionRequest, ctx: AppContext = Depends(get_context)):
    """Mount and unmount a configuration in a scratch directory."""

    return await ctx.volumes.test_connection(payload.config)


@router.get("/{name}")
async def get_volume(name: str, ctx: AppContext = Depends(get_context)):
    return await ctx.volumes.get_volume(name)


@router.put("/{name}")
async def update_volume(name: str, payload: VolumeUpdateRequest, ctx: AppContext = Depends(get_context)):
    return await ctx.volumes.update_volume(
        name,
        new_name=payload.name,
        config=payload.config,
        auto_remount=payload.auto_remount,
    )


@router.delete("/{name}", status_code=204)
async def delete_volume(name: str, ctx: AppContext = Depends(get_context)):
    """Unmount and delete a volume."""

    await ctx.volumes.delete_volume(name)
    return Response(status_code=204)


@router.post("/{name}/mount")
async def mount_volume(name: str, ctx: AppContext = Depends(get_context)):
    return _result(await ctx.volumes.mount_volume(name))


@router.post("/{name}/unmount")
async def unmount_volume(name: str, ctx: AppContext = Depends(get_context)):
    return _result(await ctx.volumes.unmount_volume(name))


@router.post("/{name}/health-check")
async def check_volume_health(name: str, ctx: AppContext = Depends(get_context)):
    return _result(await ctx.volumes.check_health(name))


@router.get("/{name}/files")
async def list_volume_files(
    name: str,
    path: Optional[str] = Query(None, description="Directory relative to the volume root"),
    ctx: AppContext = Depends(get_context),
):
    """List one directory level of a mounted volume."""

    return await ctx.volumes.list_files(name, path)
