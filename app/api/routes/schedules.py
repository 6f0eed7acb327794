"""Backup schedule API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from api.dependencies import get_context
from api.schemas.schedules import (
    MirrorsUpdateRequest,
    NotificationsUpdateRequest,
    ScheduleCreateRequest,
    ScheduleUpdateRequest,
)
from backend.core.context import AppContext


router = APIRouter(prefix="/schedules", tags=["Backup schedules"])


@router.get("")
async def list_schedules(ctx: AppContext = Depends(get_context)):
    return await ctx.schedules.list_schedules()


@router.post("", status_code=201)
async def create_schedule(payload: ScheduleCreateRequest, ctx: AppContext = Depends(get_context)):
    return await ctx.schedules.create_schedule(**payload.model_dump())


@router.get("/{schedule_id}")
async def get_schedule(schedule_id: int, ctx: AppContext = Depends(get_context)):
    return await ctx.schedules.get_schedule(schedule_id)


@router.put("/{schedule_id}")
async def update_schedule(schedule_id: int, payload: ScheduleUpdateRequest, ctx: AppContext = Depends(get_context)):
    return await ctx.schedules.update_schedule(schedule_id, **payload.model_dump(exclude_unset=True))


@router.delete("/{schedule_id}", status_code=204)
async def delete_schedule(schedule_id: int, ctx: AppContext = Depends(get_context)):
    await ctx.schedules.delete_schedule(schedule_id)
    return Response(status_code=204)


@router.post("/{schedule_id}/run", status_code=202)
async def run_schedule(schedule_id: int, ctx: AppContext = Depends(get_context)):
    """Start a manual backup in the background (disabled schedules included)."""

    await ctx.schedules.get_schedule(schedule_id)
    if ctx.engine.is_running(schedule_id):
        return {"started": False, "message": "A backup is already running for this schedule"}
    ctx.engine.dispatch(schedule_id, manual=True)
    return {"started": True}


@router.post("/{schedule_id}/stop")
async def stop_schedule(schedule_id: int, ctx: AppContext = Depends(get_context)):
    await ctx.engine.stop_backup(schedule_id)
    return {"stopping": True}


@router.post("/{schedule_id}/forget")
async def run_forget(schedule_id: int, ctx: AppContext = Depends(get_context)):
    """Apply the retention policy now."""

    return await ctx.engine.run_forget(schedule_id)


@router.get("/{schedule_id}/mirrors")
async def list_mirrors(schedule_id: int, ctx: AppContext = Depends(get_context)):
    return await ctx.schedules.list_mirrors(schedule_id)


@router.put("/{schedule_id}/mirrors")
async def update_mirrors(schedule_id: int, payload: MirrorsUpdateRequest, ctx: AppContext = Depends(get_context)):
    return await ctx.schedules.update_mirrors(schedule_id, [m.model_dump() for m in payload.mirrors])


@router.get("/{schedule_id}/mirrors/compatibility")
async def mirror_compatibility(schedule_id: int, ctx: AppContext = Depends(get_context)):
    return await ctx.schedules.get_mirror_compatibility(schedule_id)


@router.get("/{schedule_id}/notifications")
async def list_notifications(schedule_id: int, ctx: AppContext = Depends(get_context)):
    return await ctx.schedules.list_notifications(schedule_id)


@router.put("/{schedule_id}/notifications")
async def update_notifications(
    schedule_id: int, payload: NotificationsUpdateRequest, ctx: AppContext = Depends(get_context)
):
    return await ctx.schedules.update_notifications(schedule_id, [a.model_dump() for a in payload.assignments])
