"""Notification destination API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from api.dependencies import get_context
from api.schemas.notifications import DestinationCreateRequest, DestinationUpdateRequest
from backend.core.context import AppContext


router = APIRouter(prefix="/notifications/destinations", tags=["Notifications"])


@router.get("")
async def list_destinations(ctx: AppContext = Depends(get_context)):
    return await ctx.notifications.list_destinations()


@router.post("", status_code=201)
async def create_destination(payload: DestinationCreateRequest, ctx: AppContext = Depends(get_context)):
    return await ctx.notifications.create_destination(payload.name, payload.config, enabled=payload.enabled)


@router.get("/{destination_id}")
async def get_destination(destination_id: int, ctx: AppContext = Depends(get_context)):
    return await ctx.notifications.get_destination(destination_id)


@router.put("/{destination_id}")
async def update_destination(
    destination_id: int, payload: DestinationUpdateRequest, ctx: AppContext = Depends(get_context)
):
    return await ctx.notifications.update_destination(
        destination_id, name=payload.name, config=payload.config, enabled=payload.enabled
    )


@router.delete("/{destination_id}", status_code=204)
async def delete_destination(destination_id: int, ctx: AppContext = Depends(get_context)):
    await ctx.notifications.delete_destination(destination_id)
    return Response(status_code=204)


@router.post("/{destination_id}/test")
async def test_destination(destination_id: int, ctx: AppContext = Depends(get_context)):
    """Send a test message."""

    return await ctx.notifications.test_destination(destination_id)
