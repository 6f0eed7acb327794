"""Schemas for volume endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class VolumeCreateRequest(BaseModel):
    """Request to create (and mount) a volume."""

    name: str = Field(..., description="Volume name; stored as a slug")
    config: Dict[str, Any] = Field(..., description="Backend configuration, discriminated by `backend`")
    auto_remount: bool = Field(True, description="Remount automatically when the health check fails")


class VolumeUpdateRequest(BaseModel):
    """Request to update a volume. A changed config remounts the volume."""

    name: Optional[str] = Field(None, description="New volume name")
    config: Optional[Dict[str, Any]] = Field(None, description="New backend configuration")
    auto_remount: Optional[bool] = Field(None, description="Auto remount flag")


class TestConnectionRequest(BaseModel):
    """Request to try a volume configuration without saving it."""

    config: Dict[str, Any] = Field(..., description="Backend configuration to test")
