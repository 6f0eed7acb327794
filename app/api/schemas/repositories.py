"""Schemas for repository endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class RepositoryCreateRequest(BaseModel):
    """Request to create a repository (initialize a new one or adopt an existing one)."""

    name: str = Field(..., description="Display name")
    config: Dict[str, Any] = Field(..., description="Backend configuration, discriminated by `backend`")
    compression_mode: Literal["auto", "off", "max"] = Field("auto", description="restic compression mode")
    short_id: Optional[str] = Field(None, description="Optional 8 character short id to reuse")


class RepositoryUpdateRequest(BaseModel):
    name: Optional[str] = None
    compression_mode: Optional[Literal["auto", "off", "max"]] = None


class RestoreRequest(BaseModel):
    """Request to restore a snapshot."""

    target_path: Optional[str] = Field(None, description="Restore target directory (defaults to /)")
    include: List[str] = Field(default_factory=list, description="Paths to restore")
    exclude: List[str] = Field(default_factory=list, description="Patterns to skip")
    exclude_xattr: List[str] = Field(default_factory=list, description="Extended attributes to skip")
    delete: bool = Field(False, description="Delete files in the target that are not in the snapshot")
    overwrite: Optional[Literal["always", "if-changed", "if-newer", "never"]] = None
