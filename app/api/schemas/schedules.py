"""Schemas for backup schedule endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ScheduleCreateRequest(BaseModel):
    """Request to create a backup schedule."""

    name: str = Field(..., description="Schedule name")
    volume_id: int = Field(..., description="Source volume id")
    repository_id: str = Field(..., description="Destination repository id")
    cron_expression: str = Field(..., description="5-field cron expression")
    enabled: bool = Field(True, description="Whether the scheduler runs this schedule")
    retention_policy: Optional[Dict[str, Any]] = Field(
        None, description="keep_last/keep_hourly/keep_daily/keep_weekly/keep_monthly/keep_yearly/keep_within_duration"
    )
    exclude_patterns: List[str] = Field(default_factory=list)
    exclude_if_present: List[str] = Field(default_factory=list)
    include_patterns: List[str] = Field(default_factory=list)
    one_file_system: bool = False


class ScheduleUpdateRequest(BaseModel):
    """Request to update a backup schedule. Only provided fields change."""

    name: Optional[str] = None
    repository_id: Optional[str] = None
    cron_expression: Optional[str] = None
    enabled: Optional[bool] = None
    retention_policy: Optional[Dict[str, Any]] = None
    exclude_patterns: Optional[List[str]] = None
    exclude_if_present: Optional[List[str]] = None
    include_patterns: Optional[List[str]] = None
    one_file_system: Optional[bool] = None
    sort_order: Optional[int] = None


class MirrorItem(BaseModel):
    repository_id: str
    enabled: bool = True


class MirrorsUpdateRequest(BaseModel):
    mirrors: List[MirrorItem] = Field(default_factory=list)


class NotificationAssignment(BaseModel):
    destination_id: int
    notify_on_start: bool = False
    notify_on_success: bool = False
    notify_on_warning: bool = True
    notify_on_failure: bool = True


class NotificationsUpdateRequest(BaseModel):
    assignments: List[NotificationAssignment] = Field(default_factory=list)
