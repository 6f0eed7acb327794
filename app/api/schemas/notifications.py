"""Schemas for notification destination endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class DestinationCreateRequest(BaseModel):
    """Request to create a notification destination."""

    name: str = Field(..., description="Destination name")
    config: Dict[str, Any] = Field(..., description="webhook (url, method, headers) or telegram (bot_token, chat_id)")
    enabled: bool = True


class DestinationUpdateRequest(BaseModel):
    name: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = None
