"""Notification schemas for request/response validation."""

from pydantic import BaseModel, Field
from typing import Optional, Literal, Any
from datetime import datetime


NotificationPriorityName = Literal["urgent", "high", "medium", "low"]


class NotificationCreate(BaseModel):
    """Schema for creating a notification."""

    user_id: int = Field(..., gt=0)
    type_id: int = Field(..., gt=0)
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    scheduled_time: datetime
    priority: NotificationPriorityName = "medium"
    action_url: Optional[str] = Field(None, max_length=500)
    metadata: Optional[dict[str, Any]] = None


class UserActionRequest(BaseModel):
    """Body for actions scoped to the owning user (mark read, delete)."""

    user_id: int = Field(..., gt=0)


class FcmTokenUpdate(BaseModel):
    user_id: int = Field(..., gt=0)
    fcm_token: str = Field(..., min_length=1, max_length=512)
