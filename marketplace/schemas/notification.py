"""
Pydantic schemas for notifications and the realtime channel.
"""
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from marketplace.core.clock import utcnow

NotificationType = Literal["message", "status_change", "assignment", "general"]


class RealtimePayload(BaseModel):
    """Frame pushed over the per-user stream for every dispatched notification."""
    type: NotificationType = Field("general", description="Notification kind")
    title: str
    message: str
    link: Optional[str] = None
    notification_id: Optional[int] = Field(None, description="Id of the durable notification row")
    timestamp: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "type": "status_change",
                "title": "Request Status Updated",
                "message": "Your request \"Logo refresh\" status changed from IN PROGRESS to DELIVERED",
                "link": "/client/requests/42",
                "notification_id": 7,
                "timestamp": "2026-01-12T20:12:40",
            }
        }


class ConnectedFrame(BaseModel):
    """Sent once when a stream opens. Carries no business meaning."""
    type: Literal["connected"] = "connected"


class NotificationOut(BaseModel):
    id: int
    user_id: int
    title: str
    message: str
    type: str
    link: Optional[str] = None
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationPage(BaseModel):
    notifications: List[NotificationOut]
    next_cursor: Optional[int] = Field(None, description="Pass as `cursor` to fetch the next page")


class UnreadCountResponse(BaseModel):
    count: int


class MarkReadResponse(BaseModel):
    success: bool
    updated: int = 0
