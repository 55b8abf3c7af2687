"""
Notification endpoints and the per-user Server-Sent Events stream.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from marketplace.api.deps import get_dispatcher, get_registry
from marketplace.core.auth_dependency import CurrentUser, get_current_user, get_db
from marketplace.schemas.notification import (
    MarkReadResponse,
    NotificationOut,
    NotificationPage,
    UnreadCountResponse,
)
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.realtime_registry import RealtimeRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationPage)
def list_notifications(
    unread_only: bool = False,
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[int] = None,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    notifications, next_cursor = dispatcher.list_for_user(
        db, user.user_id, unread_only=unread_only, limit=limit, cursor=cursor,
    )
    return NotificationPage(
        notifications=[NotificationOut.model_validate(n) for n in notifications],
        next_cursor=next_cursor,
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
def unread_count(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return UnreadCountResponse(count=dispatcher.get_unread_count(db, user.user_id))


@router.post("/read-all", response_model=MarkReadResponse)
def mark_all_read(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    updated = dispatcher.mark_all_read(db, user.user_id)
    return MarkReadResponse(success=True, updated=updated)


@router.post("/{notification_id}/read", response_model=MarkReadResponse)
def mark_read(
    notification_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    if not dispatcher.mark_read(db, notification_id, user_id=user.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return MarkReadResponse(success=True, updated=1)


@router.delete("/read", response_model=MarkReadResponse)
def delete_read(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    deleted = dispatcher.delete_all_read(db, user.user_id)
    return MarkReadResponse(success=True, updated=deleted)


@router.delete("/{notification_id}", response_model=MarkReadResponse)
def delete_notification(
    notification_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    if not dispatcher.delete(db, notification_id, user.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return MarkReadResponse(success=True, updated=1)


@router.get("/stream")
async def stream_notifications(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    registry: RealtimeRegistry = Depends(get_registry),
):
    """
    Live notification stream (text/event-stream).

    Sends ``{"type": "connected"}`` once, then one ``data:`` frame per notification and
    a ``: heartbeat`` comment every ``SSE_HEARTBEAT_SECONDS``. Opening a second stream
    for the same user closes the first.
    """
    handle = registry.connect(user.user_id)

    return StreamingResponse(
        registry.stream(handle, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",  # nginx
        },
    )
