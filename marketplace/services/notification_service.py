"""
Notification dispatcher.

The durable Notification row is always written and committed first; the realtime
push happens afterwards as a separate, best-effort step whose failures are logged
and swallowed. Unread counts and notification lists read only the durable rows.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from marketplace.core.clock import utcnow
from marketplace.db.models.notification import Notification
from marketplace.schemas.notification import RealtimePayload
from marketplace.services.cache_invalidation import CacheInvalidator
from marketplace.services.realtime_registry import RealtimeRegistry

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(
        self,
        registry: Optional[RealtimeRegistry] = None,
        cache: Optional[CacheInvalidator] = None,
    ):
        self.registry = registry
        self.cache = cache or CacheInvalidator(None)

    def notify(
        self,
        db: Session,
        user_id: int,
        title: str,
        message: str,
        link: Optional[str] = None,
        type: str = "general",
        now: Optional[datetime] = None,
    ) -> int:
        """
        Persist a notification for ``user_id`` and try to push it live.

        Returns the id of the stored notification, whether or not the push went through.
        """
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            link=link,
            is_read=False,
            created_at=now or utcnow(),
        )
        db.add(notification)
        db.commit()
        db.refresh(notification)

        logger.info(f"Notification created: id={notification.id}, user_id={user_id}, title={title!r}")
        self.cache.invalidate_notifications(user_id)

        payload = RealtimePayload(
            type=type,
            title=title,
            message=message,
            link=link,
            notification_id=notification.id,
            timestamp=notification.created_at,
        )
        self._push(user_id, payload)
        return notification.id

    def _push(self, user_id: int, payload: RealtimePayload) -> bool:
        if self.registry is None:
            logger.debug("Realtime registry not configured, skipping live push")
            return False
        try:
            return self.registry.send(user_id, payload)
        except Exception as e:
            # The durable row is already committed; a push failure must not surface
            logger.warning(f"Failed to send realtime notification to user {user_id}: {e}")
            return False

    def has_recent(self, db: Session, user_id: int, title: str, since: datetime) -> bool:
        """True when ``user_id`` already received a notification titled ``title`` at or after ``since``."""
        return (
            db.query(Notification.id)
            .filter(
                Notification.user_id == user_id,
                Notification.title == title,
                Notification.created_at >= since,
            )
            .first()
            is not None
        )

    def mark_read(self, db: Session, notification_id: int, user_id: Optional[int] = None) -> bool:
        query = db.query(Notification).filter(Notification.id == notification_id)
        if user_id is not None:
            query = query.filter(Notification.user_id == user_id)

        owner = query.with_entities(Notification.user_id).scalar()
        matched = query.update({Notification.is_read: True}, synchronize_session=False)
        db.commit()

        if matched:
            self.cache.invalidate_notifications(owner)
        return bool(matched)

    def mark_all_read(self, db: Session, user_id: int) -> int:
        updated = (
            db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
            .update({Notification.is_read: True}, synchronize_session=False)
        )
        db.commit()
        self.cache.invalidate_notifications(user_id)
        return updated

    def get_unread_count(self, db: Session, user_id: int) -> int:
        return (
            db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
            .count()
        )

    def list_for_user(
        self,
        db: Session,
        user_id: int,
        unread_only: bool = False,
        limit: int = 20,
        cursor: Optional[int] = None,
    ) -> Tuple[List[Notification], Optional[int]]:
        """Newest first. ``cursor`` is the id of the last notification of the previous page."""
        query = db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        if cursor is not None:
            query = query.filter(Notification.id < cursor)

        notifications = query.order_by(Notification.id.desc()).limit(limit).all()
        next_cursor = notifications[-1].id if len(notifications) == limit else None
        return notifications, next_cursor

    def delete(self, db: Session, notification_id: int, user_id: int) -> bool:
        deleted = (
            db.query(Notification)
            .filter(Notification.id == notification_id, Notification.user_id == user_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        if deleted:
            self.cache.invalidate_notifications(user_id)
        return bool(deleted)

    def delete_all_read(self, db: Session, user_id: int) -> int:
        deleted = (
            db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.is_read.is_(True))
            .delete(synchronize_session=False)
        )
        db.commit()
        self.cache.invalidate_notifications(user_id)
        return deleted
