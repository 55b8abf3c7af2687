from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from marketplace.db.base import Base
from marketplace.core.clock import utcnow


class Notification(Base):
    """
    Durable in-app notification. Source of truth for what a user has been told;
    the realtime push is only a best-effort echo of this row.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String, nullable=False, default="general")  # message | status_change | assignment | general
    link = Column(String, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_notification_user_unread", "user_id", "is_read"),
        Index("idx_notification_user_title_created", "user_id", "title", "created_at"),
    )
