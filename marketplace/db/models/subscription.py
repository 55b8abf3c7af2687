from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer
from sqlalchemy.orm import relationship
from marketplace.db.base import Base
from marketplace.core.clock import utcnow


class ClientSubscription(Base):
    """
    A client's purchased package and its credit balance.

    ``remaining_credits`` is only ever changed through conditional updates in
    ``marketplace.services.ledger_service``. Rows are never hard-deleted.
    """
    __tablename__ = "client_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=False)

    remaining_credits = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    package = relationship("Package")

    __table_args__ = (
        CheckConstraint("remaining_credits >= 0", name="ck_subscription_credits_non_negative"),
        Index("idx_subscription_active_end", "is_active", "end_date"),
    )
