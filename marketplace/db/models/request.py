import enum
from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Index, Integer, JSON, String, Text,
)
from sqlalchemy.orm import relationship
from marketplace.db.base import Base
from marketplace.core.clock import utcnow


class RequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})


class ServiceRequest(Base):
    """
    A client's order against a service type.

    Invariant: ``credit_cost == base_credit_cost + priority_credit_cost + revision_credit_cost``.
    """
    __tablename__ = "requests"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    service_type_id = Column(Integer, ForeignKey("service_types.id"), nullable=False)
    subscription_id = Column(Integer, ForeignKey("client_subscriptions.id"), nullable=False)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(
        Enum(RequestStatus, native_enum=False, length=32),
        nullable=False,
        default=RequestStatus.PENDING,
        index=True,
    )
    priority = Column(Integer, nullable=False, default=2)  # 1=low, 2=medium, 3=high

    credit_cost = Column(Integer, nullable=False, default=0)
    base_credit_cost = Column(Integer, nullable=False, default=0)
    priority_credit_cost = Column(Integer, nullable=False, default=0)
    revision_credit_cost = Column(Integer, nullable=False, default=0)  # sum of paid revision surcharges

    current_revision_count = Column(Integer, nullable=False, default=0)
    total_revisions = Column(Integer, nullable=False, default=0)
    is_revision = Column(Boolean, nullable=False, default=False)
    revision_type = Column(String, nullable=True)  # free | paid

    attribute_responses = Column(JSON, nullable=False, default=list)
    estimated_delivery = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    service_type = relationship("ServiceType")
    comments = relationship(
        "RequestComment",
        back_populates="request",
        order_by="RequestComment.created_at",
    )

    __table_args__ = (
        Index("idx_request_open_pool", "status", "provider_id"),
    )
