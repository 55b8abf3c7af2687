from sqlalchemy import Boolean, Column, Integer, String, JSON
from marketplace.core.config import DEFAULT_PAID_REVISION_COST
from marketplace.db.base import Base


class ServiceType(Base):
    """
    Service catalogue entry. Managed by admin CRUD; read-only to the core.

    ``attributes`` holds the Q&A definition clients answer when opening a request:
    ``[{"question", "type", "required", "options", "min", "max"}]``.
    """
    __tablename__ = "service_types"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    base_credit_cost = Column(Integer, nullable=False, default=1)

    # Per-service priority surcharges
    priority_cost_low = Column(Integer, nullable=False, default=0)
    priority_cost_medium = Column(Integer, nullable=False, default=1)
    priority_cost_high = Column(Integer, nullable=False, default=2)

    paid_revision_cost = Column(Integer, nullable=False, default=DEFAULT_PAID_REVISION_COST)
    attributes = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
