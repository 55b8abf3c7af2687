from sqlalchemy import Boolean, Column, Integer, String, DateTime
from marketplace.db.base import Base
from marketplace.core.clock import utcnow


class Package(Base):
    """Credit-bearing subscription package sold to clients."""
    __tablename__ = "packages"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    credits = Column(Integer, nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=30)
    max_free_revisions = Column(Integer, nullable=False, default=0)
    is_free = Column(Boolean, nullable=False, default=False)  # granted at registration
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
