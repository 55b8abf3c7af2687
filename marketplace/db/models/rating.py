from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text
from marketplace.db.base import Base
from marketplace.core.clock import utcnow


class Rating(Base):
    __tablename__ = "ratings"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, unique=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)  # 1..5
    review_text = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
