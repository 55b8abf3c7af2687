from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from marketplace.db.base import Base
from marketplace.core.clock import utcnow


class CommentType:
    SYSTEM = "SYSTEM"
    MESSAGE = "MESSAGE"
    DELIVERABLE = "DELIVERABLE"


class RequestComment(Base):
    __tablename__ = "request_comments"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    type = Column(String, nullable=False, default=CommentType.MESSAGE)  # SYSTEM | MESSAGE | DELIVERABLE
    created_at = Column(DateTime, nullable=False, default=utcnow)

    request = relationship("ServiceRequest", back_populates="comments")
