from sqlalchemy import Column, Integer, String, DateTime
from marketplace.db.base import Base
from marketplace.core.clock import utcnow


class UserRole:
    CLIENT = "CLIENT"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"

    ALL = (CLIENT, PROVIDER, ADMIN)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True)
    role = Column(String, nullable=False, default=UserRole.CLIENT)  # CLIENT | PROVIDER | ADMIN
    created_at = Column(DateTime, default=utcnow)
