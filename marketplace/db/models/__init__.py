"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.

All models must be imported here to be included in database migrations and table creation.
"""
from marketplace.db.models.user import User, UserRole
from marketplace.db.models.package import Package
from marketplace.db.models.subscription import ClientSubscription
from marketplace.db.models.service_type import ServiceType
from marketplace.db.models.request import ServiceRequest, RequestStatus, TERMINAL_STATUSES
from marketplace.db.models.request_comment import RequestComment, CommentType
from marketplace.db.models.rating import Rating
from marketplace.db.models.notification import Notification

# Explicitly export all models for clarity
__all__ = [
    "User",
    "UserRole",
    "Package",
    "ClientSubscription",
    "ServiceType",
    "ServiceRequest",
    "RequestStatus",
    "TERMINAL_STATUSES",
    "RequestComment",
    "CommentType",
    "Rating",
    "Notification",
]
