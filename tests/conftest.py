"""
Shared fixtures: a fresh in-memory SQLite database per test plus row factories.
"""
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import marketplace.db.models  # noqa: F401
from marketplace.core.clock import utcnow
from marketplace.db.base import Base
from marketplace.db.init_db import init_db
from marketplace.db.models.package import Package
from marketplace.db.models.service_type import ServiceType
from marketplace.db.models.subscription import ClientSubscription
from marketplace.db.models.user import User, UserRole


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    init_db(bind=test_engine)
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role=UserRole.CLIENT, full_name=None):
        counter["n"] += 1
        user = User(
            full_name=full_name or f"{role.title()} {counter['n']}",
            email=f"{role.lower()}{counter['n']}@example.com",
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_package(db):
    def _make(name="Pro", credits=10, duration_days=30, max_free_revisions=1, is_free=False):
        package = Package(
            name=name,
            credits=credits,
            duration_days=duration_days,
            max_free_revisions=max_free_revisions,
            is_free=is_free,
        )
        db.add(package)
        db.commit()
        db.refresh(package)
        return package

    return _make


@pytest.fixture
def make_subscription(db, make_package):
    def _make(user, credits=5, days_left=30, package=None, is_active=True):
        package = package or make_package()
        now = utcnow()
        subscription = ClientSubscription(
            user_id=user.id,
            package_id=package.id,
            remaining_credits=credits,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=days_left),
            is_active=is_active,
        )
        db.add(subscription)
        db.commit()
        db.refresh(subscription)
        return subscription

    return _make


@pytest.fixture
def make_service_type(db):
    def _make(name="Logo Design", base_credit_cost=3, low=0, medium=1, high=2,
              paid_revision_cost=1, attributes=None, is_active=True):
        service_type = ServiceType(
            name=name,
            base_credit_cost=base_credit_cost,
            priority_cost_low=low,
            priority_cost_medium=medium,
            priority_cost_high=high,
            paid_revision_cost=paid_revision_cost,
            attributes=attributes or [],
            is_active=is_active,
        )
        db.add(service_type)
        db.commit()
        db.refresh(service_type)
        return service_type

    return _make
