"""
Create all tables directly from the models (local development without Alembic).
"""
from marketplace.db.session import engine
from marketplace.db.base import Base
import marketplace.db.models  # noqa: F401  registers every table on Base.metadata


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


if __name__ == "__main__":
    init_db()
