"""
Test configuration and fixtures.

Provides:
- In-memory persistence and transport fakes
- A controllable clock for cache TTL tests
- A SQLite-backed session factory for the SQLAlchemy persistence layer
"""
import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["SMTP_HOST"] = ""
os.environ["RESEND_API_KEY"] = ""

from officiant.db.base import Base
from support import FakeClock, FakePersistence


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    import officiant.db.models  # noqa: F401

    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()
