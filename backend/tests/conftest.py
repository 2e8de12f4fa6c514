"""Pytest fixtures for the sync core.

Provides reusable test fixtures for:
- Database session on an in-memory SQLite database (fresh schema per test)
- Settings tuned for tests (no debounce)
- Queue, entity map and state store repositories bound to the session
- A controllable clock

Usage:
    def test_enqueue(queue):
        job_id = queue.push("catalog", "product", "create", local_id=10)
        assert queue.get(job_id).status == "pending"
"""

import sys
import os
from pathlib import Path

# Set environment variables BEFORE any imports to ensure they take effect
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_JSON", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator

# Adjust imports based on your project structure
backend_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(backend_src))

from erpsync.config import Settings
from erpsync.models import Base
from erpsync.sync.entity_map import EntityMapRepository
from erpsync.sync.queue import SyncQueueRepository
from erpsync.sync.state_store import StateStore

from fixtures.clock import FakeClock


# One shared in-memory database per test run; tables are recreated per test
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TENANT_ID = 1


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh database session for each test.

    Creates all tables before the test and drops them after.
    Each test gets a clean database state.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def test_settings() -> Settings:
    """Default settings with debounce disabled so pushed jobs are due immediately."""
    return Settings(
        DATABASE_URL="sqlite://",
        SYNC_DEBOUNCE_SECONDS=0,
        SYNC_STALE_RECOVERY_INTERVAL=60,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(db_session, test_settings) -> SyncQueueRepository:
    return SyncQueueRepository(db_session, tenant_id=TENANT_ID, settings=test_settings)


@pytest.fixture
def entity_map(db_session) -> EntityMapRepository:
    return EntityMapRepository(db_session, tenant_id=TENANT_ID)


@pytest.fixture
def state_store(db_session) -> StateStore:
    return StateStore(db_session, tenant_id=TENANT_ID)
