"""Database session factory and configuration.

Provides database connectivity and session management for the sync core.
Includes a tenant-scoped session factory for workers.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from .config import settings

DATABASE_URL = settings.DATABASE_URL

# Create engine with connection pooling
# Pool settings only apply to PostgreSQL (not SQLite)
_engine_kwargs = {
    "pool_pre_ping": True,  # Verify connections before using
    "echo": False,  # Set to True for SQL query logging
}

if not DATABASE_URL.startswith("sqlite"):
    _engine_kwargs["pool_size"] = 5
    _engine_kwargs["max_overflow"] = 10

engine = create_engine(DATABASE_URL, **_engine_kwargs)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.query(SyncQueueJob).count()

    Automatically commits on success, rolls back on exception.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def tenant_scoped_session(tenant_id: int) -> Session:
    """Create a database session scoped to a specific tenant.

    The tenant_id is stored in session.info["tenant_id"] so repositories
    constructed without an explicit tenant can pick it up.

    Args:
        tenant_id: Tenant this session works for

    Returns:
        Session: SQLAlchemy session with tenant context

    Example:
        session = tenant_scoped_session(3)
        try:
            engine = SyncEngine(session, tenant_id=3, module_resolver=registry.resolve)
            engine.process_queue()
        finally:
            session.close()
    """
    session = SessionLocal()
    session.info["tenant_id"] = tenant_id
    return session
