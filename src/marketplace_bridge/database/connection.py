"""
Database connection and session management.
"""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from marketplace_bridge.utils.logger import get_logger

logger = get_logger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for ``database_url``.

    In-memory SQLite shares one connection across the process so every
    session sees the same tables.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before using
        echo=echo,
    )


def create_session_factory(database_url: str) -> sessionmaker:
    """Create a session factory bound to a new engine for ``database_url``."""
    engine = create_db_engine(database_url)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for database session.

    Usage:
        with session_scope(factory) as db:
            record = db.query(TenantCredential).first()
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(session_factory: sessionmaker) -> None:
    """Initialize database - create all tables."""
    from marketplace_bridge.database.models import Base

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=session_factory.kw["bind"])
    logger.info("Database tables created successfully")


# Process-wide factory used by the CLI
_session_factory: Optional[sessionmaker] = None


def get_session_factory() -> sessionmaker:
    """Get the session factory for the configured DATABASE_URL."""
    global _session_factory

    if _session_factory is None:
        from marketplace_bridge.utils.config import get_config

        _session_factory = create_session_factory(get_config().database_url)

    return _session_factory
