"""
Database engine and session management.

The engine is created lazily from DATABASE_URL. Services receive a
session factory so tests can point them at a throwaway database.
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from leavetrack.config import get_settings
from leavetrack.utils.logger import get_logger

logger = get_logger(__name__)

Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(database_url: str) -> Engine:
    """Create an engine, with the extra arguments SQLite needs."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def configure(database_url: str) -> sessionmaker:
    """(Re)bind the module-level engine and session factory."""
    global _engine, _session_factory
    _engine = build_engine(database_url)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)
    logger.info(f"Database configured: {_engine.url.render_as_string(hide_password=True)}")
    return _session_factory


def get_engine() -> Engine:
    if _engine is None:
        configure(get_settings().database_url)
    return _engine


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        configure(get_settings().database_url)
    return _session_factory


def init_db() -> None:
    """Create all tables that don't exist yet."""
    # Import models so they register on Base.metadata
    from leavetrack.db import orm_models  # noqa: F401

    Base.metadata.create_all(get_engine())


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """
    Provide a transactional scope around a series of operations.

    Commits on success, rolls back and re-raises on any error.
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_connection() -> bool:
    """Return True if the database answers a trivial query."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
