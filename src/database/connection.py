"""
Database Connection Module

Lazily created SQLAlchemy engine and session factory for the role,
permission, user and MFA device tables.

Usage:
    with get_db_session() as session:
        session.add(record)
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import DatabaseSettings

from .models import Base

logger = logging.getLogger(__name__)

# Global engine and session factory (lazy initialization)
_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def create_db_engine(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Build an engine for the configured URL. In-memory SQLite shares one connection."""
    settings = settings or DatabaseSettings()
    kwargs = {"echo": settings.echo, "pool_pre_ping": settings.pool_pre_ping}

    if settings.is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
        if settings.url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    logger.info(f"Creating database engine for {settings.url.split('://', 1)[0]}")
    return create_engine(settings.url, **kwargs)


def get_engine(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Get or create the process-wide engine."""
    global _engine

    if _engine is None:
        _engine = create_db_engine(settings)
    return _engine


def get_session_factory(settings: Optional[DatabaseSettings] = None) -> sessionmaker:
    global _session_factory

    if _session_factory is None:
        _session_factory = make_session_factory(get_engine(settings))
    return _session_factory


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


def init_db(engine: Optional[Engine] = None) -> None:
    """Create missing tables."""
    Base.metadata.create_all(engine or get_engine())


@contextmanager
def get_db_session(
    settings: Optional[DatabaseSettings] = None
) -> Generator[Session, None, None]:
    """
    Get a database session as a context manager.

    Yields:
        Session: commits on success, rolls back on error.
    """
    session = get_session_factory(settings)()

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_engine() -> None:
    """
    Dispose of the engine and its pooled connections.

    Should be called during application shutdown.
    """
    global _engine, _session_factory

    if _engine is not None:
        logger.info("Closing database engine")
        _engine.dispose()
        _engine = None
        _session_factory = None
