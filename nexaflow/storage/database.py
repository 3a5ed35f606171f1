"""Database connection and session management."""

import os
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


DEFAULT_DATABASE_URL = "sqlite:///./nexaflow.db"

# Base class for all database models
Base = declarative_base()

_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

# SQLite allows one writer at a time; sessions against it are serialized.
_sqlite_lock = threading.RLock()


def configure_database(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """Create the engine for ``database_url`` and bind the session factory to it.

    Replaces any previously configured engine.
    """
    global _engine

    if database_url is None:
        database_url = os.getenv("NEXAFLOW_DATABASE_URL", DEFAULT_DATABASE_URL)

    reset_database_engine()

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": echo}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        _engine = create_engine(database_url, **kwargs)
    else:
        _engine = create_engine(database_url, echo=echo, pool_pre_ping=True)

    SessionLocal.configure(bind=_engine)
    return _engine


def get_database_engine() -> Engine:
    """Return the configured engine, configuring the default one on first use."""
    if _engine is None:
        configure_database()
    return _engine


def reset_database_engine():
    """Dispose of the current engine (mainly for testing)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def _is_sqlite() -> bool:
    return get_database_engine().dialect.name == "sqlite"


def get_db() -> Iterator[Session]:
    """Dependency to get database session."""
    get_database_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Transactional session: commits on success, rolls back on error."""
    lock = _sqlite_lock if _is_sqlite() else None
    if lock is not None:
        lock.acquire()
    try:
        db = next(get_db())
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
    finally:
        if lock is not None:
            lock.release()


def create_tables():
    """Create all database tables."""
    from . import models  # noqa: F401  registers the mappers
    Base.metadata.create_all(bind=get_database_engine())


def drop_tables():
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=get_database_engine())
