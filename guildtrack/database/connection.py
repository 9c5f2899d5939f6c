"""
Database connection management for guildtrack.

Provides a lazily created SQLAlchemy engine, a session factory and a
transactional session context manager. SQLite is the default backend;
any SQLAlchemy URL is accepted.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from guildtrack.config import GuildtrackConfig, get_config

logger = logging.getLogger(__name__)

# Global engine and session factory (lazy-loaded)
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def get_db_path(config: Optional[GuildtrackConfig] = None) -> Optional[Path]:
    """
    Get the SQLite database file path.

    Args:
        config: Guildtrack configuration (uses global if not provided)

    Returns:
        Path to the SQLite database file, or None for in-memory and
        non-SQLite databases
    """
    if config is None:
        config = get_config()

    db_url = config.database_url
    if db_url in _IN_MEMORY_URLS or not db_url.startswith("sqlite:///"):
        return None
    return Path(db_url[len("sqlite:///"):])


def init_engine(config: Optional[GuildtrackConfig] = None) -> Engine:
    """
    Initialize the SQLAlchemy engine.

    Args:
        config: Guildtrack configuration (uses global if not provided)

    Returns:
        Configured SQLAlchemy engine
    """
    global _engine

    if _engine is not None:
        return _engine

    if config is None:
        config = get_config()

    db_url = config.database_url
    engine_kwargs: Dict[str, Any] = {"echo": False}

    if db_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {
            "check_same_thread": False,  # APScheduler callbacks may run off the creating thread
            "timeout": 30,
        }
        if db_url in _IN_MEMORY_URLS:
            # One shared connection, otherwise every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool
        else:
            db_path = get_db_path(config)
            if db_path is not None:
                db_path.parent.mkdir(parents=True, exist_ok=True)
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_recycle"] = 3600

    _engine = create_engine(db_url, **engine_kwargs)

    if db_url.startswith("sqlite"):
        @event.listens_for(_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Enable SQLite foreign key support."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    logger.debug(f"Database engine initialized: {db_url}")
    return _engine


def get_session_maker(config: Optional[GuildtrackConfig] = None) -> sessionmaker:
    """
    Get or create the session maker.

    Args:
        config: Guildtrack configuration (uses global if not provided)

    Returns:
        Configured session maker
    """
    global _SessionLocal

    if _SessionLocal is not None:
        return _SessionLocal

    engine = init_engine(config)
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        # Rows are handed back to async callers after the session closes
        expire_on_commit=False,
        bind=engine,
    )

    return _SessionLocal


@contextmanager
def get_db_session(config: Optional[GuildtrackConfig] = None) -> Generator[Session, None, None]:
    """
    Get a database session context manager.

    Commits on success, rolls back and re-raises on error.

    Usage:
        with get_db_session() as session:
            schedule = session.get(ScheduledRefresh, schedule_id)

    Args:
        config: Guildtrack configuration (uses global if not provided)

    Yields:
        SQLAlchemy Session
    """
    SessionLocal = get_session_maker(config)
    session = SessionLocal()

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dispose_engine() -> None:
    """Dispose the global engine and forget the session factory."""
    global _engine, _SessionLocal

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def create_tables(config: Optional[GuildtrackConfig] = None) -> None:
    """
    Create all database tables that do not exist yet.

    Args:
        config: Guildtrack configuration (uses global if not provided)
    """
    from guildtrack.database.models import Base

    engine = init_engine(config)
    Base.metadata.create_all(bind=engine)
    logger.debug("Database tables created")

