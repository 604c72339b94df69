"""
Database session management for Rumbledore.

Engines and session factories are created explicitly by the caller (the
CLI, a worker process, or a test fixture). Nothing connects at import time.

Usage:
    from rumbledore.db import get_engine, create_session_factory, session_scope

    engine = get_engine(settings.database_url)
    factory = create_session_factory(engine)

    with session_scope(factory) as session:
        identities = session.query(CanonicalIdentity).all()
        # Commits automatically on exit, rolls back on exception
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rumbledore.config import Settings, get_settings
from rumbledore.db.models import Base

logger = logging.getLogger(__name__)


def get_engine(url: Optional[str] = None, settings: Optional[Settings] = None) -> Engine:
    """
    Create SQLAlchemy engine with connection pooling.

    The engine is configured with:
    - Connection pool sized from settings (server databases only)
    - Echo mode disabled (set LOG_LEVEL=DEBUG for SQL logging)
    - Pre-ping to verify connections before use (handles stale connections)

    Args:
        url: Connection URL; defaults to settings.database_url
        settings: Settings instance; defaults to get_settings()
    """
    settings = settings or get_settings()
    url = url or settings.database_url

    kwargs = {
        "pool_pre_ping": True,
        "echo": settings.log_level == "DEBUG",
    }
    # SQLite uses a single-connection pool that rejects sizing arguments
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.db_pool_size
        kwargs["max_overflow"] = settings.db_max_overflow

    return create_engine(url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to engine; commits are always explicit."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )


def init_db(engine: Engine) -> None:
    """Create all identity tables that do not exist yet."""
    Base.metadata.create_all(engine)
    logger.info("Identity tables ready on %s", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Automatically commits on successful exit, rolls back on exception.

    Raises:
        Any exception from the database operation (after rollback)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
