"""
Database Configuration and Connection Management

Provides engine setup, connection pooling, and session management with
commit-on-success / rollback-on-error semantics.

Design Considerations:
- Connection pooling for server databases, thread-safe SQLite for local runs
- SQLAlchemy session management through context managers
- Session factories are injectable so repositories can be tested against
  an isolated in-memory database
"""

import os
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, ContextManager, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from src.storage.models import Base

logger = logging.getLogger(__name__)

# Database configuration
DB_PATH = os.getenv("DATABASE_URL", "sqlite:///data/inbox_drafts.db")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))

SessionScope = Callable[[], ContextManager[Session]]


def create_db_engine(url: str, echo: Optional[bool] = None) -> Engine:
    """
    Create an engine with pooling appropriate for the backend.

    Args:
        url: SQLAlchemy database URL
        echo: Log emitted SQL; defaults to the SQL_ECHO environment variable

    Returns:
        Configured SQLAlchemy engine
    """
    if echo is None:
        echo = os.getenv("SQL_ECHO", "False").lower() == "true"

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_timeout=DB_POOL_TIMEOUT,
        pool_pre_ping=True,
        echo=echo,
    )


engine = create_db_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """
    Create all tables that do not exist yet.

    Args:
        bind: Engine to initialize; defaults to the module engine

    Raises:
        RuntimeError: If schema creation fails
    """
    target = bind or engine
    try:
        if target.url.drivername.startswith("sqlite") and target.url.database not in (None, "", ":memory:"):
            Path(target.url.database).parent.mkdir(parents=True, exist_ok=True)

        logger.info("Initializing database schema")
        Base.metadata.create_all(bind=target)
        logger.info("Database schema initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise RuntimeError(f"Failed to initialize database: {str(e)}")


def make_session_scope(session_factory: Callable[[], Session]) -> SessionScope:
    """
    Build a session context manager bound to a specific session factory.

    Args:
        session_factory: Callable returning a new SQLAlchemy session

    Returns:
        Zero-argument callable usable as ``with scope() as session``
    """
    @contextmanager
    def scope() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {str(e)}")
            raise
        finally:
            session.close()

    return scope


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Provide a session from the module engine with commit/rollback handling.

    Yields:
        SQLAlchemy session for database operations

    Raises:
        Exception: Re-raises any exceptions that occur during session use
    """
    with make_session_scope(SessionLocal)() as session:
        yield session
