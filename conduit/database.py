import logging
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from conduit.config import get_settings

logger = logging.getLogger(__name__)

# Create Base class
Base = declarative_base()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    if "sqlite" in db_url:
        if "check_same_thread" not in connect_args:
            connect_args["check_same_thread"] = False
        connect_args.setdefault("timeout", 30)
    else:
        kwargs.setdefault("pool_pre_ping", True)

    return create_engine(db_url, connect_args=connect_args, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps ORM attributes readable after a commit,
    which the services rely on when they hand rows back to callers.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def _resolve_db_url() -> str:
    settings = get_settings()
    if settings.database_url:
        return settings.database_url
    return "sqlite:///:memory:" if settings.testing else "sqlite:///./conduit.db"


def get_session_factory() -> sessionmaker:
    """Get the default session factory for the application.

    Uses DATABASE_URL from environment or falls back to a local SQLite file
    (in-memory when ``TESTING`` is set).
    """
    return make_sessionmaker(make_engine(_resolve_db_url()))


@contextmanager
def db_session(session_factory: Any = None):
    """Unit-of-work context manager for services and background tasks.

    1. Auto-commit on success
    2. Auto-rollback on error
    3. Always close session

    Usage:
        with db_session() as db:
            crud.create_conversation(db, user_id=1, title="Hello")
    """
    factory = session_factory or get_session_factory()
    session = factory()

    try:
        yield session
        session.commit()
        logger.debug("Database session committed successfully")

    except Exception as e:
        session.rollback()
        logger.error("Database session rolled back due to error: %s", e)
        raise

    finally:
        session.close()


def initialize_database(engine: Engine) -> None:
    """Create all tables on *engine*."""
    # Importing the models registers them on ``Base.metadata``.
    from conduit.models import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
