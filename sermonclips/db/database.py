"""
Database engine and session factory for the record store.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Base class for every table in the record store
Base = declarative_base()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for a database URL.

    SQLite connections are shared across executor threads, and an in-memory
    database is pinned to a single connection so every session sees it.
    """
    kwargs = {"echo": echo, "future": True}

    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    engine = create_engine(database_url, **kwargs)
    logger.info(f"Database engine created ({engine.url.get_backend_name()})")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create missing tables."""
    # Models must be imported so their tables are registered on Base
    from sermonclips.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
