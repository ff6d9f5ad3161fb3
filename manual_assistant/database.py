"""
Database engine and session factory for the user allowlist.

Uses synchronous SQLAlchemy; routes run in FastAPI's threadpool.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

logger = logging.getLogger("manual_assistant.database")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the engine for the allowlist database.

    For sqlite URLs the parent directory is created and connections may be
    shared across threadpool workers.
    """
    url = make_url(database_url)
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, echo=echo, pool_pre_ping=True, connect_args=connect_args)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables. Intended for first start and tests."""
    logger.info("initializing database tables url=%s", engine.url.render_as_string(hide_password=True))
    Base.metadata.create_all(engine)
