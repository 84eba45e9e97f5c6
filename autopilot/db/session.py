"""
Database engine and session factory.

The engine and session factory are created once at process start (see
autopilot.services) and passed into every component. Nothing here holds a
module-level connection.

Usage:
    from autopilot.db.session import make_engine, make_session_factory, init_db

    engine = make_engine("sqlite:///./autopilot.db")
    init_db(engine)
    sessions = make_session_factory(engine)

    with sessions.begin() as db:
        db.add(...)
"""

import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from autopilot.db.models import Base

logger = logging.getLogger(__name__)


def make_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine.

    SQLite gets check_same_thread disabled (FastAPI runs sync routes in a
    threadpool) and foreign keys switched on. In-memory SQLite uses a
    single shared connection so every session sees the same database.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    else:
        engine = create_engine(database_url, pool_pre_ping=True)

    logger.info(
        "db.engine.created",
        extra={"action": "db.engine.created", "dialect": engine.dialect.name},
    )
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory used by all components."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)
    logger.info(
        "db.schema.ready",
        extra={"action": "db.schema.ready", "tables": sorted(Base.metadata.tables)},
    )
