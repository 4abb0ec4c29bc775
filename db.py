"""Engine and session helpers.

SQLite is used for local and single-box deployments; any other SQLAlchemy
URL (PostgreSQL in production) goes through the same code path.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

import config


def get_engine(database_url: Optional[str] = None) -> Engine:
    """Create an engine for ``database_url`` (defaults to ``DATABASE_URL``)."""
    url = database_url or config.DATABASE_URL
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            try:
                cur.execute("PRAGMA foreign_keys = ON")
            finally:
                cur.close()

        return engine
    return create_engine(url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist."""
    import models  # noqa: F401  registers the tables on SQLModel.metadata

    SQLModel.metadata.create_all(engine)


def get_session(engine: Engine) -> Session:
    return Session(engine, expire_on_commit=False)
