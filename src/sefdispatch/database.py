"""
Engine and session factory for the dispatch tables.

The process-wide engine is built lazily from settings. The queue, the sweeps
and the API all take a session factory explicitly, so tests can hand them an
in-memory SQLite one.
"""

from __future__ import annotations

import os
from threading import RLock
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from sefdispatch.config import get_settings
from sefdispatch.models.base import Base

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None
_lock = RLock()


def get_database_url() -> str:
    settings = get_settings()
    return os.getenv("SEFDISPATCH_DATABASE_URL") or settings.DATABASE_URL


def create_db_engine(database_url: Optional[str] = None, *, echo: bool = False) -> Engine:
    url = database_url or get_database_url()

    connect_args: dict = {}
    if "sqlite" in url:
        connect_args["check_same_thread"] = False

    if url.startswith("sqlite:///:memory:") or url == "sqlite://":
        from sqlalchemy.pool import StaticPool

        engine = create_engine(
            url,
            echo=echo,
            connect_args=connect_args,
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            url,
            echo=echo,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args=connect_args,
        )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record):  # pragma: no cover
        if "sqlite" in url:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


def create_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=bind
    )


def get_engine() -> Engine:
    """Lazily create the process engine from settings."""
    global _engine, _session_factory
    with _lock:
        if _engine is None:
            _engine = create_db_engine()
            _session_factory = create_session_factory(_engine)
        return _engine


def get_session_factory() -> sessionmaker:
    get_engine()
    return _session_factory  # type: ignore[return-value]


def import_all_models() -> None:
    # Registers every table on Base.metadata.
    from sefdispatch.models import audit, invoice, job, recurring, webhook  # noqa: F401


def init_db(*, create_tables: bool = False, bind_engine: Optional[Engine] = None) -> None:
    """
    Initialize database schema.

    When SCHEMA_MODE=migrations, this will NOT auto-create tables.
    Use `alembic upgrade head` for production deployments.
    """
    settings = get_settings()
    target_engine = bind_engine or get_engine()
    import_all_models()

    if create_tables:
        if settings.SCHEMA_MODE == "migrations":
            from sqlalchemy import inspect

            inspector = inspect(target_engine)
            if not inspector.has_table("dispatch_jobs"):
                raise RuntimeError(
                    "Database schema missing and SCHEMA_MODE=migrations; run `alembic upgrade head`"
                )
            return
        Base.metadata.create_all(bind=target_engine)
