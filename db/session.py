"""
db/session.py

Engine and session factory shared by the API process, the scheduler and the
CLI. Components receive the session factory and open one short-lived
session per operation.
"""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from db.config import EnginePoolSettings, is_postgres_url, resolve_database_url

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def create_db_engine(pool_settings: EnginePoolSettings | None = None) -> Engine:
    database_url = resolve_database_url()
    if not is_postgres_url(database_url):
        raise RuntimeError(
            "The monitor requires PostgreSQL (row locks with SKIP LOCKED); "
            f"got '{database_url.split(':', 1)[0]}'."
        )

    pool = pool_settings or EnginePoolSettings.from_env()
    # Each worker thread holds a session while it claims and settles a job.
    return create_engine(
        database_url,
        echo=pool.echo,
        pool_pre_ping=True,
        pool_recycle=pool.recycle_seconds,
        pool_size=pool.size,
        max_overflow=pool.max_overflow,
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        expire_on_commit=False,
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    Process-wide session factory bound to the configured PostgreSQL engine.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory
