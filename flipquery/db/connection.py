"""SQLAlchemy engine for the flip history database.

Single shared engine built from ``settings.database_url``.  Generated
queries run through `readonly_connection`, which puts Postgres sessions in
READ ONLY transaction mode before anything executes.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from flipquery.core.config import get_settings
from flipquery.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        url = get_settings().database_url
        kwargs: dict = {"pool_pre_ping": True, "echo": False}
        if url.startswith("postgresql"):
            kwargs.update(pool_size=5, max_overflow=10)
        _engine = create_engine(url, **kwargs)
        logger.info("DB engine created  dialect=%s", _engine.dialect.name)
    return _engine


def reset_engine() -> None:
    """Dispose the shared engine so the next call rebuilds it from settings."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


@contextmanager
def readonly_connection() -> Generator[Connection, None, None]:
    """Yield a connection that cannot write (enforced server-side on Postgres)."""
    engine = get_engine()
    conn = engine.connect()
    try:
        if is_postgres(engine):
            conn.execute(text("SET TRANSACTION READ ONLY"))
        yield conn
    finally:
        conn.close()
