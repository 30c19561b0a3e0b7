"""SQLAlchemy engine management and liveness check.

The gateway targets PostgreSQL in production but supports SQLite for local
development and CI. No declarative models are defined here; repositories run
hand-written SQL through the shared Engine.
"""

from __future__ import annotations

import logging
import os

from sqlalchemy import create_engine, text as sql_text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def _db_url() -> str:
    return (
        os.getenv("TEST_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or "sqlite+pysqlite:///:memory:"
    )


# Module-level cached Engine to ensure a single shared engine per URL
_ENGINE: Engine | None = None
_ENGINE_URL: str | None = None


def get_engine(url: str | None = None) -> Engine:
    """Return a singleton SQLAlchemy Engine for the given URL.

    For SQLite in-memory URLs, use a StaticPool to keep a single connection
    alive across threads; file-backed SQLite allows cross-thread use because
    sync route handlers run in a worker pool.
    """
    global _ENGINE, _ENGINE_URL
    resolved_url = url or _db_url()

    if _ENGINE is None or _ENGINE_URL != resolved_url:
        kwargs: dict = {"future": True, "pool_pre_ping": True}
        if resolved_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in resolved_url:
                kwargs["poolclass"] = StaticPool
        _ENGINE = create_engine(resolved_url, **kwargs)
        _ENGINE_URL = resolved_url
        logger.info("db.engine_created dialect=%s", _ENGINE.dialect.name)

    return _ENGINE


def ping(engine: Engine | None = None) -> bool:
    """Return True if a trivial query succeeds."""
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(sql_text("SELECT 1"))
        return True
    except SQLAlchemyError:
        logger.error("db.ping_failed", exc_info=True)
        return False


__all__ = ["get_engine", "ping"]
