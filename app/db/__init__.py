"""Database bootstrap utilities for the submission gateway.

This module exposes convenience imports for engine construction, a liveness
check and the migrations runner that applies SQL files from `migrations/` or
`sqlite_migrations/`. The DB layer is intentionally minimal and does not leak
ORM models into route handlers.
"""

from app.db.base import get_engine, ping
from app.db.migrations_runner import apply_migrations

__all__ = [
    "get_engine",
    "ping",
    "apply_migrations",
]
