"""Lightweight SQL migrations runner.

Applies .sql files in lexical order from a migrations directory: `migrations/`
for PostgreSQL and `sqlite_migrations/` for SQLite. Skips rollback files and
records applied filenames in the `schema_migrations` table so a file is never
applied twice. Intended for local development, CI and simple deployments.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from sqlalchemy import text as sql_text
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]

_JOURNAL_DDL = (
    "CREATE TABLE IF NOT EXISTS schema_migrations ("
    "filename VARCHAR(255) PRIMARY KEY, applied_at VARCHAR(40) NOT NULL)"
)


def default_migrations_dir(engine: Engine) -> Path:
    name = (engine.dialect.name or "").lower()
    return PROJECT_ROOT / ("sqlite_migrations" if "sqlite" in name else "migrations")


def _iter_sql_files(root: Path) -> Iterable[Path]:
    for p in sorted(root.glob("*.sql")):
        # Skip rollback scripts in forward runs
        if "rollback" in p.name.lower():
            continue
        yield p


def _split_statements(sql: str) -> list[str]:
    # Comment lines go first so a ';' inside a comment never splits a statement
    body = "\n".join(ln for ln in sql.splitlines() if not ln.strip().startswith("--"))
    out: list[str] = []
    for stmt in body.split(";"):
        s = stmt.strip()
        if s and s.upper() not in {"BEGIN", "COMMIT", "END"}:
            out.append(s)
    return out


def _exec_sql_compat(conn: Connection, sql: str) -> None:
    """Execute a SQL file, one statement at a time on SQLite.

    SQLite's DB-API (pysqlite) does not allow multiple statements in a single
    execute() call. Other dialects receive the full script as-is.
    """
    name = (getattr(conn.dialect, "name", "") or "").lower()
    if "sqlite" in name:
        for stmt in _split_statements(sql):
            conn.exec_driver_sql(stmt)
        return
    conn.exec_driver_sql(sql)


def applied_migrations(engine: Engine) -> set[str]:
    with engine.begin() as conn:
        conn.exec_driver_sql(_JOURNAL_DDL)
        rows = conn.execute(sql_text("SELECT filename FROM schema_migrations")).fetchall()
    return {str(r[0]) for r in rows}


def apply_migrations(engine: Engine, migrations_dir: str | os.PathLike[str] | None = None) -> list[str]:
    """Apply pending migrations; returns the filenames applied in this run."""
    root = Path(migrations_dir) if migrations_dir is not None else default_migrations_dir(engine)
    if not root.exists():  # pragma: no cover - optional
        logger.warning("migrations_dir_missing path=%s", str(root))
        return []

    applied = applied_migrations(engine)
    newly: list[str] = []
    for sql_path in _iter_sql_files(root):
        fname = sql_path.name
        if fname in applied:
            continue
        sql = sql_path.read_text(encoding="utf-8")
        if not sql.strip():
            continue
        with engine.begin() as conn:
            _exec_sql_compat(conn, sql)
            conn.execute(
                sql_text("INSERT INTO schema_migrations (filename, applied_at) VALUES (:f, :t)"),
                {
                    "f": fname,
                    # ISO-8601 UTC without fractional seconds
                    "t": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
                },
            )
        logger.info("migration_applied file=%s", fname)
        newly.append(fname)
    return newly


__all__ = ["apply_migrations", "applied_migrations", "default_migrations_dir"]
