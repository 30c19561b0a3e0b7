"""SQL-backed rate limit store.

Attempts, violations and blocks live in `rate_limits`,
`rate_limit_violations` and `rate_limit_blocks`. Timestamps are bound as
UTC ISO-8601 strings so the same statements run on SQLite (TEXT columns,
lexical order) and PostgreSQL (TIMESTAMPTZ columns, implicit cast).
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import text as sql_text
from sqlalchemy.engine import Connection, Engine

from app.db.base import get_engine
from app.logic.abuse_guard import AdmitResult, AttemptRecord, BlockRecord, ViolationRecord


logger = logging.getLogger(__name__)


def _ts(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Any) -> Optional[datetime]:
    """Normalize a driver timestamp (datetime or ISO text) to aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _is_postgres(conn: Connection) -> bool:
    return (getattr(conn.dialect, "name", "") or "").lower().startswith("postgres")


_COUNT_SQL = sql_text(
    "SELECT COUNT(*), MIN(created_at) FROM rate_limits "
    "WHERE identifier = :identifier AND action = :action AND created_at > :since"
)

_ADMIT_SQL = sql_text(
    """
    INSERT INTO rate_limits (id, identifier, action, user_agent, created_at)
    SELECT :id, :identifier, :action, :user_agent, :created_at
    WHERE (
        SELECT COUNT(*) FROM rate_limits
        WHERE identifier = :identifier AND action = :action AND created_at > :since
    ) < :max_attempts
    """
)

_INSERT_ATTEMPT_SQL = sql_text(
    "INSERT INTO rate_limits (id, identifier, action, user_agent, created_at) "
    "VALUES (:id, :identifier, :action, :user_agent, :created_at)"
)

_INSERT_VIOLATION_SQL = sql_text(
    """
    INSERT INTO rate_limit_violations
        (id, identifier, action, user_agent, attempt_count, metadata, created_at)
    VALUES (:id, :identifier, :action, :user_agent, :attempt_count, :metadata, :created_at)
    """
)

_UPSERT_BLOCK_SQL = sql_text(
    """
    INSERT INTO rate_limit_blocks (id, identifier, user_agent, blocked_until, reason, created_at)
    VALUES (:id, :identifier, :user_agent, :blocked_until, :reason, :created_at)
    ON CONFLICT (identifier, user_agent) DO UPDATE SET
        blocked_until = excluded.blocked_until,
        reason = excluded.reason,
        created_at = excluded.created_at
    """
)


class SqlRateLimitStore:
    """Rate limit store over a SQLAlchemy engine."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    # Writes

    def create_counter_attempt(self, attempt: AttemptRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(_INSERT_ATTEMPT_SQL, self._attempt_params(attempt))

    def try_record_attempt(self, attempt: AttemptRecord, since: datetime, max_attempts: int) -> AdmitResult:
        """Insert the attempt only while the window count is below the limit.

        One conditional INSERT inside one transaction; on PostgreSQL an
        advisory transaction lock on the (identifier, action) key serializes
        concurrent admits for the same caller.
        """
        with self.engine.begin() as conn:
            if _is_postgres(conn):
                conn.execute(
                    sql_text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                    {"key": f"{attempt.identifier}|{attempt.action}"},
                )
            params = self._attempt_params(attempt)
            params.update({"since": _ts(since), "max_attempts": int(max_attempts)})
            inserted = conn.execute(_ADMIT_SQL, params).rowcount == 1
            count, oldest = conn.execute(
                _COUNT_SQL,
                {"identifier": attempt.identifier, "action": attempt.action, "since": _ts(since)},
            ).one()
        return AdmitResult(admitted=inserted, count=int(count or 0), oldest=_parse_ts(oldest))

    def append_violation(self, violation: ViolationRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(_INSERT_VIOLATION_SQL, self._violation_params(violation))

    def upsert_block(self, block: BlockRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(_UPSERT_BLOCK_SQL, self._block_params(block))

    def record_violation_and_block(self, violation: ViolationRecord, block: BlockRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(_INSERT_VIOLATION_SQL, self._violation_params(violation))
            conn.execute(_UPSERT_BLOCK_SQL, self._block_params(block))

    # Reads

    def count_attempts_since(self, identifier: str, action: str, since: datetime) -> int:
        with self.engine.connect() as conn:
            count, _ = conn.execute(
                _COUNT_SQL, {"identifier": identifier, "action": action, "since": _ts(since)}
            ).one()
        return int(count or 0)

    def oldest_attempt_since(self, identifier: str, action: str, since: datetime) -> Optional[datetime]:
        with self.engine.connect() as conn:
            _, oldest = conn.execute(
                _COUNT_SQL, {"identifier": identifier, "action": action, "since": _ts(since)}
            ).one()
        return _parse_ts(oldest)

    def find_active_block(self, identifier: str, user_agent: str, now: datetime) -> Optional[BlockRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sql_text(
                    "SELECT identifier, user_agent, blocked_until, reason, created_at "
                    "FROM rate_limit_blocks "
                    "WHERE identifier = :identifier AND user_agent = :user_agent AND blocked_until > :now"
                ),
                {"identifier": identifier, "user_agent": user_agent or "", "now": _ts(now)},
            ).first()
        return self._block_from_row(row) if row is not None else None

    def list_active_blocks(self, identifier: str, now: datetime) -> List[BlockRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                sql_text(
                    "SELECT identifier, user_agent, blocked_until, reason, created_at "
                    "FROM rate_limit_blocks WHERE identifier = :identifier AND blocked_until > :now "
                    "ORDER BY blocked_until DESC"
                ),
                {"identifier": identifier, "now": _ts(now)},
            ).fetchall()
        return [self._block_from_row(r) for r in rows]

    def list_attempts(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[AttemptRecord]:
        sql = "SELECT identifier, action, user_agent, created_at FROM rate_limits"
        params: dict = {}
        if since is not None:
            sql += " WHERE created_at >= :since"
            params["since"] = _ts(since)
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(sql_text(sql), params).fetchall()
        return [AttemptRecord(r[0], r[1], r[2] or "", _parse_ts(r[3])) for r in rows]

    def list_violations(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[ViolationRecord]:
        sql = (
            "SELECT identifier, action, user_agent, attempt_count, created_at, metadata "
            "FROM rate_limit_violations"
        )
        params: dict = {}
        if since is not None:
            sql += " WHERE created_at >= :since"
            params["since"] = _ts(since)
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(sql_text(sql), params).fetchall()
        out: List[ViolationRecord] = []
        for r in rows:
            try:
                meta = json.loads(r[5]) if isinstance(r[5], str) else dict(r[5] or {})
            except ValueError:
                logger.warning("rate_limit_violation.metadata_unreadable identifier=%s", r[0])
                meta = {}
            out.append(ViolationRecord(r[0], r[1], r[2] or "", int(r[3] or 0), _parse_ts(r[4]), meta))
        return out

    # Housekeeping

    def delete_attempts_before(self, cutoff: datetime) -> int:
        with self.engine.begin() as conn:
            res = conn.execute(
                sql_text("DELETE FROM rate_limits WHERE created_at < :cutoff"), {"cutoff": _ts(cutoff)}
            )
        return int(res.rowcount or 0)

    def delete_expired_blocks(self, now: datetime) -> int:
        with self.engine.begin() as conn:
            res = conn.execute(
                sql_text("DELETE FROM rate_limit_blocks WHERE blocked_until <= :now"), {"now": _ts(now)}
            )
        return int(res.rowcount or 0)

    # Row helpers

    @staticmethod
    def _attempt_params(attempt: AttemptRecord) -> dict:
        return {
            "id": uuid.uuid4().hex,
            "identifier": attempt.identifier,
            "action": attempt.action,
            "user_agent": attempt.user_agent or "",
            "created_at": _ts(attempt.created_at),
        }

    @staticmethod
    def _violation_params(violation: ViolationRecord) -> dict:
        return {
            "id": uuid.uuid4().hex,
            "identifier": violation.identifier,
            "action": violation.action,
            "user_agent": violation.user_agent or "",
            "attempt_count": int(violation.attempt_count),
            "metadata": json.dumps(violation.metadata, sort_keys=True),
            "created_at": _ts(violation.created_at),
        }

    @staticmethod
    def _block_params(block: BlockRecord) -> dict:
        return {
            "id": uuid.uuid4().hex,
            "identifier": block.identifier,
            "user_agent": block.user_agent or "",
            "blocked_until": _ts(block.blocked_until),
            "reason": block.reason,
            "created_at": _ts(block.created_at or block.blocked_until),
        }

    @staticmethod
    def _block_from_row(row: Any) -> BlockRecord:
        return BlockRecord(
            identifier=row[0],
            user_agent=row[1] or "",
            blocked_until=_parse_ts(row[2]),
            reason=row[3] or "",
            created_at=_parse_ts(row[4]),
        )


__all__ = ["SqlRateLimitStore"]
