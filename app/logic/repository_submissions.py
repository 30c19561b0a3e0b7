"""Submission record persistence.

Writes one `evidence_submissions` row per accepted request. A uniqueness
violation (repeated id or Idempotency-Key) raises DuplicateSubmissionError;
every other store failure raises SubmissionStoreError.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import text as sql_text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.db.base import get_engine


logger = logging.getLogger(__name__)


class SubmissionStoreError(RuntimeError):
    """The submission could not be durably written."""


class DuplicateSubmissionError(SubmissionStoreError):
    """A submission with the same id or submission key already exists."""


@dataclass(frozen=True)
class SubmissionRecord:
    id: str
    survey_id: str
    submission_type: str
    category: Optional[str]
    total_affected: int
    consent_given: bool
    answers: Dict[str, Any]
    created_at: datetime
    submission_key: Optional[str] = None


_INSERT_SQL = sql_text(
    """
    INSERT INTO evidence_submissions
        (id, created_at, survey_id, submission_type, category, total_affected,
         consent_given, answers, submission_key)
    VALUES
        (:id, :created_at, :survey_id, :submission_type, :category, :total_affected,
         :consent_given, :answers, :submission_key)
    """
)


_UNIQUE_VIOLATION_PGCODE = "23505"


def _is_unique_violation(exc: IntegrityError) -> bool:
    """True only for a uniqueness conflict; NOT NULL or CHECK failures are not duplicates."""
    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode is not None:
        return str(pgcode) == _UNIQUE_VIOLATION_PGCODE
    message = str(orig or exc).lower()
    return "unique constraint failed" in message or "duplicate key value" in message


class SubmissionRepository:
    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def create_submission(self, record: SubmissionRecord) -> str:
        params = {
            "id": record.id,
            "created_at": record.created_at.astimezone(timezone.utc).isoformat(timespec="microseconds"),
            "survey_id": record.survey_id,
            "submission_type": record.submission_type,
            "category": record.category,
            "total_affected": int(record.total_affected),
            "consent_given": bool(record.consent_given),
            "answers": json.dumps(record.answers, sort_keys=True, ensure_ascii=False),
            "submission_key": record.submission_key,
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(_INSERT_SQL, params)
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateSubmissionError("duplicate submission") from exc
            raise SubmissionStoreError("submission insert violated a constraint") from exc
        except SQLAlchemyError as exc:
            raise SubmissionStoreError("submission insert failed") from exc
        return record.id

    def get_submission(self, submission_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(
                sql_text(
                    "SELECT id, survey_id, submission_type, category, total_affected, consent_given, "
                    "answers, submission_key, created_at FROM evidence_submissions WHERE id = :id"
                ),
                {"id": submission_id},
            ).mappings().first()
        if row is None:
            return None
        out = dict(row)
        if isinstance(out.get("answers"), str):
            out["answers"] = json.loads(out["answers"])
        out["consent_given"] = bool(out.get("consent_given"))
        return out


__all__ = [
    "DuplicateSubmissionError",
    "SubmissionRecord",
    "SubmissionRepository",
    "SubmissionStoreError",
]
