"""Central error mapping for gateway outcomes.

Single source of truth for mapping ErrorCode values to HTTP statuses and
problem titles. Route modules must import from here instead of hardcoding
numbers.
"""

from __future__ import annotations

from app.models.error_codes import ErrorCode

ERROR_STATUS_MAP = {
    ErrorCode.RATE_LIMITED: {"status": 429, "title": "Too Many Requests"},
    ErrorCode.INVALID_ORIGIN: {"status": 403, "title": "Forbidden"},
    ErrorCode.CSRF_MISSING: {"status": 403, "title": "Forbidden"},
    ErrorCode.CSRF_INVALID: {"status": 403, "title": "Forbidden"},
    ErrorCode.VALIDATION_ERROR: {"status": 400, "title": "Bad Request"},
    ErrorCode.DUPLICATE_SUBMISSION: {"status": 409, "title": "Conflict"},
    ErrorCode.DATABASE_ERROR: {"status": 500, "title": "Internal Server Error"},
    ErrorCode.INTERNAL_ERROR: {"status": 500, "title": "Internal Server Error"},
}

SUCCESS_STATUS = 201


def status_for(code: str | None) -> int:
    return int(ERROR_STATUS_MAP.get(code or ErrorCode.INTERNAL_ERROR, ERROR_STATUS_MAP[ErrorCode.INTERNAL_ERROR])["status"])


def title_for(code: str | None) -> str:
    return str(ERROR_STATUS_MAP.get(code or ErrorCode.INTERNAL_ERROR, ERROR_STATUS_MAP[ErrorCode.INTERNAL_ERROR])["title"])


__all__ = ["ERROR_STATUS_MAP", "SUCCESS_STATUS", "status_for", "title_for"]
