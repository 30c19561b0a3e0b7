"""Stable error codes returned by the submission gateway.

Single source of truth for the `code` field of gateway responses. Route and
logic modules must import from here instead of hardcoding strings.
"""

from __future__ import annotations


class ErrorCode:
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_ORIGIN = "INVALID_ORIGIN"
    CSRF_MISSING = "CSRF_MISSING"
    CSRF_INVALID = "CSRF_INVALID"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_SUBMISSION = "DUPLICATE_SUBMISSION"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    ALL = (
        RATE_LIMITED,
        INVALID_ORIGIN,
        CSRF_MISSING,
        CSRF_INVALID,
        VALIDATION_ERROR,
        DUPLICATE_SUBMISSION,
        DATABASE_ERROR,
        INTERNAL_ERROR,
    )


__all__ = ["ErrorCode"]
