"""Submission pipeline.

Strictly ordered stages, each short-circuiting with a stable error code:

    ORIGIN_CHECK -> RATE_LIMIT -> CSRF -> SANITIZE -> RESOLVE_APPLICABLE
    -> VALIDATE_SCHEMA -> RISK_SCAN (advisory) -> PERSIST

A recorded rate-limit attempt is never rolled back when a later stage fails.
The final write fails closed: an unconfirmed write is never reported as
success, and store details never reach the caller.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from app.logic.abuse_guard import AbuseGuard, RateLimitPolicy, utcnow
from app.logic.conditional_resolver import ApplicableQuestion, applicable_questions, gateway_value
from app.logic.events import SUBMISSION_ACCEPTED, publish
from app.logic.forgery_guard import ForgeryGuard, submitted_token
from app.logic.repository_submissions import (
    DuplicateSubmissionError,
    SubmissionRecord,
    SubmissionRepository,
    SubmissionStoreError,
)
from app.logic.risk_scanner import RiskScanner
from app.logic.sanitizer import sanitize_answers
from app.logic.schema_compiler import validate_answers
from app.logic.survey_catalog import SurveyEntry
from app.models.error_codes import ErrorCode
from app.models.question_kind import QuestionKind
from app.models.response_types import RiskWarning, SubmissionAck, SubmissionResult
from app.models.survey import CONSENT_FIELD, CSRF_FIELD, Question, SurveyConfig


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


class Stage:
    ORIGIN_CHECK = "ORIGIN_CHECK"
    RATE_LIMIT = "RATE_LIMIT"
    CSRF = "CSRF"
    SANITIZE = "SANITIZE"
    RESOLVE_APPLICABLE = "RESOLVE_APPLICABLE"
    VALIDATE_SCHEMA = "VALIDATE_SCHEMA"
    RISK_SCAN = "RISK_SCAN"
    PERSIST = "PERSIST"

    ORDER = (
        ORIGIN_CHECK,
        RATE_LIMIT,
        CSRF,
        SANITIZE,
        RESOLVE_APPLICABLE,
        VALIDATE_SCHEMA,
        RISK_SCAN,
        PERSIST,
    )


@dataclass
class SubmissionRequest:
    """Transport-independent inputs gathered by the HTTP edge."""

    raw: Mapping[str, Any]
    identifier: str = "unknown"
    user_agent: str = ""
    origin: Optional[str] = None
    referer: Optional[str] = None
    csrf_header: Optional[str] = None
    csrf_stored: Optional[str] = None
    idempotency_key: Optional[str] = None
    request_id: Optional[str] = None


def policy_for(config: SurveyConfig, base: RateLimitPolicy) -> RateLimitPolicy:
    """Survey-level rate limit overrides on top of the application policy."""
    sec = config.security
    return replace(
        base,
        max_attempts=sec.rate_limit_max_attempts or base.max_attempts,
        window_minutes=sec.rate_limit_window_minutes or base.window_minutes,
    )


def _total_group(config: SurveyConfig) -> Optional[Question]:
    if config.total_group is not None:
        return config.question(config.total_group)
    for q in config.iter_questions():
        if q.type == QuestionKind.MULTI_NUMBER:
            return q
    return None


def compute_total_affected(config: SurveyConfig, data: Mapping[str, Any], gateway: Optional[str]) -> int:
    """Sum the total group's sub-fields, using defaults for absent values.

    Zero when the survey has no group or the group does not apply.
    """
    group = _total_group(config)
    if group is None or not group.applies(gateway):
        return 0
    total = 0.0
    for sub in group.number_inputs:
        value = data.get(sub.id)
        if value is None:
            value = sub.default or 0
        total += float(value)
    return int(total)


def redact_answers(answers: Mapping[str, Any], config: SurveyConfig) -> Dict[str, Any]:
    """Copy of the answers safe to log: sensitive and free-text values are masked."""
    masked = {
        e.question.id
        for e in config.iter_fields()
        if e.question.sensitive
        or e.question.type in QuestionKind.FREE_TEXT
        or (e.parent is not None and e.parent.sensitive)
    }
    return {k: (REDACTED if k in masked else v) for k, v in answers.items()}


def _failure(
    code: str,
    error: str,
    stage: str,
    errors: Optional[Dict[str, str]] = None,
    retry_after_seconds: Optional[int] = None,
    blocked_until: Optional[str] = None,
) -> SubmissionResult:
    return SubmissionResult(
        success=False,
        error=error,
        code=code,
        errors=errors,
        retry_after_seconds=retry_after_seconds,
        blocked_until=blocked_until,
        failed_stage=stage,
    )


class SubmissionOrchestrator:
    def __init__(
        self,
        forgery_guard: ForgeryGuard,
        abuse_guard: AbuseGuard,
        repository: SubmissionRepository,
        scanner: Optional[RiskScanner] = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.forgery_guard = forgery_guard
        self.abuse_guard = abuse_guard
        self.repository = repository
        self.scanner = scanner or RiskScanner()
        self._clock = clock
        self._new_id = id_factory

    def submit(self, entry: SurveyEntry, request: SubmissionRequest) -> SubmissionResult:
        """Run the pipeline; never raises."""
        progress = {"stage": Stage.ORIGIN_CHECK}
        try:
            result = self._run(entry, request, progress)
        except Exception:
            logger.error(
                "submission.internal_error survey=%s stage=%s request_id=%s",
                entry.survey_id,
                progress["stage"],
                request.request_id,
                exc_info=True,
            )
            result = _failure(ErrorCode.INTERNAL_ERROR, "Internal server error", progress["stage"])
        if result.success:
            logger.info(
                "submission.accepted survey=%s id=%s warnings=%s request_id=%s",
                entry.survey_id,
                result.data.id if result.data else None,
                len(result.warnings),
                request.request_id,
            )
        else:
            logger.info(
                "submission.rejected survey=%s stage=%s code=%s request_id=%s",
                entry.survey_id,
                result.failed_stage,
                result.code,
                request.request_id,
            )
        return result

    def _run(self, entry: SurveyEntry, request: SubmissionRequest, progress: Dict[str, str]) -> SubmissionResult:
        config = entry.config

        def enter(stage: str) -> None:
            progress["stage"] = stage
            logger.debug("submission.stage stage=%s survey=%s request_id=%s", stage, config.survey_id, request.request_id)

        enter(Stage.ORIGIN_CHECK)
        origin = self.forgery_guard.check_origin(request.origin, request.referer)
        if not origin.ok:
            return _failure(origin.code or ErrorCode.INVALID_ORIGIN, origin.message or "", Stage.ORIGIN_CHECK)

        enter(Stage.RATE_LIMIT)
        limit = self.abuse_guard.check(
            request.identifier,
            config.security.rate_limit_action,
            request.user_agent,
            policy_for(config, self.abuse_guard.policy),
        )
        if not limit.allowed:
            return _failure(
                ErrorCode.RATE_LIMITED,
                limit.message or "Too many attempts",
                Stage.RATE_LIMIT,
                retry_after_seconds=limit.retry_after_seconds,
                blocked_until=limit.blocked_until,
            )

        enter(Stage.CSRF)
        token = self.forgery_guard.check_token(
            config.security.csrf_enabled,
            submitted_token(request.raw.get(CSRF_FIELD), request.csrf_header),
            request.csrf_stored,
            embedded=origin.embedded,
        )
        if not token.ok:
            return _failure(token.code or ErrorCode.CSRF_INVALID, token.message or "", Stage.CSRF)

        enter(Stage.SANITIZE)
        sanitized = sanitize_answers(request.raw, config)

        enter(Stage.RESOLVE_APPLICABLE)
        applicable = applicable_questions(config, sanitized.answers)

        enter(Stage.VALIDATE_SCHEMA)
        outcome = validate_answers(entry.schema, sanitized.answers, applicable)
        if not outcome.ok:
            return _failure(
                ErrorCode.VALIDATION_ERROR, "Validation failed", Stage.VALIDATE_SCHEMA, errors=outcome.errors
            )

        enter(Stage.RISK_SCAN)
        warnings = self._scan(config, outcome.data, applicable)

        enter(Stage.PERSIST)
        gateway = gateway_value(config, outcome.data)
        answers = {k: v for k, v in outcome.data.items() if k != CONSENT_FIELD}
        record = SubmissionRecord(
            id=self._new_id(),
            survey_id=config.survey_id,
            submission_type=config.submission_type or config.survey_id,
            category=gateway,
            total_affected=compute_total_affected(config, outcome.data, gateway),
            consent_given=True,
            answers=answers,
            created_at=self._clock(),
            submission_key=request.idempotency_key,
        )
        try:
            submission_id = self.repository.create_submission(record)
        except DuplicateSubmissionError:
            logger.warning("submission.duplicate survey=%s request_id=%s", config.survey_id, request.request_id)
            return _failure(ErrorCode.DUPLICATE_SUBMISSION, "Duplicate submission detected", Stage.PERSIST)
        except SubmissionStoreError:
            logger.error(
                "submission.persist_failed security_event=true survey=%s request_id=%s answers=%s",
                config.survey_id,
                request.request_id,
                redact_answers(answers, config),
                exc_info=True,
            )
            return _failure(ErrorCode.DATABASE_ERROR, "Failed to save evidence submission", Stage.PERSIST)

        publish(
            SUBMISSION_ACCEPTED,
            {
                "id": submission_id,
                "survey_id": config.survey_id,
                "category": gateway,
                "total_affected": record.total_affected,
                "warnings": len(warnings),
            },
        )
        return SubmissionResult(
            success=True,
            data=SubmissionAck(id=submission_id, survey_id=config.survey_id),
            warnings=warnings,
        )

    def _scan(
        self,
        config: SurveyConfig,
        data: Mapping[str, Any],
        applicable: Mapping[str, ApplicableQuestion],
    ) -> List[RiskWarning]:
        try:
            return self.scanner.scan(config, data, applicable)
        except Exception:
            logger.error("submission.risk_scan_failed survey=%s", config.survey_id, exc_info=True)
            return []


__all__ = [
    "Stage",
    "SubmissionOrchestrator",
    "SubmissionRequest",
    "compute_total_affected",
    "policy_for",
    "redact_answers",
]
