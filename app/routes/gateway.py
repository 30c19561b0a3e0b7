"""Submission gateway endpoints.

Handlers stay thin: they derive transport inputs (client identity, origin,
CSRF cookie/header, idempotency key), hand them to the pipeline components
held on `app.state`, and render results. All failures are problem+json.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import anyio
from fastapi import APIRouter, Body, Request, Response
from fastapi.responses import JSONResponse

from app.http.client_identity import resolve_client
from app.http.error_mapping import SUCCESS_STATUS
from app.http.problem import PROBLEM_MEDIA_TYPE, gateway_problem
from app.http.request_id import request_id_of
from app.logic.conditional_resolver import applicable_questions, gateway_value
from app.logic.forgery_guard import (
    CSRF_COOKIE_MAX_AGE,
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    issue_token,
)
from app.logic.sanitizer import sanitize_answers
from app.logic.submission_orchestrator import SubmissionRequest, policy_for
from app.logic.survey_catalog import SurveyEntry
from app.models.error_codes import ErrorCode
from app.models.response_types import (
    ApplicableQuestionView,
    ApplicableQuestions,
    SubmissionStatus,
    SurveySummary,
)


router = APIRouter()
logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
MAX_IDEMPOTENCY_KEY_LENGTH = 255


def _survey_not_found(survey_id: str) -> JSONResponse:
    problem = {"title": "Survey not found", "status": 404, "detail": f"Unknown survey {survey_id!r}"}
    return JSONResponse(problem, status_code=404, media_type=PROBLEM_MEDIA_TYPE)


def _bad_body(detail: str) -> JSONResponse:
    problem = {
        "title": "Invalid Request",
        "status": 400,
        "detail": detail,
        "success": False,
        "error": detail,
        "code": ErrorCode.VALIDATION_ERROR,
    }
    return JSONResponse(problem, status_code=400, media_type=PROBLEM_MEDIA_TYPE)


def _entry(request: Request, survey_id: str) -> SurveyEntry | None:
    return request.app.state.catalog.get((survey_id or "").strip())


async def _read_answers(request: Request) -> Dict[str, Any]:
    """Parse a JSON object or a form body; repeated form keys become lists.

    Raises ValueError when the body is not an object.
    """
    content_type = (request.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
    if content_type in {"application/x-www-form-urlencoded", "multipart/form-data"}:
        form = await request.form()
        out: Dict[str, Any] = {}
        for key in form.keys():
            values = [v for v in form.getlist(key) if isinstance(v, str)]
            out[key] = values if len(values) > 1 else (values[0] if values else None)
        return out
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = await request.json()
    except ValueError as exc:
        raise ValueError("Request body must be valid JSON") from exc
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


@router.get(
    "/csrf-token",
    summary="Issue a per-session CSRF token",
    operation_id="issueCsrfToken",
    tags=["Security"],
)
def get_csrf_token(request: Request, response: Response):
    token = issue_token()
    response.set_cookie(
        CSRF_COOKIE_NAME,
        token,
        max_age=CSRF_COOKIE_MAX_AGE,
        httponly=True,
        secure=request.app.state.config.security.csrf_cookie_secure,
        samesite="strict",
        path="/",
    )
    response.headers["Cache-Control"] = "no-store"
    return {"csrf_token": token}


@router.get(
    "/surveys/{survey_id}",
    summary="Get survey metadata",
    operation_id="getSurvey",
    tags=["Surveys"],
)
def get_survey(survey_id: str, request: Request):
    entry = _entry(request, survey_id)
    if entry is None:
        return _survey_not_found(survey_id)
    config = entry.config
    return SurveySummary(
        survey_id=config.survey_id,
        title=config.title,
        description=config.description,
        version=config.version,
        gateway_field=config.gateway_field,
        csrf_enabled=config.security.csrf_enabled,
    ).model_dump()


@router.post(
    "/surveys/{survey_id}/applicable-questions",
    summary="Resolve the applicable questions for partial answers",
    operation_id="resolveApplicableQuestions",
    tags=["Surveys"],
)
def post_applicable_questions(
    survey_id: str,
    request: Request,
    answers: Optional[Dict[str, Any]] = Body(default=None),
):
    entry = _entry(request, survey_id)
    if entry is None:
        return _survey_not_found(survey_id)
    config = entry.config
    sanitized = sanitize_answers(answers or {}, config)
    applicable = applicable_questions(config, sanitized.answers)
    views = [
        ApplicableQuestionView(
            id=aq.id,
            type=aq.question.type,
            required=aq.required,
            rendered=aq.rendered,
            parent_id=aq.parent_id,
            options=list(aq.options),
        )
        for aq in applicable.values()
    ]
    return ApplicableQuestions(
        survey_id=config.survey_id,
        gateway_field=config.gateway_field,
        gateway_value=gateway_value(config, sanitized.answers),
        questions=views,
    ).model_dump()


@router.get(
    "/surveys/{survey_id}/submission-status",
    summary="Report the caller's submission standing without recording an attempt",
    operation_id="getSubmissionStatus",
    tags=["Submissions"],
)
def get_submission_status(survey_id: str, request: Request):
    entry = _entry(request, survey_id)
    if entry is None:
        return _survey_not_found(survey_id)
    state = request.app.state
    client = resolve_client(request, state.config.security.trust_proxy_headers)
    action = entry.config.security.rate_limit_action
    policy = policy_for(entry.config, state.abuse_guard.policy)
    status = state.abuse_guard.get_status(client.identifier, action, client.user_agent, policy)
    if status is None:
        # Store unavailable: report nothing rather than a guess
        return SubmissionStatus(survey_id=entry.survey_id, already_submitted=False, blocked=False).model_dump()
    return SubmissionStatus(
        survey_id=entry.survey_id,
        already_submitted=state.abuse_guard.has_already_submitted(client.identifier, action, policy),
        blocked=status.blocked_until is not None,
        remaining_attempts=status.remaining_attempts,
        window_minutes=status.window_minutes,
    ).model_dump()


@router.post(
    "/surveys/{survey_id}/submissions",
    summary="Submit evidence through the gateway pipeline",
    operation_id="createSubmission",
    tags=["Submissions"],
    status_code=SUCCESS_STATUS,
)
async def create_submission(survey_id: str, request: Request):
    entry = _entry(request, survey_id)
    if entry is None:
        return _survey_not_found(survey_id)
    try:
        answers = await _read_answers(request)
    except ValueError as exc:
        logger.info("submission.bad_body survey=%s reason=%s", entry.survey_id, exc)
        return _bad_body(str(exc))

    state = request.app.state
    client = resolve_client(request, state.config.security.trust_proxy_headers)
    idempotency_key = (request.headers.get(IDEMPOTENCY_HEADER) or "").strip() or None
    if idempotency_key is not None and len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        return _bad_body(f"{IDEMPOTENCY_HEADER} is too long")

    submission = SubmissionRequest(
        raw=answers,
        identifier=client.identifier,
        user_agent=client.user_agent,
        origin=request.headers.get("origin"),
        referer=request.headers.get("referer"),
        csrf_header=request.headers.get(CSRF_HEADER_NAME),
        csrf_stored=request.cookies.get(CSRF_COOKIE_NAME),
        idempotency_key=idempotency_key,
        request_id=request_id_of(request),
    )
    # The pipeline performs blocking store round-trips
    result = await anyio.to_thread.run_sync(state.orchestrator.submit, entry, submission)
    if not result.success:
        return gateway_problem(result)
    return JSONResponse(result.model_dump(by_alias=True, exclude_none=True), status_code=SUCCESS_STATUS)


__all__ = ["router"]
