"""Problem+JSON utilities and global exception handlers.

Defines the RFC7807 media type, the renderer for gateway failures and the
handler callables that produce application/problem+json responses. Gateway
problem bodies are a superset of the public response contract
(`success`, `error`, `code`).
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.http.error_mapping import status_for, title_for
from app.models.error_codes import ErrorCode
from app.models.response_types import SubmissionResult

PROBLEM_MEDIA_TYPE = "application/problem+json"

logger = logging.getLogger(__name__)


def gateway_problem(result: SubmissionResult) -> JSONResponse:
    """Render a failed SubmissionResult as problem+json with its mapped status."""
    status = status_for(result.code)
    body: Dict[str, Any] = {
        "type": "about:blank",
        "title": title_for(result.code),
        "status": status,
        **result.model_dump(by_alias=True, exclude_none=True),
    }
    if not body.get("warnings"):
        body.pop("warnings", None)
    headers: Dict[str, str] = {}
    if result.code == ErrorCode.RATE_LIMITED and result.retry_after_seconds is not None:
        headers["Retry-After"] = str(int(result.retry_after_seconds))
    return JSONResponse(body, status_code=status, media_type=PROBLEM_MEDIA_TYPE, headers=headers or None)


async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:  # noqa: D401
    status = int(getattr(exc, "status_code", 500) or 500)
    if isinstance(exc.detail, dict):
        detail = {"status": status, **exc.detail}
    else:
        detail = {"title": "Error", "status": status, "detail": str(exc.detail or "")}
    headers = {str(k): str(v) for k, v in (exc.headers or {}).items()}
    return JSONResponse(detail, status_code=status, media_type=PROBLEM_MEDIA_TYPE, headers=headers or None)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:  # noqa: D401
    problem = {
        "title": "Invalid Request",
        "status": 422,
        "detail": "Request validation failed",
        "errors": [
            {"loc": list(e.get("loc", ())), "msg": str(e.get("msg", "")), "type": str(e.get("type", ""))}
            for e in exc.errors()
        ],
    }
    return JSONResponse(problem, status_code=422, media_type=PROBLEM_MEDIA_TYPE)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:  # noqa: D401
    logger.error("unexpected_error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(
        {
            "title": "Internal Server Error",
            "status": 500,
            "success": False,
            "error": "Internal server error",
            "code": ErrorCode.INTERNAL_ERROR,
        },
        status_code=500,
        media_type=PROBLEM_MEDIA_TYPE,
    )


__all__ = [
    "PROBLEM_MEDIA_TYPE",
    "gateway_problem",
    "handle_http_exception",
    "handle_request_validation_error",
    "handle_unexpected_error",
]
