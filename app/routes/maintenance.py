"""Rate-limit monitoring and housekeeping endpoints.

Guarded by a bearer token (`MAINTENANCE_TOKEN`). When no token is configured
the endpoints answer 404 so their existence is not advertised.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.logic.events import get_buffered_events


router = APIRouter(prefix="/maintenance")
logger = logging.getLogger(__name__)

TIMEFRAMES = ("hour", "day", "week")


def require_maintenance_token(request: Request) -> None:
    expected = request.app.state.config.security.maintenance_token
    if not expected:
        raise HTTPException(status_code=404, detail={"title": "Not Found"})
    header = request.headers.get("authorization") or ""
    scheme, _, supplied = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(supplied.strip().encode("utf-8"), expected.encode("utf-8")):
        logger.warning("maintenance.unauthorized path=%s", request.url.path)
        raise HTTPException(
            status_code=401,
            detail={"title": "Unauthorized", "detail": "A valid maintenance token is required"},
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.get(
    "/rate-limits/metrics",
    summary="Aggregate rate limiter metrics",
    operation_id="getRateLimitMetrics",
    tags=["Maintenance"],
    dependencies=[Depends(require_maintenance_token)],
)
def get_metrics(request: Request, timeframe: str = Query("hour")):
    if timeframe not in TIMEFRAMES:
        raise HTTPException(
            status_code=400,
            detail={"title": "Invalid timeframe", "detail": f"timeframe must be one of {list(TIMEFRAMES)}"},
        )
    return {"timeframe": timeframe, **request.app.state.monitor.get_metrics(timeframe)}


@router.get(
    "/rate-limits/activity",
    summary="Recent attempts and violations, newest first",
    operation_id="getRateLimitActivity",
    tags=["Maintenance"],
    dependencies=[Depends(require_maintenance_token)],
)
def get_activity(request: Request, limit: int = Query(50, ge=1, le=500)):
    return {"activity": request.app.state.monitor.get_recent_activity(limit)}


@router.get(
    "/rate-limits/blocks/{identifier}",
    summary="Block status and guard latency for one identifier",
    operation_id="getIdentifierBlockStatus",
    tags=["Maintenance"],
    dependencies=[Depends(require_maintenance_token)],
)
def get_identifier_status(identifier: str, request: Request):
    return request.app.state.monitor.identifier_status(identifier)


@router.post(
    "/rate-limits/cleanup",
    summary="Delete expired attempts and blocks",
    operation_id="cleanupRateLimits",
    tags=["Maintenance"],
    dependencies=[Depends(require_maintenance_token)],
)
def post_cleanup(request: Request, retention_days: int | None = Query(None, ge=1)):
    state = request.app.state
    days = retention_days or state.config.rate_limit.retention_days
    result = state.abuse_guard.cleanup(days)
    return {"retention_days": days, **result}


@router.get(
    "/events",
    summary="Drain buffered domain events",
    operation_id="drainEvents",
    tags=["Maintenance"],
    dependencies=[Depends(require_maintenance_token)],
)
def get_events(clear: bool = Query(True)):
    return {"events": get_buffered_events(clear=clear)}


__all__ = ["router", "require_maintenance_token"]
