"""Application factory for the submission gateway.

Builds the pipeline components once per application instance from the loaded
configuration and keeps them on `app.state`; routes read them from there.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from app.config import AppConfig, load_config
from app.db.base import get_engine, ping
from app.db.migrations_runner import apply_migrations
from app.http.body_limit import BodySizeLimitMiddleware
from app.http.problem import (
    handle_http_exception,
    handle_request_validation_error,
    handle_unexpected_error,
)
from app.http.request_id import RequestIdMiddleware
from app.logging_setup import configure_logging
from app.logic.abuse_guard import AbuseGuard, RateLimitPolicy, RateLimitStore
from app.logic.forgery_guard import ForgeryGuard
from app.logic.inmemory_state import MemoryRateLimitStore
from app.logic.rate_limit_monitor import RateLimitMonitor
from app.logic.repository_rate_limits import SqlRateLimitStore
from app.logic.repository_submissions import SubmissionRepository
from app.logic.risk_scanner import RiskScanner
from app.logic.submission_orchestrator import SubmissionOrchestrator
from app.logic.survey_catalog import BUNDLED_SURVEYS_DIR, SurveyCatalog
from app.middleware.cors import apply_cors
from app.routes import api_router

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def _auto_apply_migrations() -> bool:
    return os.getenv("AUTO_APPLY_MIGRATIONS", "").strip().lower() in {"1", "true", "yes", "on"}


def _rate_limit_store(config: AppConfig, engine: Engine, catalog: SurveyCatalog) -> RateLimitStore:
    rl = config.rate_limit
    if rl.backend == "memory":
        # Attempts must outlive the widest window any survey configures
        ttl_minutes = catalog.longest_window_minutes(rl.window_minutes)
        logger.warning(
            "rate_limit.memory_backend single_instance_only=true max_keys=%s ttl_minutes=%s",
            rl.memory_max_keys,
            ttl_minutes,
        )
        return MemoryRateLimitStore(max_keys=rl.memory_max_keys, ttl_minutes=ttl_minutes)
    return SqlRateLimitStore(engine)


def create_app(config: Optional[AppConfig] = None, catalog: Optional[SurveyCatalog] = None) -> FastAPI:
    configure_logging()
    config = config or load_config()
    catalog = catalog or SurveyCatalog.from_directories(BUNDLED_SURVEYS_DIR, config.surveys.config_dir)
    if config.surveys.default_survey_id not in catalog:
        logger.warning("survey_catalog.default_missing survey=%s", config.surveys.default_survey_id)

    engine = get_engine(config.database.dsn)
    store = _rate_limit_store(config, engine, catalog)
    monitor = RateLimitMonitor(store)
    policy = RateLimitPolicy(
        max_attempts=config.rate_limit.max_attempts,
        window_minutes=config.rate_limit.window_minutes,
        block_minutes=config.rate_limit.block_minutes,
    )
    abuse_guard = AbuseGuard(store, policy, on_latency=monitor.record_latency)
    forgery_guard = ForgeryGuard(config.security.allowed_origins)
    repository = SubmissionRepository(engine)

    app = FastAPI(title="Evidence Intake Submission Gateway", version="1.0.0")
    app.state.config = config
    app.state.engine = engine
    app.state.catalog = catalog
    app.state.monitor = monitor
    app.state.abuse_guard = abuse_guard
    app.state.forgery_guard = forgery_guard
    app.state.repository = repository
    app.state.orchestrator = SubmissionOrchestrator(forgery_guard, abuse_guard, repository, RiskScanner())

    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=config.security.max_body_bytes)
    apply_cors(app, origins=config.security.allowed_origins)
    app.add_middleware(RequestIdMiddleware)

    @app.on_event("startup")
    def _apply_migrations() -> None:  # pragma: no cover - exercised via integration
        if not _auto_apply_migrations():
            logger.info("AUTO_APPLY_MIGRATIONS disabled; skipping migrations at startup")
            return
        try:
            applied = apply_migrations(engine)
        except Exception:
            logger.error("Failed to apply migrations at startup", exc_info=True)
            raise
        logger.info("startup_migrations applied=%s", applied)

    @app.get("/health", tags=["Health"])
    def health():
        db_ok = ping(engine)
        body = {"status": "ok" if db_ok else "degraded", "db": db_ok, "surveys": catalog.ids()}
        return JSONResponse(
            body,
            status_code=200 if db_ok else 503,
            headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
        )

    app.include_router(api_router, prefix=API_PREFIX)
    logger.info(
        "app.created surveys=%s rate_limit_backend=%s origins=%s",
        catalog.ids(),
        config.rate_limit.backend,
        len(config.security.allowed_origins),
    )
    return app


__all__ = ["API_PREFIX", "create_app"]
