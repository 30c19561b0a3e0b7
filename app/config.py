"""Configuration utilities for the submission gateway.

This module loads application configuration with the following rules:
- Primary source: `gateway_config.json` at the project root.
- Overrides: environment variables, then optional text files under `config/`.
- Validation: Pydantic models enforce required fields and value constraints.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator


CONFIG_DIR = Path("config")
ROOT_GATEWAY_CONFIG = Path("gateway_config.json")
logger = logging.getLogger(__name__)


def _read_config_file(rel_path: str) -> Optional[str]:
    path = CONFIG_DIR / rel_path
    try:
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        # Recoverable: log and ignore unreadable override
        logger.warning("Failed to read override %s: %s", path, e)
        return None
    return None


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)


def _truthy(value: object) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _split_list(value: object) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [p.strip() for p in str(value or "").split(",") if p.strip()]


class DatabaseConfig(BaseModel):
    dsn: str

    @field_validator("dsn")
    @classmethod
    def dsn_must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("database.dsn must be a non-empty string")
        return v


class SecurityConfig(BaseModel):
    allowed_origins: List[str] = Field(default_factory=list)
    csrf_cookie_secure: bool = True
    # Only enable behind a proxy that sets X-Forwarded-For itself
    trust_proxy_headers: bool = False
    max_body_bytes: int = Field(default=262144, gt=0)
    # None disables the maintenance routes
    maintenance_token: Optional[str] = None


class RateLimitConfig(BaseModel):
    backend: str = "database"
    window_minutes: int = Field(default=4320, gt=0)
    max_attempts: int = Field(default=1, ge=1)
    block_minutes: int = Field(default=60, gt=0)
    retention_days: int = Field(default=7, gt=0)
    memory_max_keys: int = Field(default=10000, gt=0)

    @field_validator("backend")
    @classmethod
    def backend_must_be_allowed(cls, v: str) -> str:
        allowed = {"database", "memory"}
        if v not in allowed:
            raise ValueError(f"rate_limit.backend must be one of {sorted(allowed)}")
        return v


class SurveysConfig(BaseModel):
    config_dir: Optional[str] = None
    default_survey_id: str = "cms_welfare_assessment"


class AppConfig(BaseModel):
    database: DatabaseConfig
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    surveys: SurveysConfig = Field(default_factory=SurveysConfig)


def _read_json_file(path: Path) -> dict:
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:  # pragma: no cover
        logger.error("Failed to read JSON config %s: %s", path, e)
    return {}


def load_config() -> AppConfig:
    """Load configuration with validation.

    Precedence (highest first):
    1) Environment variables
    2) Text files in `config/` (optional)
    3) gateway_config.json at project root (primary base)
    4) Safe defaults for development
    """

    base = _read_json_file(ROOT_GATEWAY_CONFIG)

    # Helpers to fetch from base JSON
    def _base(path: str, default: Optional[object] = None) -> Optional[object]:
        cur: object = base
        for key in path.split("."):
            if not isinstance(cur, dict) or key not in cur:
                return default
            cur = cur[key]
        return cur if cur is not None else default

    def _pick(env_key: str, file_key: str, base_path: str, default: Optional[object] = None) -> Optional[object]:
        value = _env(env_key)
        if value is None:
            value = _read_config_file(file_key)
        if value is None:
            value = _base(base_path, default)
        return value

    # Database
    dsn = (
        _env("TEST_DATABASE_URL")
        or _env("DATABASE_URL")
        or _read_config_file("database.url")
        or _base("database.dsn")
        or "sqlite+pysqlite:///./gateway.db"
    )

    # Security
    origins = _split_list(_pick("ALLOWED_ORIGINS", "security.allowed_origins", "security.allowed_origins", []))
    cookie_secure = _truthy(_pick("CSRF_COOKIE_SECURE", "security.csrf_cookie_secure", "security.csrf_cookie_secure", "true"))
    trust_proxy = _truthy(_pick("TRUST_PROXY_HEADERS", "security.trust_proxy_headers", "security.trust_proxy_headers", "false"))
    max_body_bytes = _pick("MAX_BODY_BYTES", "security.max_body_bytes", "security.max_body_bytes", 262144)
    maintenance_token = _pick("MAINTENANCE_TOKEN", "security.maintenance_token", "security.maintenance_token")

    # Rate limiting: raw values, the pydantic int fields coerce and validate them
    def _raw(env_key: str, file_key: str, base_path: str, default: int) -> str:
        return str(_pick(env_key, file_key, base_path, default)).strip()

    backend = str(_pick("RATE_LIMIT_BACKEND", "rate_limit.backend", "rate_limit.backend", "database")).strip()

    # Surveys
    survey_dir = _pick("SURVEY_CONFIG_DIR", "surveys.config_dir", "surveys.config_dir")
    default_survey = _pick("DEFAULT_SURVEY_ID", "surveys.default_survey_id", "surveys.default_survey_id", "cms_welfare_assessment")

    try:
        cfg = AppConfig(
            database=DatabaseConfig(dsn=str(dsn)),
            security=SecurityConfig(
                allowed_origins=origins,
                csrf_cookie_secure=cookie_secure,
                trust_proxy_headers=trust_proxy,
                max_body_bytes=str(max_body_bytes).strip(),
                maintenance_token=(str(maintenance_token).strip() or None) if maintenance_token else None,
            ),
            rate_limit=RateLimitConfig(
                backend=backend,
                window_minutes=_raw("RATE_LIMIT_WINDOW_MINUTES", "rate_limit.window_minutes", "rate_limit.window_minutes", 4320),
                max_attempts=_raw("RATE_LIMIT_MAX_ATTEMPTS", "rate_limit.max_attempts", "rate_limit.max_attempts", 1),
                block_minutes=_raw("RATE_LIMIT_BLOCK_MINUTES", "rate_limit.block_minutes", "rate_limit.block_minutes", 60),
                retention_days=_raw("RATE_LIMIT_RETENTION_DAYS", "rate_limit.retention_days", "rate_limit.retention_days", 7),
                memory_max_keys=_raw("RATE_LIMIT_MEMORY_MAX_KEYS", "rate_limit.memory_max_keys", "rate_limit.memory_max_keys", 10000),
            ),
            surveys=SurveysConfig(
                config_dir=str(survey_dir) if survey_dir else None,
                default_survey_id=str(default_survey),
            ),
        )
        return cfg
    except (PydanticValidationError, ValueError) as e:
        # Surface actionable message
        logger.error("Invalid application configuration: %s", e)
        raise


__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "RateLimitConfig",
    "SecurityConfig",
    "SurveysConfig",
    "load_config",
]
