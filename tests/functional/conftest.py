from __future__ import annotations

"""Functional test bootstrap for the submission gateway.

Functional tests use a file-backed SQLite database shared across the process.
The SQLite migrations are applied once at session start so the schema exists
before tests build the FastAPI app via TestClient.

This file is intentionally scoped under tests/functional/ so Behave
(integration) runs are unaffected.
"""

import os
import pathlib

import pytest

# Point the app at a file-backed SQLite database before any app import
_ROOT = pathlib.Path(__file__).resolve().parents[2]
_DB_FILE = _ROOT / "tmp" / "functional_tests.db"
_DB_FILE.parent.mkdir(parents=True, exist_ok=True)
if _DB_FILE.exists():
    _DB_FILE.unlink()

os.environ["TEST_DATABASE_URL"] = f"sqlite:///{_DB_FILE}"
os.environ["DATABASE_URL"] = os.environ["TEST_DATABASE_URL"]
# Disable app startup auto-migrations; SQLite migrations are applied below
os.environ["AUTO_APPLY_MIGRATIONS"] = "0"
os.environ["ALLOWED_ORIGINS"] = "evidence.example.org"
os.environ["CSRF_COOKIE_SECURE"] = "false"
# Each test client poses as its own caller through X-Forwarded-For
os.environ["TRUST_PROXY_HEADERS"] = "true"
os.environ["MAINTENANCE_TOKEN"] = "maint-secret"
os.environ.pop("RATE_LIMIT_BACKEND", None)

from gateway_helpers import FakeClock, example_survey_data  # noqa: E402


def _apply_sqlite_migrations() -> None:
    from app.db.base import get_engine
    from app.db.migrations_runner import apply_migrations

    engine = get_engine(os.environ["TEST_DATABASE_URL"])
    apply_migrations(engine, migrations_dir=str(_ROOT / "sqlite_migrations"))


@pytest.fixture(scope="session", autouse=True)
def functional_sqlite_bootstrap() -> None:
    """Session-level bootstrap: apply migrations once for the shared DB."""
    _apply_sqlite_migrations()
    yield


@pytest.fixture
def survey_config():
    from app.models.survey import load_survey_config

    return load_survey_config(example_survey_data())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    from app.db.base import get_engine

    return get_engine(os.environ["TEST_DATABASE_URL"])


@pytest.fixture
def app_config():
    from app.config import load_config

    return load_config()


@pytest.fixture
def client(app_config):
    """TestClient over the real app with the bundled surveys and SQLite."""
    from fastapi.testclient import TestClient

    from app.main import create_app

    with TestClient(create_app(app_config)) as c:
        yield c
