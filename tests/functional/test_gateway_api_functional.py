"""HTTP-level functional tests for the submission gateway.

Exercises the FastAPI app end to end through TestClient: CSRF cookie
issuance, the bundled CMS survey, the small example survey (CSRF disabled)
loaded through a custom catalog, problem+json failures, status reporting and
the maintenance endpoints. Each test posts from its own client address via
X-Forwarded-For.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from jsonschema import Draft202012Validator

from app.logic.survey_catalog import BUNDLED_SURVEYS_DIR, SurveyCatalog, load_survey_file
from app.models.survey import load_survey_config

from gateway_helpers import ALLOWED_ORIGIN, example_survey_data, fresh_ip, valid_answers


ROOT = Path(__file__).resolve().parents[2]
RESULT_SCHEMA = json.loads((ROOT / "docs" / "schemas" / "SubmissionResult.schema.json").read_text(encoding="utf-8"))
API = "/api/v1"
CMS = "cms_welfare_assessment"
MAINT = {"Authorization": "Bearer maint-secret"}


def _assert_contract(body):
    errors = sorted(Draft202012Validator(RESULT_SCHEMA).iter_errors(body), key=str)
    assert not errors, [e.message for e in errors]


def _headers(ip=None, **extra):
    headers = {"Origin": ALLOWED_ORIGIN, "X-Forwarded-For": ip or fresh_ip(), "User-Agent": "pytest-browser"}
    headers.update(extra)
    return headers


def _cms_answers(**overrides):
    answers = {
        "parent_type": "paying",
        "children_affected": {"children_covered": 2, "additional_children": 1},
        "welfare_assessment": "never_asked",
        "financial_impact": "reduced_1_200",
        "work_impact": "working_more",
        "mental_health_scale": "moderate",
        "children_severity": "moderate",
        "children_impacts": ["anxiety_shown", "activities_reduced"],
        "welfare_raised": "no",
        "enforcement_impact": "minor",
        "shared_care": "not_applicable",
        "impact_statement": "My children no longer have their own bedroom at my home.",
        "consent_given": True,
    }
    answers.update(overrides)
    return answers


@pytest.fixture
def gateway_client(app_config):
    from fastapi.testclient import TestClient

    from app.main import create_app

    catalog = SurveyCatalog(
        [
            load_survey_file(BUNDLED_SURVEYS_DIR / "cms_welfare_assessment.json"),
            load_survey_config(example_survey_data()),
        ]
    )
    with TestClient(create_app(app_config, catalog=catalog)) as c:
        yield c


def _csrf(client):
    resp = client.get(f"{API}/csrf-token")
    assert resp.status_code == 200
    return resp.json()["csrf_token"]


def test_health_reports_database_and_surveys(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok" and body["db"] is True
    assert CMS in body["surveys"]
    assert resp.headers.get("X-Request-Id")


def test_request_id_is_echoed(client):
    resp = client.get("/health", headers={"X-Request-Id": "trace-123"})
    assert resp.headers["X-Request-Id"] == "trace-123"


def test_survey_metadata_and_unknown_survey(client):
    resp = client.get(f"{API}/surveys/{CMS}")
    assert resp.status_code == 200
    assert resp.json()["csrf_enabled"] is True
    assert resp.json()["gateway_field"] == "parent_type"

    missing = client.get(f"{API}/surveys/nope")
    assert missing.status_code == 404
    assert missing.headers["content-type"].startswith("application/problem+json")


def test_csrf_token_is_set_as_strict_http_only_cookie(client):
    resp = client.get(f"{API}/csrf-token")
    assert resp.status_code == 200
    token = resp.json()["csrf_token"]
    cookie_header = resp.headers["set-cookie"].lower()
    assert f"csrf_token={token}".lower() in cookie_header
    assert "httponly" in cookie_header
    assert "samesite=strict" in cookie_header
    assert "max-age=86400" in cookie_header
    assert resp.headers["cache-control"] == "no-store"


def test_full_cms_submission_flow(client):
    token = _csrf(client)
    resp = client.post(
        f"{API}/surveys/{CMS}/submissions",
        json=_cms_answers(csrf_token=token),
        headers=_headers(),
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    _assert_contract(body)
    assert body["success"] is True
    assert body["data"]["surveyId"] == CMS
    assert "survey_id" not in body["data"]

    row = client.app.state.repository.get_submission(body["data"]["id"])
    assert row["submission_type"] == "cms_scandal_v1"
    assert row["category"] == "paying"
    # covered 2 + additional 1 + aged-out default 0
    assert row["total_affected"] == 3
    assert row["answers"]["children_impacts"] == ["activities_reduced", "anxiety_shown"]


def test_csrf_header_is_accepted_in_place_of_body_field(client):
    token = _csrf(client)
    resp = client.post(
        f"{API}/surveys/{CMS}/submissions",
        json=_cms_answers(),
        headers=_headers(**{"X-CSRF-Token": token}),
    )
    assert resp.status_code == 201, resp.text


def test_crisis_answer_returns_advisory_warning(client):
    token = _csrf(client)
    resp = client.post(
        f"{API}/surveys/{CMS}/submissions",
        json=_cms_answers(csrf_token=token, mental_health_scale="crisis"),
        headers=_headers(),
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    _assert_contract(body)
    assert [w["questionId"] for w in body["warnings"]] == ["mental_health_scale"]
    assert body["warnings"][0]["type"] == "crisis_response"
    assert "question_id" not in body["warnings"][0]


def test_second_submission_is_rate_limited_with_retry_after(client):
    ip = fresh_ip()
    token = _csrf(client)
    first = client.post(f"{API}/surveys/{CMS}/submissions", json=_cms_answers(csrf_token=token), headers=_headers(ip))
    assert first.status_code == 201, first.text

    second = client.post(f"{API}/surveys/{CMS}/submissions", json=_cms_answers(csrf_token=token), headers=_headers(ip))
    assert second.status_code == 429
    assert second.headers["content-type"].startswith("application/problem+json")
    body = second.json()
    _assert_contract(body)
    assert body["code"] == "RATE_LIMITED"
    assert int(second.headers["Retry-After"]) == body["retry_after_seconds"]
    assert body["retry_after_seconds"] > 0


def test_missing_csrf_token_is_forbidden(client):
    client.cookies.clear()
    resp = client.post(f"{API}/surveys/{CMS}/submissions", json=_cms_answers(), headers=_headers())
    assert resp.status_code == 403
    _assert_contract(resp.json())
    assert resp.json()["code"] == "CSRF_MISSING"


def test_mismatched_csrf_token_is_forbidden(client):
    _csrf(client)
    resp = client.post(
        f"{API}/surveys/{CMS}/submissions", json=_cms_answers(csrf_token="forged"), headers=_headers()
    )
    assert resp.status_code == 403
    assert resp.json()["code"] == "CSRF_INVALID"


def test_foreign_origin_is_forbidden(client):
    token = _csrf(client)
    resp = client.post(
        f"{API}/surveys/{CMS}/submissions",
        json=_cms_answers(csrf_token=token),
        headers=_headers(Origin="https://attacker.example"),
    )
    assert resp.status_code == 403
    body = resp.json()
    _assert_contract(body)
    assert body == {
        "type": "about:blank",
        "title": "Forbidden",
        "status": 403,
        "success": False,
        "error": "Request origin not allowed",
        "code": "INVALID_ORIGIN",
    }


def test_validation_failure_lists_field_errors(client):
    token = _csrf(client)
    resp = client.post(
        f"{API}/surveys/{CMS}/submissions",
        json=_cms_answers(csrf_token=token, impact_statement="short", consent_given=False),
        headers=_headers(),
    )
    assert resp.status_code == 400
    body = resp.json()
    _assert_contract(body)
    assert body["code"] == "VALIDATION_ERROR"
    assert body["errors"]["impact_statement"] == "Minimum 20 characters required"
    assert "consent_given" in body["errors"]


def test_submission_to_unknown_survey_is_404(client):
    resp = client.post(f"{API}/surveys/missing/submissions", json={}, headers=_headers())
    assert resp.status_code == 404


@pytest.mark.parametrize("body", [b"{not json", b"[1, 2, 3]", b'"text"'])
def test_malformed_json_body_is_rejected(gateway_client, body):
    resp = gateway_client.post(
        f"{API}/surveys/example_survey/submissions",
        content=body,
        headers=_headers(**{"Content-Type": "application/json"}),
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"


def test_form_body_with_repeated_checkbox_keys(gateway_client):
    form = [
        ("parent_type", "paying"),
        ("description", "The children lost their weekend activities."),
        ("covered", "2"),
        ("impact", "reduced"),
        ("work_change", "more_hours"),
        ("effects", "activities"),
        ("effects", "housing"),
        ("consent_given", "on"),
    ]
    resp = gateway_client.post(
        f"{API}/surveys/example_survey/submissions",
        content="&".join(f"{k}={v.replace(' ', '+')}" for k, v in form),
        headers=_headers(**{"Content-Type": "application/x-www-form-urlencoded"}),
    )
    assert resp.status_code == 201, resp.text
    row = gateway_client.app.state.repository.get_submission(resp.json()["data"]["id"])
    assert row["answers"]["effects"] == ["housing", "activities"]
    assert row["answers"]["covered"] == 2


def test_repeated_idempotency_key_conflicts(gateway_client):
    key = f"key-{fresh_ip()}"
    url = f"{API}/surveys/example_survey/submissions"
    first = gateway_client.post(url, json=valid_answers(), headers=_headers(**{"Idempotency-Key": key}))
    assert first.status_code == 201, first.text
    again = gateway_client.post(url, json=valid_answers(), headers=_headers(**{"Idempotency-Key": key}))
    assert again.status_code == 409
    _assert_contract(again.json())
    assert again.json()["code"] == "DUPLICATE_SUBMISSION"


def test_overlong_idempotency_key_is_rejected(gateway_client):
    resp = gateway_client.post(
        f"{API}/surveys/example_survey/submissions",
        json=valid_answers(),
        headers=_headers(**{"Idempotency-Key": "k" * 256}),
    )
    assert resp.status_code == 400


def test_applicable_questions_follow_gateway_answer(gateway_client):
    url = f"{API}/surveys/example_survey/applicable-questions"
    empty = gateway_client.post(url)
    assert empty.status_code == 200
    assert [q["id"] for q in empty.json()["questions"]] == ["parent_type"]
    assert empty.json()["gateway_value"] is None

    receiving = gateway_client.post(url, json={"parent_type": "receiving"}).json()
    ids = [q["id"] for q in receiving["questions"]]
    assert "monthly_cost" in ids and "work_change" not in ids
    impact = next(q for q in receiving["questions"] if q["id"] == "impact")
    assert [o["value"] for o in impact["options"]] == ["fine", "short"]
    covered = next(q for q in receiving["questions"] if q["id"] == "covered")
    assert covered["parent_id"] == "children"


def test_submission_status_does_not_consume_attempts(gateway_client):
    ip = fresh_ip()
    url = f"{API}/surveys/example_survey/submission-status"
    before = gateway_client.get(url, headers=_headers(ip)).json()
    assert before["already_submitted"] is False and before["blocked"] is False
    again = gateway_client.get(url, headers=_headers(ip)).json()
    assert again == before

    resp = gateway_client.post(f"{API}/surveys/example_survey/submissions", json=valid_answers(), headers=_headers(ip))
    assert resp.status_code == 201
    after = gateway_client.get(url, headers=_headers(ip)).json()
    assert after["already_submitted"] is True
    assert after["remaining_attempts"] == 0


@pytest.fixture
def small_body_client(app_config):
    from fastapi.testclient import TestClient

    from app.main import create_app

    security = app_config.security.model_copy(update={"max_body_bytes": 2048})
    with TestClient(create_app(app_config.model_copy(update={"security": security}))) as c:
        yield c


def test_oversized_body_is_refused_before_the_pipeline(small_body_client):
    ip = fresh_ip()
    body = _cms_answers(impact_statement="x" * 5000)

    resp = small_body_client.post(f"{API}/surveys/{CMS}/submissions", json=body, headers=_headers(ip))

    assert resp.status_code == 413
    assert resp.headers["content-type"].startswith("application/problem+json")
    assert resp.json()["code"] == "VALIDATION_ERROR"
    assert resp.headers.get("X-Request-Id")
    status = small_body_client.get(f"{API}/surveys/{CMS}/submission-status", headers=_headers(ip)).json()
    assert status["already_submitted"] is False


def test_oversized_streamed_body_without_length_is_refused(small_body_client):
    chunks = [b'{"parent_type": "paying", "impact_statement": "', b"y" * 4096, b'"}']

    resp = small_body_client.post(
        f"{API}/surveys/{CMS}/applicable-questions",
        content=iter(chunks),
        headers=_headers(**{"Content-Type": "application/json"}),
    )

    assert resp.status_code == 413
    assert resp.json()["status"] == 413


def test_body_within_limit_is_served(small_body_client):
    resp = small_body_client.post(
        f"{API}/surveys/{CMS}/applicable-questions", json={"parent_type": "paying"}, headers=_headers()
    )
    assert resp.status_code == 200


def test_maintenance_requires_token(client):
    resp = client.get(f"{API}/maintenance/rate-limits/metrics")
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"
    wrong = client.get(f"{API}/maintenance/rate-limits/metrics", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401


def test_maintenance_endpoints_with_token(client):
    ip = fresh_ip()
    token = _csrf(client)
    client.post(f"{API}/surveys/{CMS}/submissions", json=_cms_answers(csrf_token=token), headers=_headers(ip))
    client.post(f"{API}/surveys/{CMS}/submissions", json=_cms_answers(csrf_token=token), headers=_headers(ip))

    metrics = client.get(f"{API}/maintenance/rate-limits/metrics?timeframe=day", headers=MAINT)
    assert metrics.status_code == 200
    assert metrics.json()["timeframe"] == "day"
    assert metrics.json()["blocked_requests"] >= 1

    bad = client.get(f"{API}/maintenance/rate-limits/metrics?timeframe=year", headers=MAINT)
    assert bad.status_code == 400

    activity = client.get(f"{API}/maintenance/rate-limits/activity?limit=5", headers=MAINT)
    assert activity.status_code == 200
    assert len(activity.json()["activity"]) <= 5

    status = client.get(f"{API}/maintenance/rate-limits/blocks/{ip}", headers=MAINT).json()
    assert status["blocked"] is True
    assert status["blocks"][0]["user_agent"] == "pytest-browser"

    events = client.get(f"{API}/maintenance/events", headers=MAINT).json()["events"]
    assert {"submission.accepted", "rate_limit.blocked"} <= {e["type"] for e in events}

    cleanup = client.post(f"{API}/maintenance/rate-limits/cleanup?retention_days=30", headers=MAINT)
    assert cleanup.status_code == 200
    assert cleanup.json()["retention_days"] == 30
    assert "deleted" in cleanup.json()


def test_maintenance_hidden_without_configured_token(monkeypatch):
    from fastapi.testclient import TestClient

    from app.config import load_config
    from app.main import create_app

    monkeypatch.delenv("MAINTENANCE_TOKEN", raising=False)
    with TestClient(create_app(load_config())) as c:
        resp = c.get(f"{API}/maintenance/rate-limits/metrics", headers=MAINT)
    assert resp.status_code == 404
