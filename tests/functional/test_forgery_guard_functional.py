"""Functional tests for origin and CSRF checks."""

from __future__ import annotations

import pytest

from app.logic.forgery_guard import ForgeryGuard, issue_token, submitted_token


@pytest.fixture
def guard():
    return ForgeryGuard(["https://evidence.example.org", "localhost"])


@pytest.mark.parametrize(
    "origin, referer, ok",
    [
        ("https://evidence.example.org", None, True),
        ("https://forms.evidence.example.org", None, True),
        ("http://localhost:3000", None, True),
        ("https://EVIDENCE.example.org.", None, True),
        (None, "https://evidence.example.org/survey?step=2", True),
        ("https://evil.example.com", None, False),
        ("https://evidence.example.org.evil.com", None, False),
        ("https://notevidence.example.org", None, False),
        ("null", None, False),
        (None, None, False),
        # Origin wins over a legitimate-looking referer
        ("https://evil.example.com", "https://evidence.example.org/", False),
    ],
)
def test_origin_allow_list(guard, origin, referer, ok):
    check = guard.check_origin(origin, referer)
    assert check.ok is ok
    if not ok:
        assert check.code == "INVALID_ORIGIN"


def test_empty_allow_list_disables_origin_check():
    assert ForgeryGuard([]).check_origin(None, None).ok is True


@pytest.mark.parametrize(
    "referer, embedded",
    [
        ("https://evidence.example.org/form?embed=true", True),
        ("https://evidence.example.org/form?embed=TRUE&x=1", True),
        ("https://evidence.example.org/form?embed=false", False),
        ("https://evidence.example.org/form", False),
        ("https://evil.example.com/form?embed=true", False),
        (None, False),
    ],
)
def test_embedding_requires_allowed_referer_with_flag(guard, referer, embedded):
    assert guard.is_embedded(referer) is embedded


def test_csrf_disabled_accepts_anything(guard):
    assert guard.check_token(False, None, None).ok


@pytest.mark.parametrize(
    "submitted, stored, embedded, code",
    [
        (None, "tok", False, "CSRF_MISSING"),
        ("", "tok", False, "CSRF_MISSING"),
        ("bad", "tok", False, "CSRF_INVALID"),
        ("tok", None, False, "CSRF_INVALID"),
        ("tok", "tok", False, None),
        (None, None, True, None),
        # An embedded page with a session token must still present it
        (None, "tok", True, "CSRF_MISSING"),
    ],
)
def test_csrf_token_comparison(guard, submitted, stored, embedded, code):
    check = guard.check_token(True, submitted, stored, embedded)
    assert check.ok is (code is None)
    assert check.code == code


def test_issued_tokens_are_unique_and_url_safe():
    tokens = {issue_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(len(t) == 32 and "/" not in t and "+" not in t for t in tokens)


def test_submitted_token_prefers_body_over_header():
    assert submitted_token(" body ", "header") == "body"
    assert submitted_token(["first", "second"], None) == "first"
    assert submitted_token("", " header ") == "header"
    assert submitted_token(None, "  ") is None
