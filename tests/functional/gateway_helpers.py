"""Shared builders for the gateway functional tests.

Survey configurations, answer sets, a manually advanced clock and unique
client addresses. Imported by conftest and the test modules.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

ALLOWED_ORIGIN = "https://evidence.example.org"
_IP_COUNTER = itertools.count(1)


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def fresh_ip() -> str:
    """A client address no other test has used."""
    n = next(_IP_COUNTER)
    return f"10.{(n >> 16) & 255}.{(n >> 8) & 255}.{n & 255}"


def example_survey_data(**security: Any) -> Dict[str, Any]:
    """Small survey: gateway parent_type, a required description, a
    multi-number group, a filtered radio with a follow-up and a checkbox."""
    return {
        "surveyId": "example_survey",
        "title": "Example",
        "version": "v1",
        "submissionType": "example_v1",
        "gatewayField": "parent_type",
        "security": {"csrf_enabled": False, **security},
        "sections": [
            {
                "key": "core",
                "questions": [
                    {
                        "id": "parent_type",
                        "type": "radio",
                        "required": True,
                        "options": [
                            {"value": "paying", "label": "Paying"},
                            {"value": "receiving", "label": "Receiving"},
                        ],
                    },
                    {
                        "id": "description",
                        "type": "textarea",
                        "required": True,
                        "minLength": 20,
                        "maxLength": 200,
                        "sensitiveData": True,
                        "crisisProtocol": {"detector": "keywords"},
                    },
                    {
                        "id": "children",
                        "type": "multiNumber",
                        "numberInputs": [
                            {"id": "covered", "min": 1, "max": 20, "default": 1, "required": True},
                            {"id": "extra", "min": 0, "max": 20, "default": 0},
                        ],
                    },
                    {
                        "id": "impact",
                        "type": "radio",
                        "required": True,
                        "options": [
                            {"value": "fine", "label": "Fine"},
                            {"value": "reduced", "label": "Reduced"},
                            {"value": "short", "label": "Short"},
                        ],
                        "filterOptions": {"paying": ["fine", "reduced"], "receiving": ["fine", "short"]},
                        "followUp": {
                            "id": "work_change",
                            "type": "select",
                            "appliesTo": ["paying"],
                            "showIf": {"parentNotIn": ["fine"]},
                            "required": True,
                            "options": [
                                {"value": "none", "label": "None"},
                                {"value": "more_hours", "label": "More hours"},
                            ],
                        },
                    },
                    {
                        "id": "effects",
                        "type": "checkbox",
                        "options": [
                            {"value": "housing", "label": "Housing"},
                            {"value": "activities", "label": "Activities"},
                        ],
                    },
                    {
                        "id": "monthly_cost",
                        "type": "currency",
                        "appliesTo": ["receiving"],
                        "min": 0,
                        "max": 5000,
                    },
                ],
            }
        ],
    }


def valid_answers(**overrides: Any) -> Dict[str, Any]:
    answers: Dict[str, Any] = {
        "parent_type": "paying",
        "description": "The children lost their weekend activities.",
        "covered": 2,
        "impact": "reduced",
        "work_change": "more_hours",
        "effects": ["housing"],
        "consent_given": True,
    }
    answers.update(overrides)
    return answers

