"""Functional tests for the Risk Scanner.

Warnings are advisory: scanning never raises and never blocks a submission.
"""

from __future__ import annotations

from app.logic.conditional_resolver import applicable_questions
from app.logic.risk_scanner import DEFAULT_RESOURCES, RiskScanner
from app.logic.survey_catalog import BUNDLED_SURVEYS_DIR, load_survey_file
from app.models.survey import load_survey_config

from gateway_helpers import example_survey_data, valid_answers


def _scan(config, answers, scanner=None):
    scanner = scanner or RiskScanner()
    return scanner.scan(config, answers, applicable_questions(config, answers))


def test_keyword_in_free_text_raises_crisis_warning(survey_config):
    answers = valid_answers(description="Some days I think about ending it all, honestly.")
    warnings = _scan(survey_config, answers)
    assert len(warnings) == 1
    assert warnings[0].type == "crisis_response"
    assert warnings[0].question_id == "description"
    assert warnings[0].resources == DEFAULT_RESOURCES


def test_keyword_match_is_case_insensitive(survey_config):
    warnings = _scan(survey_config, valid_answers(description="I have considered SUICIDE more than once."))
    assert [w.question_id for w in warnings] == ["description"]


def test_no_keywords_no_warnings(survey_config):
    assert _scan(survey_config, valid_answers()) == []


def test_disabled_crisis_protocol_returns_nothing():
    config = load_survey_config(example_survey_data(crisis_protocol_enabled=False))
    assert _scan(config, valid_answers(description="thinking about suicide every day now")) == []


def test_failing_detector_is_swallowed(survey_config):
    def explode(value, protocol):
        raise RuntimeError("detector bug")

    scanner = RiskScanner({"keywords": explode})
    answers = valid_answers(description="thinking about suicide every day now")
    assert _scan(survey_config, answers, scanner) == []


def test_unknown_detector_is_ignored():
    data = example_survey_data()
    data["sections"][0]["questions"][1]["crisisProtocol"] = {"detector": "sentiment"}
    config = load_survey_config(data)
    assert _scan(config, valid_answers(description="thinking about suicide every day now")) == []


def test_registered_detector_is_used(survey_config):
    scanner = RiskScanner()
    scanner.register("keywords", lambda value, protocol: "weekend" in str(value))
    warnings = _scan(survey_config, valid_answers(), scanner)
    assert [w.question_id for w in warnings] == ["description"]


def test_inapplicable_questions_are_not_scanned(survey_config):
    # Without a gateway answer only the gateway question is scanned
    answers = {"description": "thinking about suicide every day now"}
    assert _scan(survey_config, answers) == []


def test_bundled_survey_flags_crisis_option_with_configured_resources():
    config = load_survey_file(BUNDLED_SURVEYS_DIR / "cms_welfare_assessment.json")
    answers = {
        "parent_type": "receiving",
        "mental_health_scale": "crisis",
        "impact_statement": "Our household budget no longer covers school trips.",
    }
    warnings = _scan(config, answers)
    assert [w.question_id for w in warnings] == ["mental_health_scale"]
    assert "emergency" in warnings[0].resources
