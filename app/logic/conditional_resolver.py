"""Applicability resolution for a survey's questions.

Given the configuration and the current (sanitized) answers, computes the
subset of fields the respondent can see. Resolution depends on submitted data,
so it is re-run on every call and never cached across requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from app.models.question_kind import QuestionKind, QuestionShape
from app.models.survey import Question, QuestionOption, ShowIf, SurveyConfig


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplicableQuestion:
    """A question in the applicable set together with its narrowed options."""

    question: Question
    options: tuple[QuestionOption, ...] = ()
    parent_id: Optional[str] = None

    @property
    def id(self) -> str:
        return self.question.id

    @property
    def option_values(self) -> tuple[str, ...]:
        return tuple(o.value for o in self.options)

    @property
    def rendered(self) -> bool:
        # Enumerated fields with every option filtered out are not shown
        if self.question.type in QuestionKind.ENUMERATED:
            return bool(self.options)
        return True

    @property
    def required(self) -> bool:
        return self.question.required and self.rendered


def _canon(tok: object) -> str:
    if isinstance(tok, bool):
        return "true" if tok else "false"
    s = str(tok).strip()
    return s.lower() if s.lower() in {"true", "false"} else s


def _tokens(value: Any) -> list[str]:
    """Canonical tokens for a parent value; empty when unanswered."""
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple, set)) else [value]
    return [_canon(v) for v in items if v is not None and str(v).strip() != ""]


def _equal(actual: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple)):
        return sorted(_tokens(actual)) == sorted(_tokens(expected))
    return _tokens(actual) == _tokens(expected)


def gateway_value(config: SurveyConfig, answers: Mapping[str, Any]) -> Optional[str]:
    """Return the gateway field's answer when it is one of its options."""
    raw = answers.get(config.gateway_field)
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if raw is None:
        return None
    value = str(raw).strip()
    return value if value in config.gateway_question.option_values else None


def narrow_options(question: Question, gateway: Optional[str]) -> tuple[QuestionOption, ...]:
    """Apply `filter_options` for the gateway value; never removes the question."""
    options = tuple(question.options)
    if not question.filter_options or gateway is None:
        return options
    allowed = question.filter_options.get(gateway)
    if allowed is None:
        return options
    keep = set(allowed)
    return tuple(o for o in options if o.value in keep)


def is_follow_up_visible(show_if: Optional[ShowIf], parent_value: Any, answers: Mapping[str, Any]) -> bool:
    """Return True if a follow-up's predicate passes.

    Without a predicate the follow-up is shown alongside its parent. With one,
    at least one of the parent's canonical values must survive `parent_in` and
    `parent_not_in`, and every `answers_equal` pair must match.
    """
    if show_if is None:
        return True
    values = _tokens(parent_value)
    if not values:
        return False
    allowed = {_canon(v) for v in show_if.parent_in}
    denied = {_canon(v) for v in show_if.parent_not_in}
    candidates = [v for v in values if (not allowed or v in allowed) and v not in denied]
    if not candidates:
        return False
    for qid, expected in show_if.answers_equal.items():
        if not _equal(answers.get(qid), expected):
            return False
    return True


def _add(
    out: Dict[str, ApplicableQuestion],
    question: Question,
    gateway: Optional[str],
    parent_id: Optional[str],
) -> None:
    if question.shape == QuestionShape.GROUP:
        for sub in question.number_inputs:
            out[sub.id] = ApplicableQuestion(sub.as_question(question.applies_to), (), question.id)
        return
    out[question.id] = ApplicableQuestion(question, narrow_options(question, gateway), parent_id)


def applicable_questions(config: SurveyConfig, answers: Mapping[str, Any]) -> Dict[str, ApplicableQuestion]:
    """Compute the applicable field set in configuration order.

    - No (legal) gateway answer: only the gateway question.
    - Otherwise every question whose `applies_to` admits the gateway value,
      multi-number groups expanded to their sub-fields, plus each follow-up
      whose own `applies_to` and `show_if` pass.
    """
    gateway_q = config.gateway_question
    gateway = gateway_value(config, answers)
    out: Dict[str, ApplicableQuestion] = {}
    if gateway is None:
        _add(out, gateway_q, None, None)
        return out

    for q in config.iter_questions():
        if not q.applies(gateway):
            continue
        _add(out, q, gateway, None)
        parent, child = q, q.follow_up
        while child is not None:
            if not child.applies(gateway):
                break
            if not is_follow_up_visible(child.show_if, answers.get(parent.id), answers):
                break
            _add(out, child, gateway, parent.id)
            parent, child = child, child.follow_up
    logger.debug(
        "resolver.applicable survey=%s gateway=%s count=%s", config.survey_id, gateway, len(out)
    )
    return out


__all__ = [
    "ApplicableQuestion",
    "applicable_questions",
    "gateway_value",
    "is_follow_up_visible",
    "narrow_options",
]
