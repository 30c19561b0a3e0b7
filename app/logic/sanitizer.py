"""Type-dispatched cleansing of untrusted answers.

Runs strictly before validation. Every rule is idempotent:
`sanitize(sanitize(v, q), q) == sanitize(v, q)` for any raw value and any
configured question. Raw text is capped before markup stripping, which runs
in a single linear pass.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from app.models.question_kind import QuestionKind, QuestionShape
from app.models.survey import CONSENT_FIELD, CSRF_FIELD, Question, SurveyConfig


DEFAULT_NUMBER_MIN = 0
DEFAULT_NUMBER_MAX = 999999
TEXT_MAX_LENGTH = 10000
UNKNOWN_FIELD_MAX_LENGTH = 10000
RAW_TEXT_HEADROOM = 4

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
# An unclosed script block runs to the end of the text
_SCRIPT_BLOCK_RE = re.compile(r"<script\b.*?(?:</script\s*>|\Z)", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^<>]*>")
_ANGLE_RE = re.compile(r"[<>]")
# javascript: URIs and inline on*= handlers, with any run of separators after them
_ACTIVE_CONTENT_RE = re.compile(r"javascript\s*:[\s:=]*|\bon\w+\s*=[\s:=]*", re.IGNORECASE)
_CURRENCY_NOISE_RE = re.compile(r"[£$€,\s]")

_TRUTHY = {"true", "on", "1", "yes"}
_UNCHECKED = {"", "false", "off"}


@dataclass
class SanitizedAnswers:
    answers: Dict[str, Any] = field(default_factory=dict)
    csrf_token: Optional[str] = None


def strip_markup(text: str) -> str:
    """Remove script blocks, tags, javascript: URIs and inline handlers.

    One pass, linear in the input. Angle brackets left after tag removal are
    dropped, and active content is replaced by a single space so the text on
    either side can never join into a new match.
    """
    text = _CONTROL_CHARS_RE.sub("", text)
    text = _SCRIPT_BLOCK_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    text = _ANGLE_RE.sub("", text)
    return _ACTIVE_CONTENT_RE.sub(" ", text)


def _first(value: Any) -> Any:
    # Repeated form keys arrive as lists; scalar fields keep the first value
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _as_text(value: Any) -> Optional[str]:
    value = _first(value)
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return ""
    return str(value)


def sanitize_text(value: Any, max_length: Optional[int]) -> Optional[str]:
    text = _as_text(value)
    if text is None:
        return None
    limit = max_length or TEXT_MAX_LENGTH
    # Markup may shrink the text, so keep some headroom beyond the limit
    text = text[: limit * RAW_TEXT_HEADROOM]
    cleaned = strip_markup(text).strip()
    return cleaned[:limit].rstrip()


def _parse_number(value: Any, currency: bool) -> Optional[float]:
    value = _first(value)
    if value is None:
        return None
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text == "":
        return None
    if currency:
        text = _CURRENCY_NOISE_RE.sub("", text)
    try:
        return float(text)
    except ValueError:
        return math.nan


def sanitize_number(value: Any, question: Question) -> Optional[float | int]:
    """Coerce to a number clamped to the question's bounds.

    Blank input stays absent; anything unparseable becomes 0 before clamping.
    """
    currency = question.type == QuestionKind.CURRENCY
    number = _parse_number(value, currency)
    if number is None:
        return None
    if math.isnan(number) or math.isinf(number):
        number = 0.0
    low = question.min if question.min is not None else DEFAULT_NUMBER_MIN
    high = question.max if question.max is not None else DEFAULT_NUMBER_MAX
    number = max(low, min(high, number))
    if currency:
        number = round(number, 2)
    return int(number) if float(number).is_integer() else number


def sanitize_choice(value: Any, question: Question) -> Optional[str]:
    text = _as_text(value)
    if text is None:
        return None
    text = text.strip()
    return text if text in question.option_values else None


def sanitize_checkbox(value: Any, question: Question) -> list[str]:
    """Normalize to the ordered list of legal, distinct selections.

    A missing group yields an empty list, never absence.
    """
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple, set)) else [value]
    picked: set[str] = set()
    for item in items:
        token = _as_text(item)
        if token is None:
            continue
        token = token.strip()
        if token.lower() in _UNCHECKED:
            continue
        picked.add(token)
    return [v for v in question.option_values if v in picked]


def sanitize_group(value: Any, question: Question) -> Dict[str, Any]:
    if not isinstance(value, Mapping):
        return {}
    out: Dict[str, Any] = {}
    for sub in question.number_inputs:
        if sub.id in value:
            out[sub.id] = sanitize_number(value[sub.id], sub.as_question(question.applies_to))
    return out


def sanitize_unknown(value: Any) -> Any:
    """Trim and hard-cap strings of unconfigured fields; never coerce types."""
    if isinstance(value, str):
        return value.strip()[:UNKNOWN_FIELD_MAX_LENGTH].rstrip()
    if isinstance(value, (list, tuple)):
        return [sanitize_unknown(v) for v in value]
    if isinstance(value, Mapping):
        return {str(k)[:UNKNOWN_FIELD_MAX_LENGTH]: sanitize_unknown(v) for k, v in value.items()}
    return value


def sanitize_consent(value: Any) -> bool:
    value = _first(value)
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def sanitize(value: Any, question: Optional[Question]) -> Any:
    """Sanitize one raw value according to its question's type."""
    if question is None:
        return sanitize_unknown(value)
    if question.shape == QuestionShape.GROUP:
        return sanitize_group(value, question)
    kind = question.type
    if kind in QuestionKind.FREE_TEXT:
        return sanitize_text(value, question.max_length)
    if kind in QuestionKind.NUMERIC:
        return sanitize_number(value, question)
    if kind in QuestionKind.SINGLE_CHOICE:
        return sanitize_choice(value, question)
    if kind == QuestionKind.CHECKBOX:
        return sanitize_checkbox(value, question)
    return sanitize_unknown(value)  # pragma: no cover - kinds are closed


def sanitize_answers(raw: Mapping[str, Any], config: SurveyConfig) -> SanitizedAnswers:
    """Sanitize a whole raw submission against the survey configuration.

    - The CSRF token is split out and never becomes an answer.
    - Multi-number parents are never answers; a mapping posted under the
      parent id is spread onto its sub-fields unless they were sent directly.
    - Every checkbox group is present as a list, possibly empty.
    - `consent_given` is always present as a boolean.
    """
    fields: Dict[str, Question] = {e.question.id: e.question for e in config.iter_fields()}
    groups: Dict[str, Question] = {
        q.id: q for q in config.iter_questions() if q.shape == QuestionShape.GROUP
    }
    result = SanitizedAnswers()
    token = _as_text(raw.get(CSRF_FIELD))
    result.csrf_token = token.strip() if token and token.strip() else None

    for key, value in raw.items():
        if key in (CSRF_FIELD, CONSENT_FIELD):
            continue
        group = groups.get(key)
        if group is not None:
            for sub_id, sub_value in sanitize_group(value, group).items():
                if sub_id not in raw:
                    result.answers[sub_id] = sub_value
            continue
        result.answers[key] = sanitize(value, fields.get(key))

    for qid, question in fields.items():
        if question.type == QuestionKind.CHECKBOX:
            result.answers.setdefault(qid, [])
    result.answers[CONSENT_FIELD] = sanitize_consent(raw.get(CONSENT_FIELD))
    return result


__all__ = [
    "SanitizedAnswers",
    "sanitize",
    "sanitize_answers",
    "sanitize_checkbox",
    "sanitize_choice",
    "sanitize_consent",
    "sanitize_number",
    "sanitize_text",
    "sanitize_unknown",
    "strip_markup",
]
