"""Compile a survey configuration into an immutable validation schema.

`compile_schema` runs once per configuration and emits one `FieldRule` per
answer-carrying field (top-level questions, follow-ups and multi-number
sub-fields, never a multi-number parent) plus a pydantic model used for type
and bound checks. `validate_answers` applies the schema to sanitized answers,
restricted to the resolved applicable set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Annotated, Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, create_model

from app.logic.conditional_resolver import ApplicableQuestion
from app.models.question_kind import QuestionKind
from app.models.survey import CONSENT_FIELD, FieldEntry, SurveyConfig


logger = logging.getLogger(__name__)

CONSENT_MESSAGE = "You must provide consent to submit evidence"
REQUIRED_MESSAGE = "This field is required"
REQUIRED_CHOICE_MESSAGE = "Please select at least one option"
INVALID_OPTION_MESSAGE = "Invalid option selected"


@dataclass(frozen=True)
class FieldRule:
    id: str
    kind: str
    required: bool
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    options: tuple[str, ...] = ()
    parent_id: Optional[str] = None
    via: str = "question"
    sensitive: bool = False
    default: Any = None


@dataclass(frozen=True)
class CompiledSchema:
    survey_id: str
    version: str
    rules: Mapping[str, FieldRule]
    model: type[BaseModel]
    group_ids: frozenset[str] = frozenset()

    @property
    def sensitive_ids(self) -> frozenset[str]:
        return frozenset(r.id for r in self.rules.values() if r.sensitive)


@dataclass
class ValidationOutcome:
    data: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def _fmt(n: float | int | None) -> str:
    if n is None:
        return ""
    return str(int(n)) if float(n).is_integer() else str(n)


def _rule_for(entry: FieldEntry) -> FieldRule:
    q = entry.question
    return FieldRule(
        id=q.id,
        kind=q.type,
        required=q.required,
        min=q.min,
        max=q.max,
        min_length=q.min_length,
        max_length=q.max_length,
        options=q.option_values,
        parent_id=entry.parent.id if entry.parent is not None else None,
        via=entry.via,
        sensitive=q.sensitive or (entry.parent is not None and entry.parent.sensitive),
        default=q.default,
    )


def _annotation_for(rule: FieldRule) -> Any:
    if rule.kind in QuestionKind.FREE_TEXT:
        return Annotated[str, Field(min_length=rule.min_length, max_length=rule.max_length)]
    if rule.kind in QuestionKind.NUMERIC:
        return Annotated[float, Field(ge=rule.min, le=rule.max)]
    if rule.kind in QuestionKind.SINGLE_CHOICE:
        return Literal[rule.options]  # type: ignore[valid-type]
    if rule.kind == QuestionKind.CHECKBOX:
        return list[Literal[rule.options]]  # type: ignore[valid-type]
    return Any  # pragma: no cover - kinds are closed


def compile_schema(config: SurveyConfig) -> CompiledSchema:
    """Build the field rules and validation model for a configuration.

    Pure and deterministic; malformed configurations are rejected earlier by
    `SurveyConfig` validation.
    """
    rules: Dict[str, FieldRule] = {}
    for entry in config.iter_fields():
        rules[entry.question.id] = _rule_for(entry)

    fields: Dict[str, Any] = {}
    for i, rule in enumerate(rules.values()):
        fields[f"f{i}"] = (Optional[_annotation_for(rule)], Field(default=None, alias=rule.id))
    fields["consent"] = (Optional[bool], Field(default=None, alias=CONSENT_FIELD))
    model = create_model(
        f"SurveyAnswers_{config.survey_id}",
        __config__=ConfigDict(extra="ignore"),
        **fields,
    )
    group_ids = frozenset(
        q.id for q in config.iter_questions() if q.type == QuestionKind.MULTI_NUMBER
    )
    logger.info(
        "schema.compiled survey=%s version=%s fields=%s",
        config.survey_id,
        config.version,
        len(rules),
    )
    return CompiledSchema(
        survey_id=config.survey_id,
        version=config.version,
        rules=MappingProxyType(rules),
        model=model,
        group_ids=group_ids,
    )


def is_missing(value: Any) -> bool:
    return value is None or value == "" or value == []


def _message(err: Mapping[str, Any]) -> str:
    kind = err.get("type", "")
    ctx = err.get("ctx") or {}
    if kind == "string_too_short":
        return f"Minimum {ctx.get('min_length')} characters required"
    if kind == "string_too_long":
        return f"Maximum {ctx.get('max_length')} characters allowed"
    if kind == "greater_than_equal":
        return f"Minimum value is {_fmt(ctx.get('ge'))}"
    if kind == "less_than_equal":
        return f"Maximum value is {_fmt(ctx.get('le'))}"
    if kind == "literal_error":
        return INVALID_OPTION_MESSAGE
    if kind in {"float_parsing", "float_type", "finite_number"}:
        return "Must be a number"
    if kind in {"string_type"}:
        return "Must be text"
    if kind in {"list_type"}:
        return "Must be a list of options"
    if kind in {"bool_type", "bool_parsing"}:
        return "Must be true or false"
    return str(err.get("msg") or "Invalid value")


def validate_answers(
    schema: CompiledSchema,
    answers: Mapping[str, Any],
    applicable: Mapping[str, ApplicableQuestion],
) -> ValidationOutcome:
    """Validate sanitized answers against the applicable subset of the schema.

    Required checks use the applicable set, so a field the respondent cannot
    see is never reported missing. Applicable multi-number sub-fields left empty
    take their configured default. `consent_given` must be exactly True.
    """
    outcome = ValidationOutcome()
    present: Dict[str, Any] = {}
    for qid, aq in applicable.items():
        rule = schema.rules.get(qid)
        if rule is None:
            continue
        value = answers.get(qid)
        if is_missing(value) and rule.via == "sub_field" and rule.default is not None:
            value = rule.default
        if is_missing(value):
            if aq.required:
                outcome.errors[qid] = (
                    REQUIRED_CHOICE_MESSAGE if rule.kind == QuestionKind.CHECKBOX else REQUIRED_MESSAGE
                )
            continue
        present[qid] = value

    try:
        schema.model.model_validate({**present, CONSENT_FIELD: answers.get(CONSENT_FIELD)})
    except PydanticValidationError as e:
        for err in e.errors():
            loc = err.get("loc") or ()
            if not loc:
                continue
            qid = str(loc[0])
            outcome.errors.setdefault(qid, _message(err))

    # Options removed by filter_options are illegal for this gateway value
    for qid, value in present.items():
        if qid in outcome.errors:
            continue
        aq = applicable[qid]
        if aq.question.type in QuestionKind.SINGLE_CHOICE and value not in aq.option_values:
            outcome.errors[qid] = INVALID_OPTION_MESSAGE
        elif aq.question.type == QuestionKind.CHECKBOX and any(v not in aq.option_values for v in value):
            outcome.errors[qid] = INVALID_OPTION_MESSAGE

    if answers.get(CONSENT_FIELD) is not True:
        outcome.errors[CONSENT_FIELD] = CONSENT_MESSAGE

    if outcome.ok:
        outcome.data = {**present, CONSENT_FIELD: True}
    return outcome


__all__ = [
    "CONSENT_MESSAGE",
    "CompiledSchema",
    "FieldRule",
    "ValidationOutcome",
    "compile_schema",
    "is_missing",
    "validate_answers",
]
