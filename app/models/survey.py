"""Survey configuration models.

A survey configuration is a read-only, declarative description of sections,
questions, per-question constraints, conditional applicability and the single
gateway field whose answer selects the applicable subset. Configurations are
authored as JSON (snake_case or camelCase keys) and validated here once at
load time; a configuration that fails validation is a programmer error and
never reaches the request path.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, NamedTuple, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from app.models.question_kind import QuestionKind, QuestionShape


CONSENT_FIELD = "consent_given"
CSRF_FIELD = "csrf_token"
RESERVED_FIELD_IDS = frozenset({CONSENT_FIELD, CSRF_FIELD})


class SurveyConfigError(ValueError):
    """Raised when a survey configuration is malformed."""


_MODEL_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class QuestionOption(BaseModel):
    model_config = _MODEL_CONFIG

    value: str
    label: str = ""


class ShowIf(BaseModel):
    """Declarative follow-up predicate evaluated against the parent's value.

    The follow-up is shown when at least one of the parent's values survives
    both filters and every `answers_equal` pair matches the full answer set.
    """

    model_config = _MODEL_CONFIG

    parent_in: List[str] = Field(default_factory=list)
    parent_not_in: List[str] = Field(default_factory=list)
    answers_equal: Dict[str, Any] = Field(default_factory=dict)


class CrisisProtocol(BaseModel):
    model_config = _MODEL_CONFIG

    # Name of a detector registered with the risk scanner
    detector: str = "keywords"
    keywords: Optional[List[str]] = None
    trigger_values: List[str] = Field(default_factory=list)
    resources: Dict[str, str] = Field(default_factory=dict)


class NumberInput(BaseModel):
    model_config = _MODEL_CONFIG

    id: str
    label: str = ""
    min: Optional[float] = None
    max: Optional[float] = None
    default: Optional[float] = None
    required: bool = False

    def as_question(self, applies_to: Optional[List[str]]) -> "Question":
        """Return the sub-field as a standalone number question."""
        return Question(
            id=self.id,
            type=QuestionKind.NUMBER,
            question=self.label,
            required=self.required,
            min=self.min,
            max=self.max,
            default=self.default,
            applies_to=applies_to,
        )


class Question(BaseModel):
    model_config = _MODEL_CONFIG

    id: str
    type: str
    question: str = ""
    required: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, gt=0)
    options: List[QuestionOption] = Field(default_factory=list)
    applies_to: Optional[List[str]] = None
    follow_up: Optional["Question"] = None
    number_inputs: List[NumberInput] = Field(default_factory=list)
    show_if: Optional[ShowIf] = None
    filter_options: Optional[Dict[str, List[str]]] = None
    sensitive: bool = Field(
        default=False,
        validation_alias=AliasChoices("sensitive", "sensitiveData", "sensitive_data", "sensitiveFlag"),
    )
    crisis_protocol: Optional[CrisisProtocol] = None
    default: Any = None

    @field_validator("id")
    @classmethod
    def id_must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("question id must be a non-empty string")
        return v.strip()

    @field_validator("type", mode="before")
    @classmethod
    def type_must_be_known(cls, v: object) -> str:
        kind = QuestionKind.ALIASES.get(str(v), str(v))
        if kind not in QuestionKind.ALL:
            raise ValueError(f"question type must be one of {sorted(QuestionKind.ALL)}")
        return kind

    @model_validator(mode="after")
    def constraints_must_be_coherent(self) -> "Question":
        if self.type in QuestionKind.ENUMERATED and not self.options:
            raise ValueError(f"question {self.id!r} of type {self.type} requires options")
        values = [o.value for o in self.options]
        if len(values) != len(set(values)):
            raise ValueError(f"question {self.id!r} has duplicate option values")
        if self.type == QuestionKind.MULTI_NUMBER:
            if not self.number_inputs:
                raise ValueError(f"question {self.id!r} of type multi_number requires number_inputs")
            if self.follow_up is not None:
                raise ValueError(f"question {self.id!r}: multi_number questions cannot carry a follow-up")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"question {self.id!r}: min must not exceed max")
        if (
            self.min_length is not None
            and self.max_length is not None
            and self.min_length > self.max_length
        ):
            raise ValueError(f"question {self.id!r}: min_length must not exceed max_length")
        if self.filter_options:
            legal = set(values)
            for gateway_value, allowed in self.filter_options.items():
                unknown = set(allowed) - legal
                if unknown:
                    raise ValueError(
                        f"question {self.id!r}: filter_options[{gateway_value!r}] names unknown options {sorted(unknown)}"
                    )
        return self

    @property
    def shape(self) -> str:
        if self.type == QuestionKind.MULTI_NUMBER:
            return QuestionShape.GROUP
        if self.follow_up is not None:
            return QuestionShape.WITH_FOLLOW_UP
        return QuestionShape.SCALAR

    @property
    def option_values(self) -> tuple[str, ...]:
        return tuple(o.value for o in self.options)

    def applies(self, gateway_value: Optional[str]) -> bool:
        """Return True if the question applies to the given gateway value."""
        if self.applies_to is None:
            return True
        return gateway_value is not None and gateway_value in self.applies_to


class Section(BaseModel):
    model_config = _MODEL_CONFIG

    key: str = ""
    title: str = ""
    questions: List[Question] = Field(default_factory=list)


class SecuritySettings(BaseModel):
    model_config = _MODEL_CONFIG

    csrf_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("csrf_enabled", "csrfEnabled", "enableCSRFProtection"),
    )
    rate_limit_action: str = Field(
        default="submit_evidence",
        validation_alias=AliasChoices("rate_limit_action", "rateLimitAction", "rateLimitKey"),
    )
    # None defers to the application-wide rate limit settings
    rate_limit_window_minutes: Optional[int] = Field(default=None, gt=0)
    rate_limit_max_attempts: Optional[int] = Field(default=None, ge=1)
    crisis_protocol_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("crisis_protocol_enabled", "crisisProtocolEnabled", "enableCrisisProtocol"),
    )


class FieldEntry(NamedTuple):
    """A validatable field of the survey with its structural parent.

    `via` is one of "question", "follow_up" or "sub_field".
    """

    question: Question
    parent: Optional[Question]
    via: str


class SurveyConfig(BaseModel):
    model_config = _MODEL_CONFIG

    survey_id: str
    title: str = ""
    description: str = ""
    version: str = "v1"
    submission_type: str = ""
    gateway_field: str
    total_group: Optional[str] = None
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    sections: List[Section] = Field(default_factory=list)

    def iter_questions(self) -> Iterator[Question]:
        """Yield top-level questions in configuration order."""
        for section in self.sections:
            yield from section.questions

    def iter_fields(self) -> Iterator[FieldEntry]:
        """Yield every answer-carrying field, flattening groups and follow-ups.

        Multi-number parents are never yielded; their sub-fields are.
        """
        for q in self.iter_questions():
            yield from _walk(q, None)

    def question(self, question_id: str) -> Optional[Question]:
        for q in self.iter_questions():
            if q.id == question_id:
                return q
        return None

    @property
    def gateway_question(self) -> Question:
        q = self.question(self.gateway_field)
        if q is None:  # pragma: no cover - guarded by model validation
            raise SurveyConfigError(f"gateway field {self.gateway_field!r} is not configured")
        return q

    @model_validator(mode="after")
    def invariants_must_hold(self) -> "SurveyConfig":
        seen: set[str] = set()
        for q in self.iter_questions():
            ids = [q.id] + [e.question.id for e in _walk(q, None) if e.question is not q]
            for qid in ids:
                if qid in RESERVED_FIELD_IDS:
                    raise ValueError(f"question id {qid!r} is reserved")
                if qid in seen:
                    raise ValueError(f"question id {qid!r} is not unique")
                seen.add(qid)

        gateway = self.question(self.gateway_field)
        if gateway is None:
            raise ValueError(f"gateway_field {self.gateway_field!r} must name a top-level question")
        if gateway.type not in QuestionKind.SINGLE_CHOICE:
            raise ValueError("gateway_field must be a select or radio question")
        if gateway.applies_to is not None:
            raise ValueError("gateway_field must apply to every respondent")

        if self.total_group is not None:
            group = self.question(self.total_group)
            if group is None or group.type != QuestionKind.MULTI_NUMBER:
                raise ValueError("total_group must name a multi_number question")

        gateway_values = set(gateway.option_values)
        for q in self.iter_questions():
            for scope in (q.applies_to or []):
                if scope not in gateway_values:
                    raise ValueError(f"question {q.id!r}: applies_to names unknown gateway value {scope!r}")
            child = q.follow_up
            if child is not None and child.show_if is not None and q.type in QuestionKind.ENUMERATED:
                legal = set(q.option_values)
                named = set(child.show_if.parent_in) | set(child.show_if.parent_not_in)
                if named - legal:
                    raise ValueError(
                        f"follow-up {child.id!r}: show_if names unknown parent options {sorted(named - legal)}"
                    )
        return self


def _walk(q: Question, parent: Optional[Question]) -> Iterator[FieldEntry]:
    if q.shape == QuestionShape.GROUP:
        for sub in q.number_inputs:
            yield FieldEntry(sub.as_question(q.applies_to), q, "sub_field")
        return
    yield FieldEntry(q, parent, "question" if parent is None else "follow_up")
    if q.follow_up is not None:
        yield from _walk(q.follow_up, q)


def load_survey_config(data: Dict[str, Any]) -> SurveyConfig:
    """Validate raw configuration data into a SurveyConfig.

    Raises SurveyConfigError carrying pydantic's message on failure.
    """
    try:
        return SurveyConfig.model_validate(data)
    except PydanticValidationError as e:
        raise SurveyConfigError(str(e)) from e


__all__ = [
    "CONSENT_FIELD",
    "CSRF_FIELD",
    "CrisisProtocol",
    "FieldEntry",
    "NumberInput",
    "Question",
    "QuestionOption",
    "Section",
    "SecuritySettings",
    "ShowIf",
    "SurveyConfig",
    "SurveyConfigError",
    "load_survey_config",
]
