"""Pydantic models for submission gateway response bodies."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.models.survey import QuestionOption


class RiskWarning(BaseModel):
    """Advisory warning attached to a successful submission."""

    type: str = "crisis_response"
    question_id: str = Field(serialization_alias="questionId")
    resources: Dict[str, str] = Field(default_factory=dict)


class SubmissionAck(BaseModel):
    id: str
    survey_id: str = Field(serialization_alias="surveyId")


class SubmissionResult(BaseModel):
    """Outcome of one pass through the submission pipeline.

    Mirrors the public response contract when dumped with `by_alias=True`
    (`data.surveyId`, `warnings[].questionId`); `failed_stage` is kept for
    logging and never serialized.
    """

    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    data: Optional[SubmissionAck] = None
    warnings: List[RiskWarning] = Field(default_factory=list)
    errors: Optional[Dict[str, str]] = None
    retry_after_seconds: Optional[int] = None
    blocked_until: Optional[str] = None
    failed_stage: Optional[str] = Field(default=None, exclude=True)


class RateLimitResult(BaseModel):
    allowed: bool
    current_attempts: int
    max_attempts: int
    remaining_attempts: int
    window_minutes: int
    retry_after_seconds: Optional[int] = None
    retry_after_minutes: Optional[float] = None
    blocked_until: Optional[str] = None
    message: Optional[str] = None


class ApplicableQuestionView(BaseModel):
    id: str
    type: str
    required: bool
    rendered: bool
    parent_id: Optional[str] = None
    options: List[QuestionOption] = Field(default_factory=list)


class ApplicableQuestions(BaseModel):
    survey_id: str
    gateway_field: str
    gateway_value: Optional[str] = None
    questions: List[ApplicableQuestionView]


class SubmissionStatus(BaseModel):
    survey_id: str
    already_submitted: bool
    blocked: bool
    remaining_attempts: Optional[int] = None
    window_minutes: Optional[int] = None


class SurveySummary(BaseModel):
    survey_id: str
    title: str
    description: str
    version: str
    gateway_field: str
    csrf_enabled: bool


__all__ = [
    "ApplicableQuestionView",
    "ApplicableQuestions",
    "RateLimitResult",
    "RiskWarning",
    "SubmissionAck",
    "SubmissionResult",
    "SubmissionStatus",
    "SurveySummary",
]
