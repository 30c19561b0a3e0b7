"""Advisory crisis-indicator scanning of free-text answers.

Scanning never fails a submission: every detector error is logged and
swallowed. Detectors are pluggable predicates selected per question through
`crisis_protocol.detector`.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from app.logic.conditional_resolver import ApplicableQuestion
from app.models.question_kind import QuestionKind
from app.models.response_types import RiskWarning
from app.models.survey import CrisisProtocol, SurveyConfig


logger = logging.getLogger(__name__)

DEFAULT_CRISIS_KEYWORDS = ("suicide", "self-harm", "ending it all", "kill myself")

DEFAULT_RESOURCES = {
    "samaritans": "116 123",
    "shout": "Text SHOUT to 85258",
    "emergency": "999",
}

# detector(value, protocol) -> True when the answer should raise a warning
Detector = Callable[[Any, CrisisProtocol], bool]


def keyword_detector(value: Any, protocol: CrisisProtocol) -> bool:
    """Case-insensitive substring match against the protocol's keywords."""
    if not isinstance(value, str) or not value:
        return False
    text = value.lower()
    keywords = protocol.keywords if protocol.keywords is not None else DEFAULT_CRISIS_KEYWORDS
    return any(k.lower() in text for k in keywords if k)


def value_detector(value: Any, protocol: CrisisProtocol) -> bool:
    """Match selected option values against the protocol's trigger values."""
    if not protocol.trigger_values:
        return False
    values = value if isinstance(value, (list, tuple)) else [value]
    triggers = set(protocol.trigger_values)
    return any(str(v) in triggers for v in values if v is not None)


BUILTIN_DETECTORS: Dict[str, Detector] = {
    "keywords": keyword_detector,
    "values": value_detector,
}


class RiskScanner:
    """Scan applicable answers and produce crisis-response warnings."""

    def __init__(self, detectors: Optional[Mapping[str, Detector]] = None) -> None:
        self._detectors: Dict[str, Detector] = dict(BUILTIN_DETECTORS)
        if detectors:
            self._detectors.update(detectors)

    def register(self, name: str, detector: Detector) -> None:
        self._detectors[name] = detector

    def _check(self, aq: ApplicableQuestion, value: Any) -> Optional[RiskWarning]:
        protocol = aq.question.crisis_protocol
        if protocol is None:
            return None
        if protocol.detector == "keywords" and aq.question.type not in QuestionKind.FREE_TEXT:
            return None
        detector = self._detectors.get(protocol.detector)
        if detector is None:
            logger.warning(
                "risk_scanner.unknown_detector question=%s detector=%s", aq.id, protocol.detector
            )
            return None
        if not detector(value, protocol):
            return None
        return RiskWarning(question_id=aq.id, resources=dict(protocol.resources or DEFAULT_RESOURCES))

    def scan(
        self,
        config: SurveyConfig,
        answers: Mapping[str, Any],
        applicable: Mapping[str, ApplicableQuestion],
    ) -> List[RiskWarning]:
        """Return advisory warnings; never raises."""
        try:
            if not config.security.crisis_protocol_enabled:
                return []
        except Exception:
            logger.error("risk_scanner.config_error survey=%s", getattr(config, "survey_id", None), exc_info=True)
            return []
        warnings: List[RiskWarning] = []
        for qid, aq in applicable.items():
            try:
                warning = self._check(aq, answers.get(qid))
            except Exception:
                logger.error("risk_scanner.detector_failed question=%s", qid, exc_info=True)
                continue
            if warning is not None:
                warnings.append(warning)
        if warnings:
            # Question ids only; answer text is never logged
            logger.warning(
                "risk_scanner.crisis_indicators survey=%s questions=%s",
                config.survey_id,
                [w.question_id for w in warnings],
            )
        return warnings


__all__ = [
    "BUILTIN_DETECTORS",
    "DEFAULT_CRISIS_KEYWORDS",
    "Detector",
    "RiskScanner",
    "keyword_detector",
    "value_detector",
]
