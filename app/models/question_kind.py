"""Question type and shape constants for survey configurations.

Provides simple constants containers instead of Enums to keep imports
lightweight in architectural tests and JSON configs plain strings.
"""

from __future__ import annotations


class QuestionKind:
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    CURRENCY = "currency"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    MULTI_NUMBER = "multi_number"

    ALL = frozenset({TEXT, TEXTAREA, NUMBER, CURRENCY, SELECT, RADIO, CHECKBOX, MULTI_NUMBER})
    FREE_TEXT = frozenset({TEXT, TEXTAREA})
    NUMERIC = frozenset({NUMBER, CURRENCY})
    SINGLE_CHOICE = frozenset({SELECT, RADIO})
    ENUMERATED = frozenset({SELECT, RADIO, CHECKBOX})

    # Spellings accepted from hand-written configs
    ALIASES = {
        "multiNumber": MULTI_NUMBER,
        "multi-number": MULTI_NUMBER,
    }


class QuestionShape:
    """Closed set of question shapes every pipeline component switches over.

    - SCALAR: a single answer value.
    - GROUP: a multi-number parent; only its sub-fields carry answers.
    - WITH_FOLLOW_UP: a scalar parent with a conditionally shown child.
    """

    SCALAR = "scalar"
    GROUP = "group"
    WITH_FOLLOW_UP = "with_follow_up"


__all__ = ["QuestionKind", "QuestionShape"]
