from __future__ import annotations

from decimal import Decimal

from app.core.point_values import (
    DEFAULT_POINT_VALUES,
    INTERNAL_KINDS,
    KNOWN_KINDS,
    ActionKind,
    EventOutcome,
    allowed_outcomes,
    resolve_rate_kind,
)


def test_defaults_cover_every_kind():
    assert KNOWN_KINDS == {k.value for k in ActionKind}
    assert all(v >= 0 for v in DEFAULT_POINT_VALUES.values())
    assert DEFAULT_POINT_VALUES["LESSON_COMPLETED"] == Decimal("1")
    assert DEFAULT_POINT_VALUES["ACHIEVEMENT_EARNED"] == Decimal("5")


def test_internal_kinds():
    assert INTERNAL_KINDS == {ActionKind.STREAK_DAY_BONUS, ActionKind.ACHIEVEMENT_EARNED}


def test_outcome_replaces_rate():
    assert resolve_rate_kind(ActionKind.QUIZ_QUESTION_CORRECT, EventOutcome.INCORRECT) is ActionKind.QUIZ_QUESTION_WRONG
    assert resolve_rate_kind(ActionKind.QUIZ_QUESTION_WRONG, EventOutcome.CORRECT) is ActionKind.QUIZ_QUESTION_CORRECT
    assert resolve_rate_kind(ActionKind.QUIZ_QUESTION_CORRECT, None) is ActionKind.QUIZ_QUESTION_CORRECT
    assert resolve_rate_kind(ActionKind.CODING_PROBLEM_SOLVED, EventOutcome.PERFECT) is ActionKind.CODING_PROBLEM_PERFECT
    assert resolve_rate_kind(ActionKind.LESSON_COMPLETED, None) is ActionKind.LESSON_COMPLETED


def test_allowed_outcomes():
    assert allowed_outcomes(ActionKind.LESSON_COMPLETED) == frozenset()
    assert EventOutcome.PERFECT in allowed_outcomes(ActionKind.CODING_PROBLEM_SOLVED)
    assert EventOutcome.PERFECT not in allowed_outcomes(ActionKind.QUIZ_QUESTION_CORRECT)
