# app/core/point_values.py
"""
Point values per action kind.

Defines the action vocabulary shared by ledger events and the point table,
plus the default amounts the table is seeded with.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional


class ActionKind(str, Enum):
    LESSON_COMPLETED = "LESSON_COMPLETED"
    QUIZ_QUESTION_CORRECT = "QUIZ_QUESTION_CORRECT"
    QUIZ_QUESTION_WRONG = "QUIZ_QUESTION_WRONG"
    QUIZ_PERFECT_SCORE = "QUIZ_PERFECT_SCORE"
    PUZZLE_SOLVED = "PUZZLE_SOLVED"
    CODING_PROBLEM_SOLVED = "CODING_PROBLEM_SOLVED"
    CODING_PROBLEM_PERFECT = "CODING_PROBLEM_PERFECT"
    STREAK_DAY_BONUS = "STREAK_DAY_BONUS"
    SUBJECT_ENROLLED = "SUBJECT_ENROLLED"
    ACHIEVEMENT_EARNED = "ACHIEVEMENT_EARNED"


class EventOutcome(str, Enum):
    CORRECT = "CORRECT"
    INCORRECT = "INCORRECT"
    PERFECT = "PERFECT"


# Point amounts per action kind
DEFAULT_POINT_VALUES: Dict[str, Decimal] = {
    ActionKind.LESSON_COMPLETED.value: Decimal("1"),
    ActionKind.QUIZ_QUESTION_CORRECT.value: Decimal("0.5"),
    ActionKind.QUIZ_QUESTION_WRONG.value: Decimal("0.1"),
    ActionKind.QUIZ_PERFECT_SCORE.value: Decimal("2"),
    ActionKind.PUZZLE_SOLVED.value: Decimal("1.5"),
    ActionKind.CODING_PROBLEM_SOLVED.value: Decimal("2.5"),
    ActionKind.CODING_PROBLEM_PERFECT.value: Decimal("4"),
    ActionKind.STREAK_DAY_BONUS.value: Decimal("0.5"),
    ActionKind.SUBJECT_ENROLLED.value: Decimal("0.5"),
    ActionKind.ACHIEVEMENT_EARNED.value: Decimal("5"),
}

KNOWN_KINDS: FrozenSet[str] = frozenset(DEFAULT_POINT_VALUES)

# Emitted by the ledger itself, never accepted from collaborators
INTERNAL_KINDS: FrozenSet[ActionKind] = frozenset(
    {ActionKind.STREAK_DAY_BONUS, ActionKind.ACHIEVEMENT_EARNED}
)

QUESTION_KINDS: FrozenSet[ActionKind] = frozenset(
    {ActionKind.QUIZ_QUESTION_CORRECT, ActionKind.QUIZ_QUESTION_WRONG}
)

CODING_KINDS: FrozenSet[ActionKind] = frozenset(
    {ActionKind.CODING_PROBLEM_SOLVED, ActionKind.CODING_PROBLEM_PERFECT}
)


def kind_key(kind: ActionKind | str) -> str:
    return kind.value if isinstance(kind, Enum) else str(kind)


def allowed_outcomes(kind: ActionKind) -> FrozenSet[EventOutcome]:
    """Outcomes that may accompany an event of the given kind."""
    if kind in QUESTION_KINDS:
        return frozenset({EventOutcome.CORRECT, EventOutcome.INCORRECT})
    if kind is ActionKind.CODING_PROBLEM_SOLVED:
        return frozenset({EventOutcome.PERFECT})
    return frozenset()


def is_correct_answer(kind: ActionKind, outcome: Optional[EventOutcome]) -> bool:
    if outcome is EventOutcome.CORRECT:
        return True
    if outcome is EventOutcome.INCORRECT:
        return False
    return kind is ActionKind.QUIZ_QUESTION_CORRECT


def resolve_rate_kind(kind: ActionKind, outcome: Optional[EventOutcome]) -> ActionKind:
    """
    Pick the single table entry that prices an event.

    The outcome replaces the base rate, it is never added on top of it:
    a wrong answer earns the WRONG rate, a perfect coding solution earns the
    PERFECT rate instead of the SOLVED rate.
    """
    if kind in QUESTION_KINDS:
        if is_correct_answer(kind, outcome):
            return ActionKind.QUIZ_QUESTION_CORRECT
        return ActionKind.QUIZ_QUESTION_WRONG
    if kind is ActionKind.CODING_PROBLEM_SOLVED and outcome is EventOutcome.PERFECT:
        return ActionKind.CODING_PROBLEM_PERFECT
    return kind
