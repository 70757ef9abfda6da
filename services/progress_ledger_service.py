# services/progress_ledger_service.py
"""
Progress ledger.

Owns each user's ProgressStats and applies point-earning events to them.
All mutations of one user's stats run inside a per-user serialized
transaction; different users never wait on each other.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Sequence, Tuple, TypeVar

from app.config import settings
from app.core.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from app.core.level_curve import LevelCurve, compute_accuracy
from app.core.logging import get_logger
from app.core.point_values import (
    CODING_KINDS,
    INTERNAL_KINDS,
    QUESTION_KINDS,
    ActionKind,
    EventOutcome,
    allowed_outcomes,
    is_correct_answer,
    resolve_rate_kind,
)
from app.models.gamification import LedgerEvent, ProgressDelta, ProgressStats, RewardType, UserId, utcnow
from services.ledger_store import LedgerStore, LedgerTransaction, get_ledger_store
from services.point_values_service import PointValues, PointValueTable, get_point_value_table

logger = get_logger()

T = TypeVar("T")

MAX_EVENT_MINUTES = 24 * 60

_ZERO = Decimal(0)


def validate_user_id(user_id: str) -> UserId:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("user_id is required")
    return UserId(user_id)


def validate_event(user_id: str, event: LedgerEvent) -> None:
    """Reject malformed events before anything is read or written."""
    validate_user_id(user_id)
    if event.kind in INTERNAL_KINDS:
        raise ValidationError(
            f"{event.kind.value} is awarded by the ledger itself",
            details={"kind": event.kind.value},
        )
    if event.outcome is not None and event.outcome not in allowed_outcomes(event.kind):
        raise ValidationError(
            f"Outcome {event.outcome.value} does not apply to {event.kind.value}",
            details={"kind": event.kind.value, "outcome": event.outcome.value},
        )
    if event.magnitude is not None and not 0 <= event.magnitude <= MAX_EVENT_MINUTES:
        raise ValidationError(
            f"magnitude must be between 0 and {MAX_EVENT_MINUTES} minutes, got {event.magnitude}",
            details={"magnitude": event.magnitude},
        )
    if event.occurred_at.tzinfo is None:
        raise ValidationError("occurred_at must be timezone-aware")


def _count_event(stats: ProgressStats, event: LedgerEvent) -> None:
    kind = event.kind
    if kind is ActionKind.LESSON_COMPLETED:
        stats.lessons_completed += 1
    elif kind in QUESTION_KINDS:
        stats.questions_answered += 1
        if is_correct_answer(kind, event.outcome):
            stats.correct_answers += 1
    elif kind is ActionKind.QUIZ_PERFECT_SCORE:
        stats.perfect_scores += 1
    elif kind is ActionKind.PUZZLE_SOLVED:
        stats.puzzles_solved += 1
    elif kind in CODING_KINDS:
        stats.coding_problems_solved += 1
        if kind is ActionKind.CODING_PROBLEM_PERFECT or event.outcome is EventOutcome.PERFECT:
            stats.perfect_scores += 1
    elif kind is ActionKind.SUBJECT_ENROLLED:
        stats.subjects_enrolled += 1

    if event.magnitude:
        stats.total_study_time += event.magnitude


class ProgressLedger:
    def __init__(
        self,
        store: LedgerStore,
        point_values: PointValueTable,
        *,
        curve: Optional[LevelCurve] = None,
        max_retries: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._store = store
        self._point_values = point_values
        self.curve = curve or LevelCurve()
        self._max_retries = settings.LEDGER_MAX_RETRIES if max_retries is None else max_retries
        self._timeout = settings.LEDGER_OPERATION_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds

    # -------- transaction plumbing --------

    async def _attempt(self, user_id: UserId, fn: Callable[[LedgerTransaction], Awaitable[T]]) -> T:
        async with self._store.user_transaction(user_id) as tx:
            return await fn(tx)

    async def run_serialized(self, user_id: UserId, fn: Callable[[LedgerTransaction], Awaitable[T]]) -> T:
        """
        Run `fn` inside one per-user transaction.

        ConflictError is retried up to max_retries times; each attempt is
        bounded by the operation timeout and a timed-out attempt is rolled
        back. Whatever surfaces to the caller left no partial state behind.
        """
        attempts = self._max_retries + 1
        last_conflict: Optional[ConflictError] = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(self._attempt(user_id, fn), timeout=self._timeout)
            except ConflictError as e:
                last_conflict = e
                logger.warning(
                    "ledger_conflict_retry",
                    user_id=user_id,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=e.message,
                )
            except asyncio.TimeoutError as e:
                logger.error("ledger_persistence_failed", user_id=user_id, reason="timeout", timeout_s=self._timeout)
                raise PersistenceError(
                    "Ledger operation timed out; nothing was committed",
                    details={"timeout_seconds": self._timeout},
                ) from e
            except PersistenceError as e:
                logger.error("ledger_persistence_failed", user_id=user_id, reason=e.message, retryable=e.retryable)
                raise

        raise PersistenceError(
            f"Gave up after {attempts} conflicting attempts; nothing was committed",
            details={"attempts": attempts},
        ) from last_conflict

    # -------- event application --------

    @staticmethod
    def _advance_streak(stats: ProgressStats, event: LedgerEvent) -> bool:
        """Count the event's UTC calendar day toward the streak, at most once per day."""
        day = event.occurred_at.astimezone(timezone.utc).date()
        last = stats.last_active_date
        if last is not None and day <= last:
            # Same day, or an out-of-order event for a day already counted
            return False

        previous = stats.streak
        if last is not None and day - last == timedelta(days=1):
            stats.streak += 1
        else:
            # First counted day, or the streak was broken: restart on the event's day
            stats.streak = 1
        stats.longest_streak = max(stats.longest_streak, stats.streak)
        stats.last_active_date = day
        return stats.streak != previous

    async def apply_in(
        self,
        tx: LedgerTransaction,
        user_id: UserId,
        event: LedgerEvent,
        points: PointValues,
    ) -> Tuple[ProgressStats, ProgressDelta]:
        """Apply one event inside an open transaction; `points` is the event's single table snapshot."""
        current = await tx.load_stats(user_id)
        stats = current if current is not None else ProgressStats(user_id=user_id)
        expected_version = stats.version
        previous_level = stats.level

        _count_event(stats, event)
        stats.accuracy = compute_accuracy(stats.correct_answers, stats.questions_answered)

        rate_kind = resolve_rate_kind(event.kind, event.outcome)
        points_earned = points.get(rate_kind.value, _ZERO)
        streak_changed = self._advance_streak(stats, event)

        stats.experience += points_earned
        stats.level = self.curve.level_for(stats.experience)
        stats.updated_at = utcnow()

        saved = await tx.save_stats(stats, expected_version=expected_version)
        delta = ProgressDelta(
            points_earned=points_earned,
            new_experience=saved.experience,
            leveled_up=saved.level > previous_level,
            previous_level=previous_level,
            new_level=saved.level,
            streak_changed=streak_changed,
            new_streak=saved.streak,
        )
        return saved, delta

    async def apply_bonus_in(
        self,
        tx: LedgerTransaction,
        stats: ProgressStats,
        delta: ProgressDelta,
        amount: Decimal,
        *,
        reward_types: Sequence[RewardType],
    ) -> Tuple[ProgressStats, ProgressDelta]:
        """
        The synthetic ACHIEVEMENT_EARNED pass: adds bonus experience once per
        event and never feeds back into reward evaluation. `reward_types` has
        one entry per grant made by the event.
        """
        if amount < 0:
            raise ValidationError(f"Bonus amount must be >= 0, got {amount}")
        updated = stats.model_copy(deep=True)
        updated.experience += amount
        updated.achievements_earned += len(reward_types)
        for reward_type in reward_types:
            updated.reward_counts[reward_type] = updated.reward_counts.get(reward_type, 0) + 1
        updated.level = self.curve.level_for(updated.experience)
        updated.updated_at = utcnow()

        saved = await tx.save_stats(updated, expected_version=stats.version)
        new_delta = delta.model_copy(
            update={
                "new_experience": saved.experience,
                "new_level": saved.level,
                "leveled_up": saved.level > delta.previous_level,
            }
        )
        return saved, new_delta

    async def apply(self, user_id: UserId, event: LedgerEvent) -> ProgressDelta:
        """Apply one event on its own (no reward evaluation)."""
        validate_event(user_id, event)
        points = self._point_values.snapshot()

        async def _run(tx: LedgerTransaction) -> ProgressDelta:
            _, delta = await self.apply_in(tx, user_id, event, points)
            return delta

        return await self.run_serialized(user_id, _run)

    # -------- queries --------

    async def get(self, user_id: UserId, *, must_exist: bool = False) -> ProgressStats:
        """
        Current stats. Users without any tracked event get default stats,
        unless the caller (admin paths) requires the record to exist.
        """
        validate_user_id(user_id)
        stats = await self._store.get_stats(user_id)
        if stats is None:
            if must_exist:
                raise NotFoundError(f"No progress recorded for user {user_id}", details={"user_id": user_id})
            return ProgressStats(user_id=user_id)
        return stats

    def points_to_next_level(self, stats: ProgressStats) -> Decimal:
        return self.curve.points_to_next_level(stats.experience)


_progress_ledger: Optional[ProgressLedger] = None


def get_progress_ledger() -> ProgressLedger:
    """Get or create the ProgressLedger singleton."""
    global _progress_ledger
    if _progress_ledger is None:
        _progress_ledger = ProgressLedger(get_ledger_store(), get_point_value_table())
    return _progress_ledger
