# services/ledger_store.py
"""
Persistence for the gamification ledger.

Two interchangeable stores share one interface:

- InMemoryLedgerStore: per-user asyncio locks, writes are staged on the
  transaction and only become visible when the transaction exits cleanly.
- PostgresLedgerStore: asyncpg, per-user serialization through
  SELECT ... FOR UPDATE on progress_stats, grant creation through
  INSERT ... ON CONFLICT (user_id, reward_id) DO NOTHING.

Every stats write is conditional on the version that was read, so a lost
update surfaces as ConflictError instead of silently overwriting.
"""

from __future__ import annotations

import abc
import asyncio
import itertools
import json
from collections import defaultdict
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import asyncpg

from app.config import settings
from app.core.errors import ConflictError, PersistenceError
from app.core.logging import get_logger
from app.models.gamification import (
    Achievement,
    ProgressStats,
    RewardCriteria,
    RewardDefinition,
    RewardGrant,
    RewardId,
    UserId,
)
from services.db_service import (
    execute_with_conn,
    fetch,
    fetchrow,
    fetchrow_with_conn,
    run_in_transaction,
)

logger = get_logger()


class LedgerTransaction(abc.ABC):
    """User-scoped unit of work. Everything done through it commits or rolls back together."""

    @abc.abstractmethod
    async def load_stats(self, user_id: UserId) -> Optional[ProgressStats]: ...

    @abc.abstractmethod
    async def save_stats(self, stats: ProgressStats, *, expected_version: int) -> ProgressStats:
        """Write stats if the stored version still equals expected_version (0 = not stored yet)."""

    @abc.abstractmethod
    async def get_grant(self, user_id: UserId, reward_id: RewardId) -> Optional[RewardGrant]: ...

    @abc.abstractmethod
    async def insert_grant_if_absent(self, grant: RewardGrant) -> Optional[RewardGrant]:
        """Atomic upsert keyed on (user_id, reward_id). None when a grant already exists."""

    @abc.abstractmethod
    async def update_grant(
        self, grant: RewardGrant, *, expected_times_earned: int
    ) -> Optional[RewardGrant]:
        """Conditional update. None when times_earned moved underneath us."""

    @abc.abstractmethod
    async def add_achievement(self, achievement: Achievement) -> Achievement: ...


class LedgerStore(abc.ABC):
    @abc.abstractmethod
    def user_transaction(self, user_id: UserId) -> Any:
        """Async context manager yielding a LedgerTransaction serialized per user."""

    # -------- read-only queries --------
    @abc.abstractmethod
    async def get_stats(self, user_id: UserId) -> Optional[ProgressStats]: ...

    @abc.abstractmethod
    async def list_grants(self, user_id: UserId) -> List[RewardGrant]: ...

    @abc.abstractmethod
    async def list_achievements(self, user_id: UserId) -> List[Achievement]: ...

    # -------- point values --------
    @abc.abstractmethod
    async def load_point_values(self) -> Dict[str, Decimal]: ...

    @abc.abstractmethod
    async def save_point_values(self, values: Mapping[str, Decimal], *, updated_by: Optional[str] = None) -> None: ...

    # -------- reward catalog --------
    @abc.abstractmethod
    async def list_rewards(self, *, active_only: bool) -> List[RewardDefinition]: ...

    @abc.abstractmethod
    async def get_reward(self, reward_id: RewardId) -> Optional[RewardDefinition]: ...

    @abc.abstractmethod
    async def insert_reward(self, reward: RewardDefinition) -> RewardDefinition: ...

    @abc.abstractmethod
    async def update_reward(self, reward: RewardDefinition, *, expected_revision: int) -> Optional[RewardDefinition]: ...


# --------------------------------------------------------------------
# In-memory store
# --------------------------------------------------------------------

class _InMemoryTransaction(LedgerTransaction):
    def __init__(self, store: "InMemoryLedgerStore", user_id: UserId) -> None:
        self._store = store
        self._user_id = user_id
        self._stats: Optional[ProgressStats] = None
        self._grants: Dict[str, RewardGrant] = {}
        self._achievements: List[Achievement] = []

    def _check_user(self, user_id: UserId) -> None:
        if user_id != self._user_id:
            raise ValueError(f"transaction for {self._user_id} cannot touch {user_id}")

    def _current_stats(self) -> Optional[ProgressStats]:
        if self._stats is not None:
            return self._stats
        return self._store._stats.get(self._user_id)

    async def load_stats(self, user_id: UserId) -> Optional[ProgressStats]:
        self._check_user(user_id)
        current = self._current_stats()
        return current.model_copy(deep=True) if current is not None else None

    async def save_stats(self, stats: ProgressStats, *, expected_version: int) -> ProgressStats:
        self._check_user(stats.user_id)
        current = self._current_stats()
        current_version = current.version if current is not None else 0
        if current_version != expected_version:
            raise ConflictError(
                "progress stats version mismatch",
                details={"expected_version": expected_version, "actual_version": current_version},
            )
        saved = stats.model_copy(deep=True, update={"version": expected_version + 1})
        self._stats = saved
        return saved.model_copy(deep=True)

    def _current_grant(self, reward_id: RewardId) -> Optional[RewardGrant]:
        if reward_id in self._grants:
            return self._grants[reward_id]
        return self._store._grants.get((self._user_id, reward_id))

    async def get_grant(self, user_id: UserId, reward_id: RewardId) -> Optional[RewardGrant]:
        self._check_user(user_id)
        grant = self._current_grant(reward_id)
        return grant.model_copy() if grant is not None else None

    async def insert_grant_if_absent(self, grant: RewardGrant) -> Optional[RewardGrant]:
        self._check_user(grant.user_id)
        if self._current_grant(grant.reward_id) is not None:
            return None
        self._grants[grant.reward_id] = grant.model_copy()
        return grant.model_copy()

    async def update_grant(self, grant: RewardGrant, *, expected_times_earned: int) -> Optional[RewardGrant]:
        self._check_user(grant.user_id)
        current = self._current_grant(grant.reward_id)
        if current is None or current.times_earned != expected_times_earned:
            return None
        self._grants[grant.reward_id] = grant.model_copy()
        return grant.model_copy()

    async def add_achievement(self, achievement: Achievement) -> Achievement:
        self._check_user(achievement.user_id)
        stored = achievement.model_copy(update={"id": next(self._store._achievement_ids)})
        self._achievements.append(stored)
        return stored.model_copy()

    def _commit(self) -> None:
        if self._stats is not None:
            self._store._stats[self._user_id] = self._stats
        for reward_id, grant in self._grants.items():
            self._store._grants[(self._user_id, reward_id)] = grant
        if self._achievements:
            self._store._achievements[self._user_id].extend(self._achievements)


class InMemoryLedgerStore(LedgerStore):
    """Process-local store for development and tests."""

    def __init__(self) -> None:
        # Only users with a transaction open or waiting hold an entry
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._stats: Dict[str, ProgressStats] = {}
        self._grants: Dict[Tuple[str, str], RewardGrant] = {}
        self._achievements: Dict[str, List[Achievement]] = defaultdict(list)
        self._achievement_ids = itertools.count(1)
        self._point_values: Dict[str, Decimal] = {}
        self._rewards: Dict[str, RewardDefinition] = {}

    @asynccontextmanager
    async def user_transaction(self, user_id: UserId) -> AsyncIterator[LedgerTransaction]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                tx = _InMemoryTransaction(self, user_id)
                yield tx
                # Only reached when the body finished without raising or being cancelled
                tx._commit()
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._locks[user_id]

    async def get_stats(self, user_id: UserId) -> Optional[ProgressStats]:
        stats = self._stats.get(user_id)
        return stats.model_copy(deep=True) if stats is not None else None

    async def list_grants(self, user_id: UserId) -> List[RewardGrant]:
        grants = [g for (uid, _), g in self._grants.items() if uid == user_id]
        return sorted((g.model_copy() for g in grants), key=lambda g: g.earned_at, reverse=True)

    async def list_achievements(self, user_id: UserId) -> List[Achievement]:
        return [a.model_copy() for a in reversed(self._achievements.get(user_id, []))]

    async def load_point_values(self) -> Dict[str, Decimal]:
        return dict(self._point_values)

    async def save_point_values(self, values: Mapping[str, Decimal], *, updated_by: Optional[str] = None) -> None:
        self._point_values.update(values)

    async def list_rewards(self, *, active_only: bool) -> List[RewardDefinition]:
        return [
            r.model_copy(deep=True)
            for r in self._rewards.values()
            if r.is_active or not active_only
        ]

    async def get_reward(self, reward_id: RewardId) -> Optional[RewardDefinition]:
        reward = self._rewards.get(reward_id)
        return reward.model_copy(deep=True) if reward is not None else None

    async def insert_reward(self, reward: RewardDefinition) -> RewardDefinition:
        self._rewards[reward.id] = reward.model_copy(deep=True)
        return reward

    async def update_reward(self, reward: RewardDefinition, *, expected_revision: int) -> Optional[RewardDefinition]:
        current = self._rewards.get(reward.id)
        if current is None or current.revision != expected_revision:
            return None
        self._rewards[reward.id] = reward.model_copy(deep=True)
        return reward


# --------------------------------------------------------------------
# PostgreSQL store
# --------------------------------------------------------------------

_STATS_COLUMNS = """
    user_id, lessons_completed, questions_answered, correct_answers, accuracy,
    total_study_time, puzzles_solved, coding_problems_solved, perfect_scores,
    subjects_enrolled, achievements_earned, reward_counts, streak, longest_streak,
    last_active_date, level, experience, version, created_at, updated_at
"""

_GRANT_COLUMNS = "user_id, reward_id, earned_at, progress, times_earned, milestone, armed, created_at, updated_at"

_ACHIEVEMENT_COLUMNS = """
    id, user_id, reward_id, reward_revision, title, description, category,
    points, occurrence, earned_at
"""

_REWARD_COLUMNS = """
    id, name, description, type, category, tier, criteria, repeatable, points,
    is_active, revision, created_at, updated_at
"""


def _stats_from_row(row: Mapping[str, Any]) -> ProgressStats:
    data = dict(row)
    counts = data.pop("reward_counts", None) or {}
    if isinstance(counts, str):
        counts = json.loads(counts)
    return ProgressStats(reward_counts=counts, **data)


def _grant_from_row(row: Mapping[str, Any]) -> RewardGrant:
    return RewardGrant(**dict(row))


def _achievement_from_row(row: Mapping[str, Any]) -> Achievement:
    return Achievement(**dict(row))


def _reward_from_row(row: Mapping[str, Any]) -> RewardDefinition:
    data = dict(row)
    criteria = data.pop("criteria")
    if isinstance(criteria, str):
        criteria = json.loads(criteria)
    return RewardDefinition(criteria=RewardCriteria(**criteria), **data)


def _criteria_json(criteria: RewardCriteria) -> str:
    return json.dumps({"stat": criteria.stat.value, "target": str(criteria.target)})


class _PostgresTransaction(LedgerTransaction):
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def load_stats(self, user_id: UserId) -> Optional[ProgressStats]:
        sql = f"""
            SELECT {_STATS_COLUMNS}
            FROM progress_stats
            WHERE user_id = $1
            FOR UPDATE
        """
        row = await fetchrow_with_conn(self._conn, sql, user_id)
        return _stats_from_row(row) if row else None

    async def save_stats(self, stats: ProgressStats, *, expected_version: int) -> ProgressStats:
        args = (
            stats.user_id,
            stats.lessons_completed,
            stats.questions_answered,
            stats.correct_answers,
            stats.accuracy,
            stats.total_study_time,
            stats.puzzles_solved,
            stats.coding_problems_solved,
            stats.perfect_scores,
            stats.subjects_enrolled,
            stats.achievements_earned,
            json.dumps({t.value: n for t, n in stats.reward_counts.items()}),
            stats.streak,
            stats.longest_streak,
            stats.last_active_date,
            stats.level,
            stats.experience,
        )
        if expected_version == 0:
            # Two first events racing: the loser's insert waits on the unique index, then does nothing
            sql = f"""
                INSERT INTO progress_stats (
                    user_id, lessons_completed, questions_answered, correct_answers, accuracy,
                    total_study_time, puzzles_solved, coding_problems_solved, perfect_scores,
                    subjects_enrolled, achievements_earned, reward_counts, streak, longest_streak,
                    last_active_date, level, experience, version, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13, $14, $15, $16, $17, 1, now(), now())
                ON CONFLICT (user_id) DO NOTHING
                RETURNING {_STATS_COLUMNS}
            """
            row = await fetchrow_with_conn(self._conn, sql, *args)
        else:
            sql = f"""
                UPDATE progress_stats
                SET lessons_completed = $2,
                    questions_answered = $3,
                    correct_answers = $4,
                    accuracy = $5,
                    total_study_time = $6,
                    puzzles_solved = $7,
                    coding_problems_solved = $8,
                    perfect_scores = $9,
                    subjects_enrolled = $10,
                    achievements_earned = $11,
                    reward_counts = $12::jsonb,
                    streak = $13,
                    longest_streak = $14,
                    last_active_date = $15,
                    level = $16,
                    experience = $17,
                    version = version + 1,
                    updated_at = now()
                WHERE user_id = $1
                  AND version = $18
                RETURNING {_STATS_COLUMNS}
            """
            row = await fetchrow_with_conn(self._conn, sql, *args, expected_version)
        if not row:
            raise ConflictError(
                "progress stats version mismatch",
                details={"expected_version": expected_version},
            )
        return _stats_from_row(row)

    async def get_grant(self, user_id: UserId, reward_id: RewardId) -> Optional[RewardGrant]:
        sql = f"""
            SELECT {_GRANT_COLUMNS}
            FROM reward_grants
            WHERE user_id = $1 AND reward_id = $2
        """
        row = await fetchrow_with_conn(self._conn, sql, user_id, reward_id)
        return _grant_from_row(row) if row else None

    async def insert_grant_if_absent(self, grant: RewardGrant) -> Optional[RewardGrant]:
        sql = f"""
            INSERT INTO reward_grants (user_id, reward_id, earned_at, progress, times_earned, milestone, armed, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, now(), now())
            ON CONFLICT (user_id, reward_id) DO NOTHING
            RETURNING {_GRANT_COLUMNS}
        """
        row = await fetchrow_with_conn(
            self._conn,
            sql,
            grant.user_id,
            grant.reward_id,
            grant.earned_at,
            grant.progress,
            grant.times_earned,
            grant.milestone,
            grant.armed,
        )
        return _grant_from_row(row) if row else None

    async def update_grant(self, grant: RewardGrant, *, expected_times_earned: int) -> Optional[RewardGrant]:
        sql = f"""
            UPDATE reward_grants
            SET earned_at = $3,
                progress = $4,
                times_earned = $5,
                milestone = $6,
                armed = $7,
                updated_at = now()
            WHERE user_id = $1
              AND reward_id = $2
              AND times_earned = $8
            RETURNING {_GRANT_COLUMNS}
        """
        row = await fetchrow_with_conn(
            self._conn,
            sql,
            grant.user_id,
            grant.reward_id,
            grant.earned_at,
            grant.progress,
            grant.times_earned,
            grant.milestone,
            grant.armed,
            expected_times_earned,
        )
        return _grant_from_row(row) if row else None

    async def add_achievement(self, achievement: Achievement) -> Achievement:
        sql = f"""
            INSERT INTO achievements (
                user_id, reward_id, reward_revision, title, description, category,
                points, occurrence, earned_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING {_ACHIEVEMENT_COLUMNS}
        """
        row = await fetchrow_with_conn(
            self._conn,
            sql,
            achievement.user_id,
            achievement.reward_id,
            achievement.reward_revision,
            achievement.title,
            achievement.description,
            achievement.category.value,
            achievement.points,
            achievement.occurrence,
            achievement.earned_at,
        )
        return _achievement_from_row(row)


# asyncpg errors that mean "try again later" rather than "bug"
_TRANSIENT_PG_ERRORS = (
    asyncpg.exceptions.QueryCanceledError,
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.InterfaceError,
    ConnectionError,
    OSError,
)

_CONFLICT_PG_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


@asynccontextmanager
async def _translate_pg_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except _CONFLICT_PG_ERRORS as exc:
        raise ConflictError(f"{operation}: concurrent update", details={"pg_error": type(exc).__name__}) from exc
    except _TRANSIENT_PG_ERRORS as exc:
        raise PersistenceError(f"{operation}: storage unavailable", details={"pg_error": type(exc).__name__}) from exc
    except asyncpg.PostgresError as exc:
        raise PersistenceError(
            f"{operation}: storage error",
            retryable=False,
            details={"pg_error": type(exc).__name__},
        ) from exc


class PostgresLedgerStore(LedgerStore):
    """asyncpg-backed store; schema in migrations/001_gamification_ledger.sql."""

    @asynccontextmanager
    async def user_transaction(self, user_id: UserId) -> AsyncIterator[LedgerTransaction]:
        async with _translate_pg_errors("ledger_transaction"):
            async with run_in_transaction() as conn:
                yield _PostgresTransaction(conn)

    async def get_stats(self, user_id: UserId) -> Optional[ProgressStats]:
        async with _translate_pg_errors("get_stats"):
            row = await fetchrow(
                f"SELECT {_STATS_COLUMNS} FROM progress_stats WHERE user_id = $1",
                user_id,
            )
        return _stats_from_row(row) if row else None

    async def list_grants(self, user_id: UserId) -> List[RewardGrant]:
        async with _translate_pg_errors("list_grants"):
            rows = await fetch(
                f"""
                SELECT {_GRANT_COLUMNS}
                FROM reward_grants
                WHERE user_id = $1
                ORDER BY earned_at DESC
                """,
                user_id,
            )
        return [_grant_from_row(r) for r in rows]

    async def list_achievements(self, user_id: UserId) -> List[Achievement]:
        async with _translate_pg_errors("list_achievements"):
            rows = await fetch(
                f"""
                SELECT {_ACHIEVEMENT_COLUMNS}
                FROM achievements
                WHERE user_id = $1
                ORDER BY earned_at DESC, id DESC
                """,
                user_id,
            )
        return [_achievement_from_row(r) for r in rows]

    async def load_point_values(self) -> Dict[str, Decimal]:
        async with _translate_pg_errors("load_point_values"):
            rows = await fetch("SELECT kind, amount FROM point_values")
        return {str(r["kind"]): Decimal(r["amount"]) for r in rows}

    async def save_point_values(self, values: Mapping[str, Decimal], *, updated_by: Optional[str] = None) -> None:
        sql = """
            INSERT INTO point_values (kind, amount, updated_at, updated_by)
            VALUES ($1, $2, now(), $3)
            ON CONFLICT (kind) DO UPDATE
            SET amount = EXCLUDED.amount,
                updated_at = EXCLUDED.updated_at,
                updated_by = EXCLUDED.updated_by
        """
        async with _translate_pg_errors("save_point_values"):
            async with run_in_transaction() as conn:
                for kind, amount in values.items():
                    await execute_with_conn(conn, sql, kind, amount, updated_by)

    async def list_rewards(self, *, active_only: bool) -> List[RewardDefinition]:
        async with _translate_pg_errors("list_rewards"):
            rows = await fetch(
                f"""
                SELECT {_REWARD_COLUMNS}
                FROM reward_definitions
                WHERE ($1::boolean IS FALSE OR is_active)
                ORDER BY seq ASC
                """,
                active_only,
            )
        return [_reward_from_row(r) for r in rows]

    async def get_reward(self, reward_id: RewardId) -> Optional[RewardDefinition]:
        async with _translate_pg_errors("get_reward"):
            row = await fetchrow(
                f"SELECT {_REWARD_COLUMNS} FROM reward_definitions WHERE id = $1",
                reward_id,
            )
        return _reward_from_row(row) if row else None

    async def insert_reward(self, reward: RewardDefinition) -> RewardDefinition:
        sql = f"""
            INSERT INTO reward_definitions (
                id, name, description, type, category, tier, criteria, repeatable, points,
                is_active, revision, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12, $13)
            RETURNING {_REWARD_COLUMNS}
        """
        async with _translate_pg_errors("insert_reward"):
            row = await fetchrow(
                sql,
                reward.id,
                reward.name,
                reward.description,
                reward.type.value,
                reward.category.value,
                reward.tier.value,
                _criteria_json(reward.criteria),
                reward.repeatable,
                reward.points,
                reward.is_active,
                reward.revision,
                reward.created_at,
                reward.updated_at,
            )
        return _reward_from_row(row)

    async def update_reward(self, reward: RewardDefinition, *, expected_revision: int) -> Optional[RewardDefinition]:
        sql = f"""
            UPDATE reward_definitions
            SET name = $2,
                description = $3,
                type = $4,
                category = $5,
                tier = $6,
                criteria = $7::jsonb,
                repeatable = $8,
                points = $9,
                is_active = $10,
                revision = $11,
                updated_at = $12
            WHERE id = $1
              AND revision = $13
            RETURNING {_REWARD_COLUMNS}
        """
        async with _translate_pg_errors("update_reward"):
            row = await fetchrow(
                sql,
                reward.id,
                reward.name,
                reward.description,
                reward.type.value,
                reward.category.value,
                reward.tier.value,
                _criteria_json(reward.criteria),
                reward.repeatable,
                reward.points,
                reward.is_active,
                reward.revision,
                reward.updated_at,
                expected_revision,
            )
        return _reward_from_row(row) if row else None


_ledger_store: Optional[LedgerStore] = None


def get_ledger_store() -> LedgerStore:
    """Get or create the configured LedgerStore singleton."""
    global _ledger_store
    if _ledger_store is None:
        if settings.LEDGER_STORE == "postgres":
            _ledger_store = PostgresLedgerStore()
        else:
            _ledger_store = InMemoryLedgerStore()
        logger.info("ledger_store_selected", store=settings.LEDGER_STORE)
    return _ledger_store
