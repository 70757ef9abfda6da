# services/reward_grant_service.py
"""
Reward grant engine.

Evaluates a user's post-event stats against the active catalog and makes
grants idempotent: a (user, reward) pair owns at most one grant row, created
through an insert-if-absent and only ever advanced with a conditional update
on the previous times_earned.

Repeatable rewards fire again when freshly re-satisfied:
- regressible stats (streak, accuracy): the criterion must have been seen
  unsatisfied since the last grant, which re-arms the grant;
- monotonic stats: a multiple of the target above the one recorded on the
  grant (`milestone`) was reached.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from app.core.errors import ConflictError
from app.core.logging import get_logger
from app.core.point_values import ActionKind
from app.models.gamification import (
    REGRESSIBLE_STATS,
    Achievement,
    NewGrant,
    ProgressDelta,
    ProgressStats,
    RewardDefinition,
    RewardGrant,
    UserId,
    utcnow,
)
from services.ledger_store import LedgerStore, LedgerTransaction, get_ledger_store
from services.point_values_service import PointValues, PointValueTable, get_point_value_table
from services.progress_ledger_service import ProgressLedger, get_progress_ledger, validate_user_id
from services.reward_catalog_service import RewardCatalog, get_reward_catalog

logger = get_logger()

_ZERO = Decimal(0)
_HUNDRED = Decimal(100)


def _progress_pct(value: Decimal, target: Decimal) -> int:
    if target <= 0:
        return 100
    return int(min(_HUNDRED, max(_ZERO, value * _HUNDRED / target)))


def _bonus_for(reward: RewardDefinition, points: PointValues) -> Decimal:
    if reward.points is not None:
        return reward.points
    return points.get(ActionKind.ACHIEVEMENT_EARNED.value, _ZERO)


class RewardGrantEngine:
    def __init__(
        self,
        store: LedgerStore,
        ledger: ProgressLedger,
        point_values: PointValueTable,
        catalog: RewardCatalog,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._point_values = point_values
        self._catalog = catalog

    async def _emit(
        self,
        tx: LedgerTransaction,
        reward: RewardDefinition,
        grant: RewardGrant,
        *,
        bonus: Decimal,
    ) -> Achievement:
        return await tx.add_achievement(
            Achievement(
                user_id=grant.user_id,
                reward_id=reward.id,
                reward_revision=reward.revision,
                title=reward.name,
                description=reward.description,
                category=reward.category,
                points=bonus,
                occurrence=grant.times_earned,
                earned_at=grant.earned_at,
            )
        )

    async def _advance(self, tx: LedgerTransaction, grant: RewardGrant, **changes) -> RewardGrant:
        updated = grant.model_copy(update={**changes, "updated_at": utcnow()})
        stored = await tx.update_grant(updated, expected_times_earned=grant.times_earned)
        if stored is None:
            raise ConflictError(
                "reward grant changed concurrently",
                details={"reward_id": grant.reward_id, "expected_times_earned": grant.times_earned},
            )
        return stored

    async def _evaluate_reward(
        self,
        tx: LedgerTransaction,
        user_id: UserId,
        stats: ProgressStats,
        reward: RewardDefinition,
        points: PointValues,
    ) -> Optional[NewGrant]:
        """At most one grant transition per reward per evaluation."""
        criteria = reward.criteria
        value = stats.stat(criteria.stat)
        target = criteria.target
        satisfied = value >= target
        regressible = criteria.stat in REGRESSIBLE_STATS

        grant = await tx.get_grant(user_id, reward.id)
        if grant is None:
            if not satisfied:
                return None
            inserted = await tx.insert_grant_if_absent(
                RewardGrant(
                    user_id=user_id,
                    reward_id=reward.id,
                    earned_at=utcnow(),
                    progress=100,
                    times_earned=1,
                    milestone=int(value // target),
                )
            )
            if inserted is None:
                # Someone else created it first; their grant stands
                return None
            bonus = _bonus_for(reward, points)
            achievement = await self._emit(tx, reward, inserted, bonus=bonus)
            return NewGrant(reward=reward, grant=inserted, achievement=achievement, first_time=True, bonus_points=bonus)

        if not reward.repeatable:
            return None

        milestone = int(value // target)
        if regressible:
            if not satisfied:
                progress = _progress_pct(value, target)
                if not grant.armed or grant.progress != progress:
                    await self._advance(tx, grant, armed=True, progress=progress)
                return None
            if not grant.armed:
                return None
        elif milestone <= grant.milestone:
            # No multiple of the target crossed since the last transition
            progress = _progress_pct(value - target * grant.milestone, target)
            if grant.progress != progress:
                await self._advance(tx, grant, progress=progress)
            return None

        regranted = await self._advance(
            tx,
            grant,
            times_earned=grant.times_earned + 1,
            milestone=milestone,
            earned_at=utcnow(),
            progress=100,
            armed=False,
        )
        achievement = await self._emit(tx, reward, regranted, bonus=_ZERO)
        return NewGrant(reward=reward, grant=regranted, achievement=achievement, first_time=False, bonus_points=_ZERO)

    async def evaluate_in(
        self,
        tx: LedgerTransaction,
        user_id: UserId,
        stats: ProgressStats,
        delta: ProgressDelta,
        points: PointValues,
        rewards: Sequence[RewardDefinition],
    ) -> Tuple[ProgressStats, ProgressDelta, List[NewGrant]]:
        """
        Evaluate `rewards` against post-apply `stats` inside an open transaction.

        Bonuses are summed and applied in one synthetic ACHIEVEMENT_EARNED pass
        after all rewards were looked at, so a bonus never triggers a second
        round of evaluation within the same event.
        """
        new_grants: List[NewGrant] = []
        for reward in rewards:
            if not reward.is_active:
                continue
            new_grant = await self._evaluate_reward(tx, user_id, stats, reward, points)
            if new_grant is not None:
                new_grants.append(new_grant)
                logger.debug(
                    "reward_grant_staged",
                    user_id=user_id,
                    reward_id=reward.id,
                    times_earned=new_grant.grant.times_earned,
                    first_time=new_grant.first_time,
                )

        if new_grants:
            total_bonus = sum((g.bonus_points for g in new_grants), _ZERO)
            stats, delta = await self._ledger.apply_bonus_in(
                tx, stats, delta, total_bonus, reward_types=[g.reward.type for g in new_grants]
            )
        return stats, delta, new_grants

    async def evaluate(self, user_id: UserId, stats: ProgressStats, delta: ProgressDelta) -> List[NewGrant]:
        """Standalone evaluation in its own serialized transaction, against the freshest stats."""
        validate_user_id(user_id)
        points = self._point_values.snapshot()

        async def _run(tx: LedgerTransaction) -> List[NewGrant]:
            rewards = await self._catalog.list_active()
            current = await tx.load_stats(user_id)
            _, _, new_grants = await self.evaluate_in(
                tx, user_id, current if current is not None else stats, delta, points, rewards
            )
            return new_grants

        return await self._ledger.run_serialized(user_id, _run)

    async def list_grants(self, user_id: UserId) -> List[RewardGrant]:
        validate_user_id(user_id)
        return await self._store.list_grants(user_id)

    async def list_achievements(self, user_id: UserId) -> List[Achievement]:
        validate_user_id(user_id)
        return await self._store.list_achievements(user_id)


_reward_grant_engine: Optional[RewardGrantEngine] = None


def get_reward_grant_engine() -> RewardGrantEngine:
    """Get or create the RewardGrantEngine singleton."""
    global _reward_grant_engine
    if _reward_grant_engine is None:
        _reward_grant_engine = RewardGrantEngine(
            get_ledger_store(),
            get_progress_ledger(),
            get_point_value_table(),
            get_reward_catalog(),
        )
    return _reward_grant_engine
