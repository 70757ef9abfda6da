# services/event_dispatcher.py
"""
Single entry point for content services reporting completed actions.

One call = one per-user transaction: the event is applied to the ledger and
the post-apply stats are evaluated against the catalog. Either all of it
commits or none of it does.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional, Tuple

from app.core.logging import get_logger
from app.core.request_id import with_event_id
from app.models.gamification import EventResult, LedgerEvent, NewGrant, ProgressDelta, ProgressStats, UserId
from services.ledger_store import LedgerTransaction
from services.point_values_service import PointValueTable, get_point_value_table
from services.progress_ledger_service import ProgressLedger, get_progress_ledger, validate_event
from services.reward_catalog_service import RewardCatalog, get_reward_catalog
from services.reward_grant_service import RewardGrantEngine, get_reward_grant_engine

logger = get_logger()


class EventDispatcher:
    def __init__(
        self,
        ledger: ProgressLedger,
        engine: RewardGrantEngine,
        point_values: PointValueTable,
        catalog: RewardCatalog,
    ) -> None:
        self._ledger = ledger
        self._engine = engine
        self._point_values = point_values
        self._catalog = catalog

    async def record(self, user_id: UserId, event: LedgerEvent, *, role: Optional[str] = None) -> EventResult:
        validate_event(user_id, event)

        # One point-table snapshot per event; the catalog is read inside the timed attempt
        points = self._point_values.snapshot()

        async def _run(tx: LedgerTransaction) -> Tuple[ProgressStats, ProgressDelta, List[NewGrant]]:
            rewards = await self._catalog.list_active()
            stats, delta = await self._ledger.apply_in(tx, user_id, event, points)
            return await self._engine.evaluate_in(tx, user_id, stats, delta, points, rewards)

        with with_event_id():
            stats, delta, new_grants = await self._ledger.run_serialized(user_id, _run)
            result = self._build_result(user_id, event, stats, delta, new_grants)
            self._log_committed(user_id, event, result, delta, new_grants, role=role)
        return result

    @staticmethod
    def _build_result(
        user_id: UserId,
        event: LedgerEvent,
        stats: ProgressStats,
        delta: ProgressDelta,
        new_grants: List[NewGrant],
    ) -> EventResult:
        earned = delta.points_earned
        bonus = sum((g.bonus_points for g in new_grants), Decimal(0))
        return EventResult(
            user_id=user_id,
            kind=event.kind,
            points_earned=earned,
            bonus_points=bonus,
            total_points=earned + bonus,
            experience=stats.experience,
            level=stats.level,
            leveled_up=delta.leveled_up,
            streak=stats.streak,
            new_grants=new_grants,
            achievements=[g.achievement for g in new_grants],
        )

    @staticmethod
    def _log_committed(
        user_id: UserId,
        event: LedgerEvent,
        result: EventResult,
        delta: ProgressDelta,
        new_grants: List[NewGrant],
        *,
        role: Optional[str],
    ) -> None:
        logger.info(
            "ledger_event_recorded",
            user_id=user_id,
            role=role,
            kind=event.kind.value,
            outcome=event.outcome.value if event.outcome else None,
            source_id=event.source_id,
            points=float(result.points_earned),
            bonus_points=float(result.bonus_points),
            experience=float(result.experience),
            level=result.level,
        )
        if delta.streak_changed:
            logger.info("ledger_streak_updated", user_id=user_id, streak=delta.new_streak)
        if delta.leveled_up:
            logger.info(
                "ledger_level_up",
                user_id=user_id,
                previous_level=delta.previous_level,
                new_level=result.level,
            )
        for g in new_grants:
            logger.info(
                "reward_granted" if g.first_time else "reward_regranted",
                user_id=user_id,
                reward_id=g.reward.id,
                reward_name=g.reward.name,
                times_earned=g.grant.times_earned,
                bonus_points=float(g.bonus_points),
            )


_event_dispatcher: Optional[EventDispatcher] = None


def get_event_dispatcher() -> EventDispatcher:
    """Get or create the EventDispatcher singleton."""
    global _event_dispatcher
    if _event_dispatcher is None:
        _event_dispatcher = EventDispatcher(
            get_progress_ledger(),
            get_reward_grant_engine(),
            get_point_value_table(),
            get_reward_catalog(),
        )
    return _event_dispatcher
