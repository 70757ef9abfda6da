# tests/fixtures/__init__.py
"""
Test fixtures for the gamification ledger.

Factory functions for creating test data:
- make_event()
- make_reward()
- make_ledger_stack()  (in-memory store wired to every service)
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from app.core.point_values import ActionKind, EventOutcome
from app.models.gamification import (
    CriteriaStat,
    LedgerEvent,
    RewardCategory,
    RewardCriteria,
    RewardDefinitionCreate,
    RewardType,
)
from services.event_dispatcher import EventDispatcher
from services.ledger_store import InMemoryLedgerStore
from services.point_values_service import PointValueTable
from services.progress_ledger_service import ProgressLedger
from services.reward_catalog_service import RewardCatalog
from services.reward_grant_service import RewardGrantEngine


def day(n: int, hour: int = 12) -> datetime:
    """UTC timestamp on day n of January 2025."""
    return datetime(2025, 1, n, hour, 0, tzinfo=timezone.utc)


def make_event(
    kind: ActionKind = ActionKind.LESSON_COMPLETED,
    outcome: Optional[EventOutcome] = None,
    occurred_at: Optional[datetime] = None,
    magnitude: Optional[int] = None,
    source_id: Optional[str] = None,
) -> LedgerEvent:
    """Factory function to create a ledger event."""
    return LedgerEvent(
        kind=kind,
        outcome=outcome,
        occurred_at=occurred_at or day(1),
        magnitude=magnitude,
        source_id=source_id,
    )


def make_reward(
    name: str = "First Lesson",
    stat: CriteriaStat = CriteriaStat.LESSONS_COMPLETED,
    target: Any = 1,
    repeatable: bool = False,
    points: Optional[Any] = None,
    category: RewardCategory = RewardCategory.LEARNING,
    reward_type: RewardType = RewardType.BADGE,
) -> RewardDefinitionCreate:
    """Factory function to create a reward definition payload."""
    return RewardDefinitionCreate(
        name=name,
        description=f"{name} reward",
        type=reward_type,
        category=category,
        criteria=RewardCriteria(stat=stat, target=Decimal(str(target))),
        repeatable=repeatable,
        points=Decimal(str(points)) if points is not None else None,
    )


@dataclass
class LedgerStack:
    store: InMemoryLedgerStore
    point_values: PointValueTable
    ledger: ProgressLedger
    catalog: RewardCatalog
    engine: RewardGrantEngine
    dispatcher: EventDispatcher


def make_ledger_stack(
    values: Optional[Mapping[str, Any]] = None,
    *,
    max_retries: int = 3,
    timeout_seconds: float = 5.0,
    store: Optional[InMemoryLedgerStore] = None,
) -> LedgerStack:
    """Every service wired to one fresh in-memory store."""
    store = store or InMemoryLedgerStore()
    point_values = PointValueTable(store, values)
    ledger = ProgressLedger(store, point_values, max_retries=max_retries, timeout_seconds=timeout_seconds)
    catalog = RewardCatalog(store)
    engine = RewardGrantEngine(store, ledger, point_values, catalog)
    dispatcher = EventDispatcher(ledger, engine, point_values, catalog)
    return LedgerStack(store, point_values, ledger, catalog, engine, dispatcher)
