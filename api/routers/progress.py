# api/routers/progress.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from app.core.errors import LedgerError, to_http_exception
from app.core.logging import get_logger
from app.deps.auth import User, get_current_user
from app.models.gamification import Achievement, EventResult, LedgerEvent, ProgressSummary, RewardGrant
from services.event_dispatcher import EventDispatcher, get_event_dispatcher
from services.progress_ledger_service import ProgressLedger, get_progress_ledger
from services.reward_grant_service import RewardGrantEngine, get_reward_grant_engine

logger = get_logger()

router = APIRouter(prefix="/progress", tags=["progress"])


@router.post("/events", response_model=EventResult, status_code=status.HTTP_201_CREATED)
async def record_event(
    event: LedgerEvent,
    user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
) -> EventResult:
    """
    Record one completed action for the authenticated user.
    Applies points, streak and level, then grants any rewards it unlocks.
    """
    try:
        return await dispatcher.record(user.user_id, event, role=user.role)
    except LedgerError as e:
        logger.warning("record_event_failed", user_id=user.user_id, kind=event.kind.value, code=e.code)
        raise to_http_exception(e) from e


@router.get("/me", response_model=ProgressSummary)
async def get_my_progress(
    user: User = Depends(get_current_user),
    ledger: ProgressLedger = Depends(get_progress_ledger),
) -> ProgressSummary:
    try:
        stats = await ledger.get(user.user_id)
    except LedgerError as e:
        raise to_http_exception(e) from e
    return ProgressSummary(stats=stats, points_to_next_level=ledger.points_to_next_level(stats))


@router.get("/me/rewards", response_model=List[RewardGrant])
async def get_my_rewards(
    user: User = Depends(get_current_user),
    engine: RewardGrantEngine = Depends(get_reward_grant_engine),
) -> List[RewardGrant]:
    try:
        return await engine.list_grants(user.user_id)
    except LedgerError as e:
        raise to_http_exception(e) from e


@router.get("/me/achievements", response_model=List[Achievement])
async def get_my_achievements(
    user: User = Depends(get_current_user),
    engine: RewardGrantEngine = Depends(get_reward_grant_engine),
) -> List[Achievement]:
    try:
        return await engine.list_achievements(user.user_id)
    except LedgerError as e:
        raise to_http_exception(e) from e
