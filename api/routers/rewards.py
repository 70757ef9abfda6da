# api/routers/rewards.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from app.core.errors import LedgerError, to_http_exception
from app.models.gamification import RewardDefinition
from services.reward_catalog_service import RewardCatalog, get_reward_catalog

router = APIRouter(prefix="/rewards", tags=["rewards"])


@router.get("", response_model=List[RewardDefinition])
async def list_rewards(
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> List[RewardDefinition]:
    """Active reward catalog, in creation order."""
    try:
        return await catalog.list_active()
    except LedgerError as e:
        raise to_http_exception(e) from e


@router.get("/{reward_id}", response_model=RewardDefinition)
async def get_reward(
    reward_id: str,
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> RewardDefinition:
    try:
        return await catalog.get(reward_id)
    except LedgerError as e:
        raise to_http_exception(e) from e
