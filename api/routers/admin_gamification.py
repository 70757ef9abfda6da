# api/routers/admin_gamification.py
from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.errors import LedgerError, to_http_exception
from app.core.logging import get_logger
from app.deps.admin_auth import AdminUser, verify_admin_user
from app.models.gamification import (
    Points,
    PointValuesUpdate,
    ProgressSummary,
    RewardDefinition,
    RewardDefinitionCreate,
    RewardDefinitionUpdate,
)
from services.point_values_service import PointValueTable, get_point_value_table
from services.progress_ledger_service import ProgressLedger, get_progress_ledger
from services.reward_catalog_service import RewardCatalog, get_reward_catalog

logger = get_logger()

router = APIRouter(
    prefix="/admin/gamification",
    tags=["admin-gamification"],
)


@router.get("/point-values", response_model=Dict[str, Points])
async def get_point_values(
    admin: AdminUser = Depends(verify_admin_user),
    table: PointValueTable = Depends(get_point_value_table),
) -> Dict[str, Points]:
    return dict(table.snapshot())


@router.put("/point-values", response_model=Dict[str, Points])
async def update_point_values(
    update: PointValuesUpdate,
    admin: AdminUser = Depends(verify_admin_user),
    table: PointValueTable = Depends(get_point_value_table),
) -> Dict[str, Points]:
    """
    Update one or more point values. All amounts are validated before any is stored;
    events already in flight keep the values they started with.
    """
    if not update.values:
        raise HTTPException(status_code=400, detail="At least one point value must be provided")
    try:
        values = await table.replace(update.values, updated_by=admin.email)
    except LedgerError as e:
        logger.warning("point_values_update_rejected", code=e.code, error=e.message)
        raise to_http_exception(e) from e
    return dict(values)


@router.get("/rewards", response_model=List[RewardDefinition])
async def list_all_rewards(
    admin: AdminUser = Depends(verify_admin_user),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> List[RewardDefinition]:
    """All definitions, disabled ones included."""
    try:
        return await catalog.list_all()
    except LedgerError as e:
        raise to_http_exception(e) from e


@router.post("/rewards", response_model=RewardDefinition, status_code=status.HTTP_201_CREATED)
async def create_reward(
    payload: RewardDefinitionCreate,
    admin: AdminUser = Depends(verify_admin_user),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> RewardDefinition:
    try:
        return await catalog.create(payload, created_by=admin.email)
    except LedgerError as e:
        raise to_http_exception(e) from e


@router.patch("/rewards/{reward_id}", response_model=RewardDefinition)
async def update_reward(
    reward_id: str,
    changes: RewardDefinitionUpdate,
    admin: AdminUser = Depends(verify_admin_user),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> RewardDefinition:
    if not changes.model_dump(exclude_unset=True):
        raise HTTPException(status_code=400, detail="At least one field must be provided for update")
    try:
        return await catalog.update(reward_id, changes, updated_by=admin.email)
    except LedgerError as e:
        raise to_http_exception(e) from e


@router.delete("/rewards/{reward_id}", response_model=RewardDefinition)
async def disable_reward(
    reward_id: str,
    admin: AdminUser = Depends(verify_admin_user),
    catalog: RewardCatalog = Depends(get_reward_catalog),
) -> RewardDefinition:
    """Disable (soft delete): existing grants are kept, the reward is no longer evaluated."""
    try:
        return await catalog.disable(reward_id, updated_by=admin.email)
    except LedgerError as e:
        raise to_http_exception(e) from e


@router.get("/users/{user_id}/progress", response_model=ProgressSummary)
async def get_user_progress(
    user_id: str,
    admin: AdminUser = Depends(verify_admin_user),
    ledger: ProgressLedger = Depends(get_progress_ledger),
) -> ProgressSummary:
    try:
        stats = await ledger.get(user_id, must_exist=True)
    except LedgerError as e:
        raise to_http_exception(e) from e
    return ProgressSummary(stats=stats, points_to_next_level=ledger.points_to_next_level(stats))
