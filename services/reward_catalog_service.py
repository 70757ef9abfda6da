# services/reward_catalog_service.py
"""
Reward catalog.

Admin-curated reward definitions. Edits bump `revision` and only affect
future evaluations; grants already made keep referring to the reward id.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.models.gamification import (
    RewardDefinition,
    RewardDefinitionCreate,
    RewardDefinitionUpdate,
    RewardId,
    utcnow,
)
from services.ledger_store import LedgerStore, get_ledger_store

logger = get_logger()


class RewardCatalog:
    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def list_active(self) -> List[RewardDefinition]:
        """Enabled definitions in creation order."""
        return await self._store.list_rewards(active_only=True)

    async def list_all(self) -> List[RewardDefinition]:
        return await self._store.list_rewards(active_only=False)

    async def _require(self, reward_id: RewardId) -> RewardDefinition:
        reward = await self._store.get_reward(reward_id)
        if reward is None:
            raise NotFoundError(f"Reward {reward_id} not found", details={"reward_id": reward_id})
        return reward

    async def get(self, reward_id: RewardId, *, include_disabled: bool = False) -> RewardDefinition:
        reward = await self._require(reward_id)
        if not reward.is_active and not include_disabled:
            raise NotFoundError(f"Reward {reward_id} is disabled", details={"reward_id": reward_id})
        return reward

    async def create(self, payload: RewardDefinitionCreate, *, created_by: Optional[str] = None) -> RewardDefinition:
        reward = RewardDefinition(id=RewardId(uuid.uuid4().hex), **payload.model_dump())
        stored = await self._store.insert_reward(reward)
        logger.info(
            "reward_definition_created",
            reward_id=stored.id,
            name=stored.name,
            stat=stored.criteria.stat.value,
            target=str(stored.criteria.target),
            repeatable=stored.repeatable,
            created_by=created_by,
        )
        return stored

    async def update(
        self,
        reward_id: RewardId,
        changes: RewardDefinitionUpdate,
        *,
        updated_by: Optional[str] = None,
    ) -> RewardDefinition:
        current = await self._require(reward_id)
        patch = changes.model_dump(exclude_unset=True)
        # name/criteria/flags are required on the definition; explicit nulls are not a change
        patch = {k: v for k, v in patch.items() if v is not None or k == "points"}
        if not patch:
            return current

        merged = current.model_dump()
        merged.update(patch)
        merged["revision"] = current.revision + 1
        merged["updated_at"] = utcnow()
        try:
            updated = RewardDefinition(**merged)
        except ValueError as e:
            raise ValidationError(f"Invalid reward update: {e}") from e

        stored = await self._store.update_reward(updated, expected_revision=current.revision)
        if stored is None:
            raise ConflictError(
                f"Reward {reward_id} was modified concurrently",
                details={"reward_id": reward_id, "expected_revision": current.revision},
            )
        logger.info(
            "reward_definition_updated",
            reward_id=reward_id,
            revision=stored.revision,
            fields=sorted(patch),
            updated_by=updated_by,
        )
        return stored

    async def disable(self, reward_id: RewardId, *, updated_by: Optional[str] = None) -> RewardDefinition:
        """Soft delete: the definition stays for existing grants but is no longer evaluated."""
        current = await self._require(reward_id)
        if not current.is_active:
            return current
        return await self.update(reward_id, RewardDefinitionUpdate(is_active=False), updated_by=updated_by)


_reward_catalog: Optional[RewardCatalog] = None


def get_reward_catalog() -> RewardCatalog:
    """Get or create the RewardCatalog singleton."""
    global _reward_catalog
    if _reward_catalog is None:
        _reward_catalog = RewardCatalog(get_ledger_store())
    return _reward_catalog
