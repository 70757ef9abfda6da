"""
Tests for the reward catalog.
"""
from __future__ import annotations

from decimal import Decimal

import pytest

from app.core.errors import NotFoundError
from app.models.gamification import CriteriaStat, RewardCriteria, RewardDefinitionUpdate
from tests.fixtures import make_ledger_stack, make_reward


@pytest.mark.asyncio
async def test_create_and_list_in_creation_order():
    stack = make_ledger_stack()
    first = await stack.catalog.create(make_reward("First Lesson"))
    second = await stack.catalog.create(make_reward("Ten Lessons", target=10))

    active = await stack.catalog.list_active()

    assert [r.id for r in active] == [first.id, second.id]
    assert first.revision == 1
    assert first.id != second.id


@pytest.mark.asyncio
async def test_get_unknown_reward():
    stack = make_ledger_stack()
    with pytest.raises(NotFoundError):
        await stack.catalog.get("missing")


@pytest.mark.asyncio
async def test_update_bumps_revision():
    stack = make_ledger_stack()
    reward = await stack.catalog.create(make_reward("Ten Lessons", target=10))

    updated = await stack.catalog.update(
        reward.id,
        RewardDefinitionUpdate(
            name="Twelve Lessons",
            criteria=RewardCriteria(stat=CriteriaStat.LESSONS_COMPLETED, target=Decimal(12)),
        ),
        updated_by="admin@example.com",
    )

    assert updated.revision == 2
    assert updated.name == "Twelve Lessons"
    assert updated.criteria.target == Decimal(12)
    assert (await stack.catalog.get(reward.id)).name == "Twelve Lessons"


@pytest.mark.asyncio
async def test_update_unknown_reward():
    stack = make_ledger_stack()
    with pytest.raises(NotFoundError):
        await stack.catalog.update("missing", RewardDefinitionUpdate(name="x"))


@pytest.mark.asyncio
async def test_update_can_clear_points_override():
    stack = make_ledger_stack()
    reward = await stack.catalog.create(make_reward(points=20))

    updated = await stack.catalog.update(reward.id, RewardDefinitionUpdate(points=None))

    assert updated.points is None


@pytest.mark.asyncio
async def test_disable_hides_reward_but_keeps_it():
    stack = make_ledger_stack()
    reward = await stack.catalog.create(make_reward())

    disabled = await stack.catalog.disable(reward.id)

    assert disabled.is_active is False
    assert await stack.catalog.list_active() == []
    assert [r.id for r in await stack.catalog.list_all()] == [reward.id]
    with pytest.raises(NotFoundError):
        await stack.catalog.get(reward.id)
    assert (await stack.catalog.get(reward.id, include_disabled=True)).id == reward.id


@pytest.mark.asyncio
async def test_disable_unknown_reward():
    stack = make_ledger_stack()
    with pytest.raises(NotFoundError):
        await stack.catalog.disable("missing")


def test_criteria_target_must_be_positive():
    with pytest.raises(ValueError):
        RewardCriteria(stat=CriteriaStat.STREAK, target=Decimal(0))
