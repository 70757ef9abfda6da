"""
Tests for the point value table.
"""
from __future__ import annotations

from decimal import Decimal

import pytest

from app.core.errors import ValidationError
from app.core.point_values import DEFAULT_POINT_VALUES, ActionKind
from services.ledger_store import InMemoryLedgerStore
from services.point_values_service import PointValueTable


def test_defaults_and_unknown_kind():
    table = PointValueTable()
    assert table.get(ActionKind.LESSON_COMPLETED) == Decimal("1")
    assert table.get("QUIZ_QUESTION_CORRECT") == Decimal("0.5")
    assert table.get("NOT_A_KIND") == Decimal(0)


def test_snapshot_is_read_only():
    table = PointValueTable()
    snap = table.snapshot()
    with pytest.raises(TypeError):
        snap["LESSON_COMPLETED"] = Decimal(100)  # type: ignore[index]


@pytest.mark.asyncio
async def test_set_rejects_negative_and_keeps_table():
    table = PointValueTable()
    with pytest.raises(ValidationError):
        await table.set(ActionKind.LESSON_COMPLETED, -1, updated_by="admin@example.com")
    assert table.get(ActionKind.LESSON_COMPLETED) == Decimal("1")


@pytest.mark.asyncio
async def test_set_rejects_unknown_kind():
    table = PointValueTable()
    with pytest.raises(ValidationError):
        await table.set("TELEPORTED", 3)


@pytest.mark.asyncio
async def test_replace_is_all_or_nothing():
    store = InMemoryLedgerStore()
    table = PointValueTable(store)
    with pytest.raises(ValidationError):
        await table.replace({"LESSON_COMPLETED": 3, "PUZZLE_SOLVED": "-2"})
    assert table.get("LESSON_COMPLETED") == Decimal("1")
    assert await store.load_point_values() == {}


@pytest.mark.asyncio
async def test_set_does_not_touch_existing_snapshot():
    store = InMemoryLedgerStore()
    table = PointValueTable(store)
    before = table.snapshot()

    await table.set(ActionKind.LESSON_COMPLETED, "2.5", updated_by="admin@example.com")

    assert before["LESSON_COMPLETED"] == Decimal("1")
    assert table.get(ActionKind.LESSON_COMPLETED) == Decimal("2.5")
    assert (await store.load_point_values())["LESSON_COMPLETED"] == Decimal("2.5")


@pytest.mark.asyncio
async def test_load_seeds_missing_kinds_and_keeps_stored_values():
    store = InMemoryLedgerStore()
    await store.save_point_values({"LESSON_COMPLETED": Decimal(7)})
    table = PointValueTable(store)

    values = await table.load()

    assert values["LESSON_COMPLETED"] == Decimal(7)
    assert values["ACHIEVEMENT_EARNED"] == DEFAULT_POINT_VALUES["ACHIEVEMENT_EARNED"]
    stored = await store.load_point_values()
    assert set(stored) == set(DEFAULT_POINT_VALUES)
    assert stored["LESSON_COMPLETED"] == Decimal(7)
