from __future__ import annotations

from decimal import Decimal

import pytest

from app.core.level_curve import LevelCurve, compute_accuracy, tier_for_level


def test_step_costs_follow_default_curve():
    curve = LevelCurve(base_points=10, scaling="1.2")
    assert curve.step_cost(1) == Decimal("10.00")
    assert curve.step_cost(2) == Decimal("12.00")
    assert curve.step_cost(3) == Decimal("14.40")
    # 10 * 1.2^3 = 17.28
    assert curve.step_cost(4) == Decimal("17.28")


def test_step_cost_floors_to_cents():
    curve = LevelCurve(base_points=10, scaling="1.2")
    # 10 * 1.2^4 = 20.736
    assert curve.step_cost(5) == Decimal("20.73")


def test_thresholds_strictly_increasing():
    curve = LevelCurve(base_points=10, scaling="1.2")
    thresholds = [curve.threshold(level) for level in range(1, 30)]
    assert thresholds[0] == Decimal(0)
    assert all(a < b for a, b in zip(thresholds, thresholds[1:]))


def test_level_for_experience():
    curve = LevelCurve(base_points=10, scaling="1.2")
    assert curve.level_for(Decimal(0)) == 1
    assert curve.level_for(Decimal("9.99")) == 1
    assert curve.level_for(Decimal(10)) == 2
    assert curve.level_for(Decimal("21.99")) == 2
    assert curve.level_for(Decimal(22)) == 3
    assert curve.level_for(Decimal("36.40")) == 4


def test_points_to_next_level():
    curve = LevelCurve(base_points=10, scaling="1.2")
    assert curve.points_to_next_level(Decimal(6)) == Decimal("4.00")
    assert curve.points_to_next_level(Decimal(10)) == Decimal("12.00")


def test_flat_curve_allowed():
    curve = LevelCurve(base_points=5, scaling=1)
    assert curve.level_for(Decimal(25)) == 6


@pytest.mark.parametrize("base,scaling", [(0, "1.2"), (-1, "1.2"), (10, "0.9")])
def test_invalid_curve_rejected(base, scaling):
    with pytest.raises(ValueError):
        LevelCurve(base_points=base, scaling=scaling)


def test_accuracy_half_up():
    assert compute_accuracy(0, 0) == 0
    assert compute_accuracy(1, 2) == 50
    assert compute_accuracy(2, 3) == 67
    # 1/8 = 12.5 -> 13
    assert compute_accuracy(1, 8) == 13
    assert compute_accuracy(3, 3) == 100


@pytest.mark.parametrize(
    "level,tier",
    [(1, "bronze"), (9, "bronze"), (10, "silver"), (19, "silver"), (20, "gold"), (30, "platinum"), (49, "platinum"), (50, "diamond"), (80, "diamond")],
)
def test_tier_follows_level(level, tier):
    assert tier_for_level(level) == tier
