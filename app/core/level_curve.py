# app/core/level_curve.py
"""
Level curve, user tier and accuracy helpers.

Level 1 starts at 0 experience. Going from level L to L+1 costs
floor(base * scaling^(L-1) * 100) / 100 points, so thresholds are strictly
increasing as long as base > 0 and scaling >= 1.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional

from app.config import settings

_CENT = Decimal("0.01")


class LevelCurve:
    def __init__(
        self,
        base_points: Optional[Decimal | float | str] = None,
        scaling: Optional[Decimal | float | str] = None,
    ) -> None:
        base = Decimal(str(base_points if base_points is not None else settings.LEVEL_CURVE_BASE_POINTS))
        factor = Decimal(str(scaling if scaling is not None else settings.LEVEL_CURVE_SCALING))
        if base <= 0:
            raise ValueError(f"base_points must be > 0, got {base}")
        if factor < 1:
            raise ValueError(f"scaling must be >= 1, got {factor}")
        self.base_points = base
        self.scaling = factor

    def step_cost(self, level: int) -> Decimal:
        """Points needed to go from `level` to `level + 1`."""
        raw = self.base_points * self.scaling ** (level - 1)
        return (raw / _CENT).to_integral_value(rounding=ROUND_FLOOR) * _CENT

    def threshold(self, level: int) -> Decimal:
        """Cumulative experience at which `level` is reached."""
        total = Decimal(0)
        for lvl in range(1, level):
            total += self.step_cost(lvl)
        return total

    def level_for(self, experience: Decimal) -> int:
        level = 1
        total = Decimal(0)
        step = self.step_cost(level)
        while total + step <= experience:
            total += step
            level += 1
            step = self.step_cost(level)
        return level

    def points_to_next_level(self, experience: Decimal) -> Decimal:
        level = self.level_for(experience)
        return self.threshold(level + 1) - experience


def compute_accuracy(correct_answers: int, questions_answered: int) -> int:
    """round(correct / answered * 100), half-up; 0 when nothing was answered."""
    if questions_answered <= 0:
        return 0
    ratio = Decimal(correct_answers) * 100 / Decimal(questions_answered)
    return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))


# Minimum level for each user tier, highest first
TIER_LEVELS = (
    ("diamond", 50),
    ("platinum", 30),
    ("gold", 20),
    ("silver", 10),
    ("bronze", 1),
)


def tier_for_level(level: int) -> str:
    for tier, min_level in TIER_LEVELS:
        if level >= min_level:
            return tier
    return "bronze"
