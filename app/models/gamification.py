# app/models/gamification.py
"""
Pydantic models for the gamification ledger: events, per-user progress,
reward definitions, grants and the achievements they emit.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, List, NewType, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, computed_field

from app.core.level_curve import tier_for_level
from app.core.point_values import ActionKind, EventOutcome

UserId = NewType("UserId", str)
RewardId = NewType("RewardId", str)

# Decimal internally, plain number on the wire
Points = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CriteriaStat(str, Enum):
    LESSONS_COMPLETED = "lessons_completed"
    QUESTIONS_ANSWERED = "questions_answered"
    CORRECT_ANSWERS = "correct_answers"
    ACCURACY = "accuracy"
    TOTAL_STUDY_TIME = "total_study_time"
    PUZZLES_SOLVED = "puzzles_solved"
    CODING_PROBLEMS_SOLVED = "coding_problems_solved"
    PERFECT_SCORES = "perfect_scores"
    SUBJECTS_ENROLLED = "subjects_enrolled"
    STREAK = "streak"
    LEVEL = "level"
    EXPERIENCE = "experience"


# Stats that may go down between evaluations
REGRESSIBLE_STATS = frozenset({CriteriaStat.STREAK, CriteriaStat.ACCURACY})


class RewardCategory(str, Enum):
    LEARNING = "learning"
    QUIZ = "quiz"
    CODING = "coding"
    PUZZLE = "puzzle"
    SOCIAL = "social"
    CONSISTENCY = "consistency"
    SPECIAL = "special"


class RewardTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


class RewardType(str, Enum):
    BADGE = "badge"
    ACHIEVEMENT = "achievement"
    MILESTONE = "milestone"
    STREAK = "streak"
    COMPLETION = "completion"
    PERFORMANCE = "performance"


class LedgerEvent(BaseModel):
    """One completed action reported by a content collaborator."""
    kind: ActionKind
    outcome: Optional[EventOutcome] = None
    magnitude: Optional[int] = Field(default=None, description="Study minutes spent on the action")
    occurred_at: datetime = Field(default_factory=utcnow)
    source_id: Optional[str] = Field(default=None, description="Lesson/quiz/puzzle id, opaque to the ledger")


class ProgressStats(BaseModel):
    user_id: UserId
    lessons_completed: int = 0
    questions_answered: int = 0
    correct_answers: int = 0
    accuracy: int = 0
    total_study_time: int = 0
    puzzles_solved: int = 0
    coding_problems_solved: int = 0
    perfect_scores: int = 0
    subjects_enrolled: int = 0
    achievements_earned: int = 0
    # Grants (first and repeat) per reward type
    reward_counts: Dict[RewardType, int] = Field(default_factory=dict)
    streak: int = 0
    longest_streak: int = 0
    last_active_date: Optional[date] = None
    level: int = 1
    experience: Points = Decimal(0)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def tier(self) -> RewardTier:
        return RewardTier(tier_for_level(self.level))

    def stat(self, name: CriteriaStat) -> Decimal:
        return Decimal(getattr(self, name.value))


class ProgressDelta(BaseModel):
    points_earned: Points = Decimal(0)
    new_experience: Points = Decimal(0)
    leveled_up: bool = False
    previous_level: int = 1
    new_level: int = 1
    streak_changed: bool = False
    new_streak: int = 0


class RewardCriteria(BaseModel):
    stat: CriteriaStat
    target: Points = Field(gt=0)


class RewardDefinitionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=500)
    type: RewardType = RewardType.BADGE
    category: RewardCategory = RewardCategory.LEARNING
    tier: RewardTier = RewardTier.BRONZE
    criteria: RewardCriteria
    repeatable: bool = False
    points: Optional[Points] = Field(default=None, ge=0, description="Bonus override; ACHIEVEMENT_EARNED rate when empty")
    is_active: bool = True


class RewardDefinitionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    type: Optional[RewardType] = None
    category: Optional[RewardCategory] = None
    tier: Optional[RewardTier] = None
    criteria: Optional[RewardCriteria] = None
    repeatable: Optional[bool] = None
    points: Optional[Points] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class RewardDefinition(RewardDefinitionCreate):
    id: RewardId
    revision: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RewardGrant(BaseModel):
    user_id: UserId
    reward_id: RewardId
    earned_at: datetime = Field(default_factory=utcnow)
    progress: int = Field(default=100, ge=0, le=100)
    times_earned: int = Field(default=1, ge=1)
    # Highest multiple of the target already rewarded (monotonic stats)
    milestone: int = Field(default=1, ge=0)
    # Repeatable rewards on regressible stats fire again only once re-armed
    armed: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Achievement(BaseModel):
    id: Optional[int] = None
    user_id: UserId
    reward_id: RewardId
    reward_revision: int = 1
    title: str
    description: str = ""
    category: RewardCategory
    points: Points = Decimal(0)
    occurrence: int = 1
    earned_at: datetime = Field(default_factory=utcnow)


class NewGrant(BaseModel):
    reward: RewardDefinition
    grant: RewardGrant
    achievement: Achievement
    first_time: bool
    bonus_points: Points = Decimal(0)


class EventResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: UserId
    kind: ActionKind
    points_earned: Points
    bonus_points: Points
    total_points: Points
    experience: Points
    level: int
    leveled_up: bool
    streak: int
    new_grants: List[NewGrant] = Field(default_factory=list)
    achievements: List[Achievement] = Field(default_factory=list)


class ProgressSummary(BaseModel):
    stats: ProgressStats
    points_to_next_level: Points


class PointValuesUpdate(BaseModel):
    values: dict[str, Points] = Field(description="Action kind -> new amount (>= 0)")
