"""Pydantic request/response models for gamification endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from ead.gamification.types import LeaderboardWindow


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- Achievements ---


class AchievementResponse(_FromAttributes):
    id: int
    name: str
    description: str
    icon: str
    type: str
    requirement: int
    points: int


class AllAchievementsResponse(BaseModel):
    achievements: list[AchievementResponse]


class UserAchievementResponse(_FromAttributes):
    achievement: AchievementResponse
    unlocked_at: datetime


class UserAchievementsResponse(BaseModel):
    unlocked: list[UserAchievementResponse]
    total_available: int
    total_unlocked: int


class EvaluateResponse(BaseModel):
    newly_unlocked: list[AchievementResponse]


# --- Points ---


class PointsResponse(BaseModel):
    total_points: int
    courses_completed: int = 0
    lessons_completed: int = 0
    quizzes_passed: int = 0
    certificates_earned: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_at: datetime | None = None
    rank: int = 0
    total_users: int = 0


class PointTransactionResponse(_FromAttributes):
    id: int
    points: int
    reason: str
    description: str
    created_at: datetime


class PointHistoryResponse(BaseModel):
    transactions: list[PointTransactionResponse]
    next_cursor: str | None = None


class AdjustPointsRequest(BaseModel):
    user_id: int
    points: int
    description: str = Field(min_length=1, max_length=256)


class AdjustPointsResponse(BaseModel):
    transaction_id: int | None
    total_points: int


# --- Streak ---


class StreakResponse(BaseModel):
    current_streak: int = 0
    longest_streak: int = 0
    last_study_date: date | None = None


# --- Leaderboard ---


class LeaderboardEntryResponse(_FromAttributes):
    rank: int
    user_id: int
    display_name: str
    total_points: int
    courses_completed: int
    current_streak: int
    achievement_count: int
    is_current_user: bool = False


class LeaderboardResponse(BaseModel):
    organization_id: int
    window: LeaderboardWindow
    entries: list[LeaderboardEntryResponse]


class UserRankResponse(BaseModel):
    rank: int
    total_points: int
    total_users_in_organization: int


# --- Events ---


class ActivityOutcomeResponse(BaseModel):
    transaction_id: int | None
    points_awarded: int
    duplicate: bool
    current_streak: int | None = None
    streak_bonus: int = 0
    unlocked: list[AchievementResponse] = []
