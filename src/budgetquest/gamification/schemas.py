"""Pydantic result models returned by the gamification engine."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel


# --- Streaks ---


class StreakState(BaseModel):
    type: str
    type_name: str
    current_count: int
    best_count: int
    last_activity_date: date | None = None
    is_active: bool
    started_on: date | None = None
    next_milestone: int
    is_at_milestone: bool
    can_claim_bonus: bool
    bonus_xp_available: int


class StreakResult(BaseModel):
    success: bool
    streak: StreakState
    bonus_xp: int = 0
    message: str
    is_milestone: bool = False
    next_milestone: int


class StreakSummary(BaseModel):
    streaks: list[StreakState]
    total_active: int
    best_streak: int
    total_bonus_available: int


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    user_name: str | None = None
    best_count: int
    current_count: int
    is_active: bool


class StreakLeaderboard(BaseModel):
    streak_type: str
    type_name: str
    entries: list[LeaderboardEntry]


# --- XP ---


class LevelResult(BaseModel):
    granted: bool
    xp_added: int
    total_xp: int
    previous_level: int
    new_level: int
    levels_gained: int

    @property
    def leveled_up(self) -> bool:
        return self.levels_gained > 0


class LevelInfo(BaseModel):
    user_id: int
    total_xp: int
    level: int
    title: str
    color: str
    xp_into_level: int
    xp_for_level: int
    xp_to_next_level: int
    progress_percentage: float


class BonusClaimResult(BaseModel):
    success: bool
    message: str
    bonus_xp: int = 0
    level: LevelResult | None = None
    streak: StreakState | None = None


# --- Achievements ---


class UnlockedAchievement(BaseModel):
    slug: str
    name: str
    description: str
    icon: str
    color: str
    type: str
    points: int
    rarity: str
    unlocked_at: datetime


class UnlockResult(BaseModel):
    event_type: str
    newly_unlocked: list[UnlockedAchievement] = []

    @property
    def slugs(self) -> list[str]:
        return [a.slug for a in self.newly_unlocked]


class AchievementProgress(BaseModel):
    slug: str
    name: str
    description: str
    icon: str
    rarity: str
    points: int
    current: float
    required: float
    percentage: int


class UserAchievementsResponse(BaseModel):
    unlocked: list[UnlockedAchievement]
    locked: list[AchievementProgress]
    total_unlocked: int
    total_available: int
    total_points: int


# --- Hooks ---


class HookOutcome(BaseModel):
    event_type: str
    user_id: int
    xp: LevelResult | None = None
    streak: StreakResult | None = None
    achievements: UnlockResult | None = None
    engagement_flushed: bool = False
