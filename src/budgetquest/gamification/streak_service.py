"""Streak tracking: daily triggers, milestones, bonus claims and expiry."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetquest.config import get_settings
from budgetquest.db.models import Streak, User
from budgetquest.gamification.errors import UnknownStreakType
from budgetquest.gamification.level_thresholds import pick_tier
from budgetquest.gamification.notifications import notify
from budgetquest.gamification.schemas import (
    BonusClaimResult,
    LeaderboardEntry,
    StreakLeaderboard,
    StreakResult,
    StreakState,
    StreakSummary,
)
from budgetquest.gamification.xp_service import add_xp

logger = logging.getLogger(__name__)

MILESTONE_INTERVAL = 7
DAILY_BASE_XP = 5

# type -> display name, daily XP multiplier, claim bonus
STREAK_TYPES: dict[str, dict] = {
    "daily_login": {"name": "Daily Login", "multiplier": 1.0, "claim_bonus": 5},
    "daily_transaction": {"name": "Daily Transaction", "multiplier": 1.5, "claim_bonus": 15},
    "weekly_budget": {"name": "Weekly Budget", "multiplier": 2.0, "claim_bonus": 25},
    "monthly_saving": {"name": "Monthly Saving", "multiplier": 3.0, "claim_bonus": 50},
}

# (minimum count, bonus XP) granted on top of the daily XP at milestones
MILESTONE_BONUS_XP: tuple[tuple[int, int], ...] = (
    (100, 300),
    (50, 200),
    (30, 100),
    (14, 50),
    (7, 25),
    (3, 10),
)

MOTIVATION_MESSAGES: tuple[tuple[int, str], ...] = (
    (100, "Legendary! {count} days in a row!"),
    (50, "Champion! {count} days straight!"),
    (30, "Excellent! A full month!"),
    (14, "Super! Two weeks strong!"),
    (7, "Bravo! A full week!"),
    (3, "Here we go! {count} days!"),
    (0, "Keep it up!"),
)

# (hours since last activity, risk level), evaluated top-down
RISK_LEVELS: tuple[tuple[float, str], ...] = (
    (20, "critical"),
    (12, "high"),
    (6, "medium"),
)

ALREADY_RECORDED = "Activity already recorded today"


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------


def ensure_streak_type(streak_type: str) -> None:
    if streak_type not in STREAK_TYPES:
        msg = f"Unknown streak type {streak_type!r}; expected one of {sorted(STREAK_TYPES)}"
        raise UnknownStreakType(msg)


def current_date() -> date:
    """Today's date in the configured streak timezone."""
    return datetime.now(ZoneInfo(get_settings().streak_timezone)).date()


def is_at_milestone(count: int) -> bool:
    return count > 0 and count % MILESTONE_INTERVAL == 0


def next_milestone(count: int) -> int:
    """Smallest multiple of 7 strictly greater than ``count``."""
    return (count // MILESTONE_INTERVAL + 1) * MILESTONE_INTERVAL


def milestone_bonus_xp(count: int) -> int:
    if not is_at_milestone(count):
        return 0
    for threshold, bonus in MILESTONE_BONUS_XP:
        if count >= threshold:
            return bonus
    return 0


def daily_streak_xp(streak_type: str, count: int) -> int:
    """XP granted for one successful trigger at ``count`` days."""
    multiplier = STREAK_TYPES[streak_type]["multiplier"]
    return int(DAILY_BASE_XP * multiplier) + milestone_bonus_xp(count)


def can_claim_bonus(streak: Streak) -> bool:
    """One bonus per distinct milestone within the current run."""
    count = streak.current_count
    return is_at_milestone(count) and count > (streak.last_claimed_milestone or 0)


def claimable_bonus_xp(streak: Streak) -> int:
    if not can_claim_bonus(streak):
        return 0
    type_bonus = STREAK_TYPES.get(streak.type, {}).get("claim_bonus", 0)
    return 20 + (streak.current_count // MILESTONE_INTERVAL) * 10 + type_bonus


def motivation_message(count: int) -> str:
    return pick_tier(MOTIVATION_MESSAGES, count).format(count=count)


def risk_level(streak: Streak, now: datetime | None = None) -> str:
    """How close an active streak is to breaking.

    Hours are counted from midnight of the last activity day in the streak
    timezone. A naive ``now`` is taken as UTC.
    """
    if streak.last_activity_date is None or not streak.is_active:
        return "none"
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    tz = ZoneInfo(get_settings().streak_timezone)
    last = datetime.combine(streak.last_activity_date, time.min, tzinfo=tz)
    hours = (now - last).total_seconds() / 3600
    for threshold, level in RISK_LEVELS:
        if hours > threshold:
            return level
    return "low"


def advance_streak(streak: Streak, today: date) -> bool:
    """Apply one day of activity to ``streak``.

    Returns False (and leaves the row untouched) if activity was already
    recorded today. A one-day gap continues the run; anything else starts
    a new run at 1.
    """
    if streak.last_activity_date == today:
        return False

    if streak.last_activity_date == today - timedelta(days=1) and streak.current_count > 0:
        streak.current_count += 1
    else:
        streak.current_count = 1
        streak.started_on = today
        streak.last_claimed_milestone = 0

    streak.best_count = max(streak.best_count or 0, streak.current_count)
    streak.last_activity_date = today
    streak.is_active = True
    streak.updated_at = datetime.now(timezone.utc)
    return True


def streak_state(streak: Streak) -> StreakState:
    count = streak.current_count
    return StreakState(
        type=streak.type,
        type_name=STREAK_TYPES.get(streak.type, {}).get("name", streak.type),
        current_count=count,
        best_count=streak.best_count,
        last_activity_date=streak.last_activity_date,
        is_active=streak.is_active,
        started_on=streak.started_on,
        next_milestone=next_milestone(count),
        is_at_milestone=is_at_milestone(count),
        can_claim_bonus=can_claim_bonus(streak),
        bonus_xp_available=claimable_bonus_xp(streak),
    )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


async def get_streak(db: AsyncSession, user_id: int, streak_type: str) -> Streak | None:
    result = await db.execute(
        select(Streak).where(Streak.user_id == user_id, Streak.type == streak_type)
    )
    return result.scalar_one_or_none()


async def trigger_streak(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    streak_type: str,
    today: date | None = None,
) -> StreakResult:
    """Record today's activity for a (user, type) streak.

    A second call on the same day is a normal outcome (success=False),
    not an error. On success the daily XP is granted once per day and
    streak notifications are emitted.
    """
    ensure_streak_type(streak_type)
    if today is None:
        today = current_date()

    streak = await get_streak(db, user_id, streak_type)
    if streak is None:
        streak = Streak(
            user_id=user_id,
            type=streak_type,
            current_count=1,
            best_count=1,
            last_activity_date=today,
            started_on=today,
            is_active=True,
            last_claimed_milestone=0,
            updated_at=datetime.now(timezone.utc),
        )
        db.add(streak)
    elif not advance_streak(streak, today):
        return StreakResult(
            success=False,
            streak=streak_state(streak),
            message=ALREADY_RECORDED,
            is_milestone=is_at_milestone(streak.current_count),
            next_milestone=next_milestone(streak.current_count),
        )
    await db.flush()

    count = streak.current_count
    bonus_xp = daily_streak_xp(streak_type, count)
    await add_xp(
        db,
        redis,
        user_id,
        bonus_xp,
        reason=f"{STREAK_TYPES[streak_type]['name']} streak day {count}",
        source="streak",
        idempotency_key=f"streak:{user_id}:{streak_type}:{today.isoformat()}",
        source_id=streak_type,
    )

    await _emit_streak_updated(db, redis, streak)
    if is_at_milestone(count):
        await _emit_streak_milestone(db, redis, streak, bonus_xp)

    logger.debug("Streak %s for user %d now at %d", streak_type, user_id, count)
    return StreakResult(
        success=True,
        streak=streak_state(streak),
        bonus_xp=bonus_xp,
        message="Streak updated",
        is_milestone=is_at_milestone(count),
        next_milestone=next_milestone(count),
    )


async def claim_streak_bonus(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    streak_type: str,
) -> BonusClaimResult:
    """Claim the bonus for the milestone the streak currently sits on."""
    ensure_streak_type(streak_type)
    streak = await get_streak(db, user_id, streak_type)
    if streak is None:
        return BonusClaimResult(success=False, message="Streak not found")
    if not can_claim_bonus(streak):
        return BonusClaimResult(
            success=False,
            message="No bonus available for this streak",
            streak=streak_state(streak),
        )

    bonus = claimable_bonus_xp(streak)
    milestone = streak.current_count
    run = streak.started_on.isoformat() if streak.started_on else "legacy"
    level = await add_xp(
        db,
        redis,
        user_id,
        bonus,
        reason=f"{STREAK_TYPES[streak_type]['name']} streak bonus ({milestone} days)",
        source="streak_bonus",
        idempotency_key=f"streak-bonus:{user_id}:{streak_type}:{run}:{milestone}",
        source_id=streak_type,
    )

    streak.bonus_claimed_at = datetime.now(timezone.utc)
    streak.last_claimed_milestone = milestone
    await db.flush()

    return BonusClaimResult(
        success=True,
        message="Bonus claimed",
        bonus_xp=bonus,
        level=level,
        streak=streak_state(streak),
    )


async def get_user_streaks(db: AsyncSession, user_id: int) -> StreakSummary:
    result = await db.execute(
        select(Streak).where(Streak.user_id == user_id).order_by(Streak.type)
    )
    streaks = result.scalars().all()
    states = [streak_state(s) for s in streaks]
    return StreakSummary(
        streaks=states,
        total_active=sum(1 for s in states if s.is_active),
        best_streak=max((s.best_count for s in states), default=0),
        total_bonus_available=sum(s.bonus_xp_available for s in states),
    )


async def _expire(db: AsyncSession, redis: object | None, streak: Streak) -> StreakState:
    broken_count = streak.current_count
    streak.current_count = 0
    streak.is_active = False
    streak.updated_at = datetime.now(timezone.utc)
    if broken_count > 0:
        await _emit_streak_broken(db, redis, streak, broken_count)
    return streak_state(streak)


async def check_expired_streaks(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    today: date | None = None,
) -> list[StreakState]:
    """Expire a user's active streaks whose last activity is over a day old."""
    if today is None:
        today = current_date()
    result = await db.execute(
        select(Streak).where(
            Streak.user_id == user_id,
            Streak.is_active.is_(True),
            Streak.last_activity_date < today - timedelta(days=1),
        )
    )
    expired = [await _expire(db, redis, s) for s in result.scalars().all()]
    await db.flush()
    return expired


async def expire_all_streaks(
    db: AsyncSession,
    redis: object | None,
    today: date | None = None,
) -> int:
    """Daily sweep: expire every broken streak. Returns number expired."""
    if today is None:
        today = current_date()
    result = await db.execute(
        select(Streak).where(
            Streak.is_active.is_(True),
            Streak.last_activity_date < today - timedelta(days=1),
        )
    )
    expired = 0
    for streak in result.scalars().all():
        await _expire(db, redis, streak)
        expired += 1

    await db.commit()
    logger.info("Streak sweep complete: expired %d streaks before %s", expired, today)
    return expired


async def get_streak_leaderboard(
    db: AsyncSession,
    streak_type: str,
    limit: int = 10,
) -> StreakLeaderboard:
    ensure_streak_type(streak_type)
    result = await db.execute(
        select(Streak, User.name)
        .join(User, User.id == Streak.user_id)
        .where(Streak.type == streak_type)
        .order_by(Streak.best_count.desc(), Streak.current_count.desc(), Streak.user_id.asc())
        .limit(limit)
    )
    entries = [
        LeaderboardEntry(
            rank=rank,
            user_id=streak.user_id,
            user_name=name,
            best_count=streak.best_count,
            current_count=streak.current_count,
            is_active=streak.is_active,
        )
        for rank, (streak, name) in enumerate(result.all(), start=1)
    ]
    return StreakLeaderboard(
        streak_type=streak_type,
        type_name=STREAK_TYPES[streak_type]["name"],
        entries=entries,
    )


async def get_user_rank(db: AsyncSession, user_id: int, streak_type: str) -> int | None:
    """1-based leaderboard position, or None if the user has no such streak."""
    ensure_streak_type(streak_type)
    mine = await get_streak(db, user_id, streak_type)
    if mine is None:
        return None

    ahead = await db.execute(
        select(func.count())
        .select_from(Streak)
        .where(
            Streak.type == streak_type,
            or_(
                Streak.best_count > mine.best_count,
                and_(
                    Streak.best_count == mine.best_count,
                    Streak.current_count > mine.current_count,
                ),
                and_(
                    Streak.best_count == mine.best_count,
                    Streak.current_count == mine.current_count,
                    Streak.user_id < user_id,
                ),
            ),
        )
    )
    return ahead.scalar_one() + 1


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


async def _emit_streak_updated(db: AsyncSession, redis: object | None, streak: Streak) -> None:
    count = streak.current_count
    await notify(
        db,
        redis,
        streak.user_id,
        subtype="streak_updated",
        title=f"{STREAK_TYPES[streak.type]['name']} streak: {count} days",
        description=motivation_message(count),
        metadata={
            "streak_type": streak.type,
            "current_count": count,
            "best_count": streak.best_count,
            "is_new_record": count == streak.best_count,
        },
    )


async def _emit_streak_milestone(
    db: AsyncSession, redis: object | None, streak: Streak, bonus_xp: int
) -> None:
    count = streak.current_count
    await notify(
        db,
        redis,
        streak.user_id,
        subtype="streak_milestone",
        title=f"{count}-day milestone reached!",
        description=f"+{bonus_xp} XP for your {STREAK_TYPES[streak.type]['name'].lower()} streak",
        metadata={"streak_type": streak.type, "milestone": count, "bonus_xp": bonus_xp},
    )


async def _emit_streak_broken(
    db: AsyncSession, redis: object | None, streak: Streak, streak_length: int
) -> None:
    """Notify user their streak was broken."""
    await notify(
        db,
        redis,
        streak.user_id,
        subtype="streak_broken",
        title="Streak Broken",
        description=f"Your {streak_length}-day {STREAK_TYPES.get(streak.type, {}).get('name', streak.type).lower()} streak has ended.",
        metadata={"streak_type": streak.type, "streak_length": streak_length},
    )
