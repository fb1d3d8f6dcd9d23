"""Achievement evaluation: catalog snapshot, idempotent unlocks, progress."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetquest.db.models import Achievement, UserAchievement
from budgetquest.gamification.criteria import Criterion, criterion_progress, evaluate_criterion, parse_criterion
from budgetquest.gamification.errors import UnknownEventType
from budgetquest.gamification.notifications import notify
from budgetquest.gamification.schemas import (
    AchievementProgress,
    UnlockedAchievement,
    UnlockResult,
    UserAchievementsResponse,
)
from budgetquest.gamification.stats import UserStats, collect_user_stats
from budgetquest.gamification.xp_service import add_xp

logger = logging.getLogger(__name__)

KNOWN_EVENTS = frozenset({
    "transaction_created",
    "goal_created",
    "goal_completed",
    "goal_progress_updated",
    "streak_updated",
    "level_up",
    "manual_check",
})


@dataclass(frozen=True)
class CatalogEntry:
    achievement_id: int
    slug: str
    name: str
    description: str
    icon: str
    color: str
    type: str
    criterion: Criterion
    points: int
    rarity: str
    sort_order: int = 0


@dataclass(frozen=True)
class AchievementCatalog:
    """Immutable snapshot of the active achievements."""

    entries: tuple[CatalogEntry, ...] = ()

    def get(self, slug: str) -> CatalogEntry | None:
        for entry in self.entries:
            if entry.slug == slug:
                return entry
        return None

    def __len__(self) -> int:
        return len(self.entries)


async def load_catalog(db: AsyncSession) -> AchievementCatalog:
    """Load active achievements with parsed criteria.

    Rows whose criteria do not parse are skipped with a warning.
    """
    result = await db.execute(
        select(Achievement)
        .where(Achievement.is_active.is_(True))
        .order_by(Achievement.sort_order, Achievement.id)
    )
    entries: list[CatalogEntry] = []
    for row in result.scalars():
        try:
            criterion = parse_criterion(row.criteria)
        except ValidationError:
            logger.warning("Skipping achievement %s: invalid criteria %r", row.slug, row.criteria)
            continue
        entries.append(CatalogEntry(
            achievement_id=row.id,
            slug=row.slug,
            name=row.name,
            description=row.description,
            icon=row.icon,
            color=row.color,
            type=row.type,
            criterion=criterion,
            points=row.points,
            rarity=row.rarity,
            sort_order=row.sort_order,
        ))
    return AchievementCatalog(entries=tuple(entries))


async def held_achievement_ids(db: AsyncSession, user_id: int) -> set[int]:
    result = await db.execute(
        select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id)
    )
    return set(result.scalars().all())


def _to_unlocked(entry: CatalogEntry, unlocked_at: datetime) -> UnlockedAchievement:
    return UnlockedAchievement(
        slug=entry.slug,
        name=entry.name,
        description=entry.description,
        icon=entry.icon,
        color=entry.color,
        type=entry.type,
        points=entry.points,
        rarity=entry.rarity,
        unlocked_at=unlocked_at,
    )


async def unlock_achievement(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    entry: CatalogEntry,
    metadata: dict | None = None,
) -> UnlockedAchievement | None:
    """Record an unlock, grant its points and notify.

    Returns None if the user already holds the achievement.
    """
    now = datetime.now(timezone.utc)
    try:
        # Savepoint: a duplicate must not discard earlier writes of the same event
        async with db.begin_nested():
            db.add(UserAchievement(
                user_id=user_id,
                achievement_id=entry.achievement_id,
                unlocked_at=now,
                unlock_metadata=metadata or {},
            ))
            await db.flush()
    except IntegrityError:
        return None  # Race condition: already unlocked

    await add_xp(
        db,
        redis,
        user_id,
        entry.points,
        reason=f'Unlocked achievement: "{entry.name}"',
        source="achievement",
        idempotency_key=f"achievement:{entry.slug}:{user_id}",
        source_id=entry.slug,
    )
    await _emit_achievement_unlocked(db, redis, user_id, entry)
    logger.info("User %d unlocked achievement %s", user_id, entry.slug)
    return _to_unlocked(entry, now)


async def evaluate_achievements(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    event_type: str,
    context: dict[str, Any] | None = None,
    catalog: AchievementCatalog | None = None,
) -> UnlockResult:
    """Unlock every catalog achievement the user now qualifies for.

    Already-held achievements are filtered out before criteria are tested,
    so re-evaluating never unlocks the same achievement twice. Unlock points
    can raise the user's level, so evaluation repeats until nothing new
    unlocks.
    """
    if event_type not in KNOWN_EVENTS:
        msg = f"Unknown event type {event_type!r}; expected one of {sorted(KNOWN_EVENTS)}"
        raise UnknownEventType(msg)
    if catalog is None:
        catalog = await load_catalog(db)

    metadata = {"event_type": event_type, "context": json.loads(json.dumps(context or {}, default=str))}
    held = await held_achievement_ids(db, user_id)
    newly_unlocked: list[UnlockedAchievement] = []

    while True:
        candidates = [e for e in catalog.entries if e.achievement_id not in held]
        if not candidates:
            break
        stats = await collect_user_stats(db, user_id)
        unlocked_this_pass = 0
        for entry in candidates:
            if not evaluate_criterion(entry.criterion, stats):
                continue
            held.add(entry.achievement_id)
            unlocked = await unlock_achievement(db, redis, user_id, entry, metadata)
            if unlocked is not None:
                newly_unlocked.append(unlocked)
                unlocked_this_pass += 1
        if unlocked_this_pass == 0:
            break

    return UnlockResult(event_type=event_type, newly_unlocked=newly_unlocked)


def _progress(entry: CatalogEntry, stats: UserStats) -> AchievementProgress:
    current, required = criterion_progress(entry.criterion, stats)
    percentage = int(current / required * 100) if required > 0 else 100
    return AchievementProgress(
        slug=entry.slug,
        name=entry.name,
        description=entry.description,
        icon=entry.icon,
        rarity=entry.rarity,
        points=entry.points,
        current=current,
        required=required,
        percentage=percentage,
    )


async def get_user_achievements(
    db: AsyncSession,
    user_id: int,
    catalog: AchievementCatalog | None = None,
) -> UserAchievementsResponse:
    """Unlocked achievements plus progress towards the locked ones."""
    if catalog is None:
        catalog = await load_catalog(db)

    result = await db.execute(
        select(UserAchievement)
        .where(UserAchievement.user_id == user_id)
        .order_by(UserAchievement.unlocked_at.desc())
    )
    rows = result.scalars().all()
    unlocked = [
        UnlockedAchievement(
            slug=row.achievement.slug,
            name=row.achievement.name,
            description=row.achievement.description,
            icon=row.achievement.icon,
            color=row.achievement.color,
            type=row.achievement.type,
            points=row.achievement.points,
            rarity=row.achievement.rarity,
            unlocked_at=row.unlocked_at,
        )
        for row in rows
    ]

    held = {row.achievement_id for row in rows}
    stats = await collect_user_stats(db, user_id)
    locked = [_progress(e, stats) for e in catalog.entries if e.achievement_id not in held]

    return UserAchievementsResponse(
        unlocked=unlocked,
        locked=locked,
        total_unlocked=len(unlocked),
        total_available=len(catalog),
        total_points=sum(a.points for a in unlocked),
    )


async def _emit_achievement_unlocked(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    entry: CatalogEntry,
) -> None:
    """Emit achievement-unlocked notification via DB + WebSocket."""
    await notify(
        db,
        redis,
        user_id,
        subtype="achievement_unlocked",
        title=f'Achievement Unlocked: "{entry.name}"',
        description=f"+{entry.points} XP: {entry.description}",
        metadata={
            "slug": entry.slug,
            "points": entry.points,
            "rarity": entry.rarity,
            "icon": entry.icon,
            "color": entry.color,
        },
    )
