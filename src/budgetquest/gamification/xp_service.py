"""XP grants with idempotency and level-up detection."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetquest.db.models import UserLevel, XPLedger
from budgetquest.gamification.errors import InvalidAmount
from budgetquest.gamification.level_thresholds import compute_level, level_for_xp, level_title, level_up_message
from budgetquest.gamification.notifications import notify
from budgetquest.gamification.schemas import LevelInfo, LevelResult

logger = logging.getLogger(__name__)


async def get_or_create_level(db: AsyncSession, user_id: int) -> UserLevel:
    """Get or create the denormalized level row for a user."""
    result = await db.execute(
        select(UserLevel).where(UserLevel.user_id == user_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = UserLevel(
            user_id=user_id,
            level=1,
            total_xp=0,
            updated_at=datetime.now(timezone.utc),
        )
        db.add(row)
        await db.flush()
    return row


def _validate_amount(amount: object) -> int:
    # bool is an int subclass; True is not a meaningful XP amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        msg = f"XP amount must be an integer, got {type(amount).__name__}"
        raise InvalidAmount(msg)
    if amount < 0:
        msg = f"XP amount must be >= 0, got {amount}"
        raise InvalidAmount(msg)
    return amount


async def add_xp(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    amount: int,
    reason: str,
    source: str = "manual",
    idempotency_key: str | None = None,
    source_id: str | None = None,
) -> LevelResult:
    """Add XP to a user and recompute their level.

    1. Reject negative or non-integer amounts (``InvalidAmount``)
    2. Skip duplicates of ``idempotency_key``
    3. Insert into xp_ledger and bump user_levels.total_xp
    4. Recompute level; emit a level_up notification when it rises

    A zero amount is a valid no-op: nothing is written.
    The caller owns the transaction; this only flushes.
    """
    amount = _validate_amount(amount)
    row = await get_or_create_level(db, user_id)
    previous_level = row.level

    def _unchanged() -> LevelResult:
        return LevelResult(
            granted=False,
            xp_added=0,
            total_xp=row.total_xp,
            previous_level=previous_level,
            new_level=previous_level,
            levels_gained=0,
        )

    if amount == 0:
        return _unchanged()

    if idempotency_key is not None:
        existing = await db.execute(
            select(XPLedger.id).where(XPLedger.idempotency_key == idempotency_key)
        )
        if existing.scalar_one_or_none() is not None:
            logger.debug("Duplicate XP grant skipped: %s", idempotency_key)
            return _unchanged()

    now = datetime.now(timezone.utc)
    db.add(XPLedger(
        user_id=user_id,
        amount=amount,
        source=source,
        source_id=source_id,
        description=reason,
        idempotency_key=idempotency_key,
        created_at=now,
    ))

    row.total_xp += amount
    # Level is monotonic even if the curve were ever retuned downwards
    row.level = max(previous_level, level_for_xp(row.total_xp))
    row.updated_at = now
    await db.flush()

    levels_gained = row.level - previous_level
    if levels_gained > 0:
        logger.info("User %d leveled up %d -> %d", user_id, previous_level, row.level)
        await _emit_level_up(db, redis, user_id, previous_level, row.level)

    return LevelResult(
        granted=True,
        xp_added=amount,
        total_xp=row.total_xp,
        previous_level=previous_level,
        new_level=row.level,
        levels_gained=levels_gained,
    )


async def _emit_level_up(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    old_level: int,
    new_level: int,
) -> None:
    """Emit level-up notification via DB + WebSocket."""
    title = level_title(new_level)
    await notify(
        db,
        redis,
        user_id,
        subtype="level_up",
        title="Level Up!",
        description=level_up_message(new_level),
        metadata={
            "old_level": old_level,
            "new_level": new_level,
            "levels_gained": new_level - old_level,
            "title": title,
        },
    )


async def get_level_info(db: AsyncSession, user_id: int) -> LevelInfo:
    """Return the level view for a user (creating the row lazily)."""
    row = await get_or_create_level(db, user_id)
    info = compute_level(row.total_xp)
    return LevelInfo(user_id=user_id, total_xp=row.total_xp, **info)
