"""Achievement catalog seed data."""

from __future__ import annotations

import logging

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from budgetquest.db.models import Achievement
from budgetquest.gamification.criteria import parse_criterion

logger = logging.getLogger(__name__)

ACHIEVEMENT_SEED_DATA: list[dict] = [
    # Transactions
    {
        "slug": "first-transaction",
        "name": "First Step",
        "description": "Record your very first transaction",
        "icon": "play-circle",
        "color": "#10B981",
        "type": "transaction",
        "criteria": {"kind": "min_count", "field": "transactions", "threshold": 1},
        "points": 10,
        "rarity": "common",
        "sort_order": 1,
    },
    {
        "slug": "active-user",
        "name": "Regular",
        "description": "Record 10 transactions",
        "icon": "activity",
        "color": "#3B82F6",
        "type": "transaction",
        "criteria": {"kind": "min_count", "field": "transactions", "threshold": 10},
        "points": 25,
        "rarity": "common",
        "sort_order": 2,
    },
    {
        "slug": "finance-expert",
        "name": "Finance Expert",
        "description": "Record 100 transactions. Nothing escapes your budget.",
        "icon": "trending-up",
        "color": "#8B5CF6",
        "type": "transaction",
        "criteria": {"kind": "min_count", "field": "transactions", "threshold": 100},
        "points": 100,
        "rarity": "epic",
        "sort_order": 3,
    },
    # Goals
    {
        "slug": "planner",
        "name": "Planner",
        "description": "Create your first financial goal",
        "icon": "target",
        "color": "#F59E0B",
        "type": "goal",
        "criteria": {"kind": "min_count", "field": "goals_created", "threshold": 1},
        "points": 15,
        "rarity": "common",
        "sort_order": 4,
    },
    {
        "slug": "achiever",
        "name": "Achiever",
        "description": "Complete a financial goal",
        "icon": "check-circle",
        "color": "#059669",
        "type": "goal",
        "criteria": {"kind": "min_count", "field": "goals_completed", "threshold": 1},
        "points": 50,
        "rarity": "rare",
        "sort_order": 5,
    },
    {
        "slug": "goal-master",
        "name": "Goal Master",
        "description": "Complete 5 financial goals",
        "icon": "crown",
        "color": "#DC2626",
        "type": "goal",
        "criteria": {"kind": "min_count", "field": "goals_completed", "threshold": 5},
        "points": 200,
        "rarity": "legendary",
        "sort_order": 6,
    },
    # Streaks
    {
        "slug": "streak-starter",
        "name": "On a Roll",
        "description": "Record transactions 3 days in a row",
        "icon": "flame",
        "color": "#F97316",
        "type": "streak",
        "criteria": {"kind": "min_streak", "streak_type": "daily_transaction", "threshold": 3},
        "points": 20,
        "rarity": "common",
        "sort_order": 7,
    },
    {
        "slug": "consistency",
        "name": "Consistency",
        "description": "Record transactions 7 days in a row",
        "icon": "calendar",
        "color": "#7C3AED",
        "type": "streak",
        "criteria": {"kind": "min_streak", "streak_type": "daily_transaction", "threshold": 7},
        "points": 50,
        "rarity": "rare",
        "sort_order": 8,
    },
    {
        "slug": "streak-champion",
        "name": "Consistency Champion",
        "description": "Record transactions 30 days in a row",
        "icon": "award",
        "color": "#DC2626",
        "type": "streak",
        "criteria": {"kind": "min_streak", "streak_type": "daily_transaction", "threshold": 30},
        "points": 200,
        "rarity": "epic",
        "sort_order": 9,
    },
    # Savings milestones
    {
        "slug": "beginner-saver",
        "name": "Beginner Saver",
        "description": "Put 1,000 towards your goals",
        "icon": "piggy-bank",
        "color": "#10B981",
        "type": "milestone",
        "criteria": {"kind": "min_amount", "field": "savings_total", "threshold": 1000},
        "points": 30,
        "rarity": "common",
        "sort_order": 10,
    },
    {
        "slug": "serious-saver",
        "name": "Serious Saver",
        "description": "Put 5,000 towards your goals",
        "icon": "dollar-sign",
        "color": "#3B82F6",
        "type": "milestone",
        "criteria": {"kind": "min_amount", "field": "savings_total", "threshold": 5000},
        "points": 75,
        "rarity": "rare",
        "sort_order": 11,
    },
    {
        "slug": "master-saver",
        "name": "Master Saver",
        "description": "Put 20,000 towards your goals",
        "icon": "trending-up",
        "color": "#8B5CF6",
        "type": "milestone",
        "criteria": {"kind": "min_amount", "field": "savings_total", "threshold": 20000},
        "points": 300,
        "rarity": "legendary",
        "sort_order": 12,
    },
]

_UPDATABLE = ("name", "description", "icon", "color", "type", "criteria", "points", "rarity", "sort_order")


async def seed_achievements(db: AsyncSession) -> int:
    """Upsert the achievement catalog by slug. Returns number of entries seeded."""
    dialect = db.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert

    seeded = 0
    for data in ACHIEVEMENT_SEED_DATA:
        parse_criterion(data["criteria"])  # reject malformed seed rows early
        stmt = insert(Achievement).values(**data)
        stmt = stmt.on_conflict_do_update(
            index_elements=["slug"],
            set_={col: stmt.excluded[col] for col in _UPDATABLE},
        )
        await db.execute(stmt)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d achievement definitions", seeded)
    return seeded
