"""Aggregate user statistics read from the finance tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from budgetquest.db.models import FinancialGoal, GoalContribution, Streak, Transaction, UserLevel


@dataclass(frozen=True)
class UserStats:
    """Read-only snapshot of the numbers achievement criteria look at."""

    user_id: int
    transaction_count: int = 0
    transaction_total: Decimal = Decimal("0")
    goals_created: int = 0
    goals_completed: int = 0
    contribution_count: int = 0
    savings_total: Decimal = Decimal("0")
    level: int = 1
    total_xp: int = 0
    best_streaks: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))


async def collect_user_stats(db: AsyncSession, user_id: int) -> UserStats:
    """Query the live aggregates for one user.

    Only completed transactions count. Database errors propagate.
    """
    tx = (await db.execute(
        select(func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0))
        .where(Transaction.user_id == user_id, Transaction.status == "completed")
    )).one()

    goals = (await db.execute(
        select(
            func.count(FinancialGoal.id),
            func.count(FinancialGoal.id).filter(FinancialGoal.status == "completed"),
        ).where(FinancialGoal.user_id == user_id)
    )).one()

    contributions = (await db.execute(
        select(func.count(GoalContribution.id), func.coalesce(func.sum(GoalContribution.amount), 0))
        .where(GoalContribution.user_id == user_id)
    )).one()

    level = (await db.execute(
        select(UserLevel.level, UserLevel.total_xp).where(UserLevel.user_id == user_id)
    )).one_or_none()

    streaks = await db.execute(
        select(Streak.type, Streak.best_count).where(Streak.user_id == user_id)
    )

    return UserStats(
        user_id=user_id,
        transaction_count=tx[0],
        transaction_total=Decimal(str(tx[1])),
        goals_created=goals[0],
        goals_completed=goals[1],
        contribution_count=contributions[0],
        savings_total=Decimal(str(contributions[1])),
        level=level[0] if level else 1,
        total_xp=level[1] if level else 0,
        best_streaks=MappingProxyType({t: best for t, best in streaks.all()}),
    )
