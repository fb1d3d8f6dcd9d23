"""Entry points invoked by the finance side of the application.

Each hook runs the gamification work for one domain event inside the
caller's session and commits once at the end.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from budgetquest.gamification.achievement_service import AchievementCatalog, evaluate_achievements, load_catalog
from budgetquest.gamification.engagement import EngagementBuffer
from budgetquest.gamification.schemas import HookOutcome, UnlockResult
from budgetquest.gamification.streak_service import trigger_streak
from budgetquest.gamification.xp_service import add_xp

logger = logging.getLogger(__name__)

GOAL_CREATED_XP = 50
GOAL_PRIORITY_BONUS = {"high": 100, "medium": 50, "low": 25}


def transaction_xp(amount: Decimal | int | float) -> int:
    """10 XP per transaction plus 1 XP per 100 of amount, bonus capped at 50."""
    return 10 + min(50, int(abs(Decimal(str(amount))) // 100))


def goal_completion_xp(target_amount: Decimal | int | float, priority: str) -> int:
    """200 XP plus 1 XP per 1000 of target (capped at 500) plus a priority bonus."""
    amount_bonus = min(500, int(abs(Decimal(str(target_amount))) // 1000))
    return 200 + amount_bonus + GOAL_PRIORITY_BONUS.get(priority, 0)


class GamificationHooks:
    """Runs streak, XP and achievement updates for finance events."""

    def __init__(
        self,
        db: AsyncSession,
        redis: object | None,
        engagement: EngagementBuffer | None = None,
        catalog: AchievementCatalog | None = None,
    ) -> None:
        self.db = db
        self.redis = redis
        self.engagement = engagement
        self._catalog = catalog

    async def _load_catalog(self) -> AchievementCatalog:
        """Load and cache the achievement catalog."""
        if self._catalog is None:
            self._catalog = await load_catalog(self.db)
        return self._catalog

    async def _evaluate(self, user_id: int, event_type: str, context: dict) -> UnlockResult:
        return await evaluate_achievements(
            self.db, self.redis, user_id, event_type, context, catalog=await self._load_catalog()
        )

    async def _record(self, user_id: int, action: str) -> bool:
        if self.engagement is None:
            return False
        return await self.engagement.record(self.db, user_id, action)

    async def on_user_login(self, user_id: int, today: date | None = None) -> HookOutcome:
        streak = await trigger_streak(self.db, self.redis, user_id, "daily_login", today=today)
        flushed = await self._record(user_id, "login")
        await self.db.commit()
        return HookOutcome(event_type="user_login", user_id=user_id, streak=streak, engagement_flushed=flushed)

    async def on_transaction_created(
        self,
        user_id: int,
        amount: Decimal | int | float,
        transaction_id: int | str | None = None,
        today: date | None = None,
    ) -> HookOutcome:
        xp = await add_xp(
            self.db,
            self.redis,
            user_id,
            transaction_xp(amount),
            reason="Transaction recorded",
            source="transaction",
            idempotency_key=f"transaction:{transaction_id}" if transaction_id is not None else None,
            source_id=str(transaction_id) if transaction_id is not None else None,
        )
        streak = await trigger_streak(self.db, self.redis, user_id, "daily_transaction", today=today)
        achievements = await self._evaluate(
            user_id, "transaction_created", {"transaction_id": transaction_id, "amount": amount}
        )
        flushed = await self._record(user_id, "transaction_created")
        await self.db.commit()

        logger.info(
            "Transaction hook for user %d: +%d XP, %d achievements",
            user_id, xp.xp_added, len(achievements.newly_unlocked),
        )
        return HookOutcome(
            event_type="transaction_created",
            user_id=user_id,
            xp=xp,
            streak=streak,
            achievements=achievements,
            engagement_flushed=flushed,
        )

    async def on_goal_created(self, user_id: int, goal_id: int | str | None = None) -> HookOutcome:
        xp = await add_xp(
            self.db,
            self.redis,
            user_id,
            GOAL_CREATED_XP,
            reason="Financial goal created",
            source="goal",
            idempotency_key=f"goal-created:{goal_id}" if goal_id is not None else None,
            source_id=str(goal_id) if goal_id is not None else None,
        )
        achievements = await self._evaluate(user_id, "goal_created", {"goal_id": goal_id})
        flushed = await self._record(user_id, "goal_created")
        await self.db.commit()
        return HookOutcome(
            event_type="goal_created",
            user_id=user_id,
            xp=xp,
            achievements=achievements,
            engagement_flushed=flushed,
        )

    async def on_goal_completed(
        self,
        user_id: int,
        target_amount: Decimal | int | float,
        priority: str = "medium",
        goal_id: int | str | None = None,
    ) -> HookOutcome:
        xp = await add_xp(
            self.db,
            self.redis,
            user_id,
            goal_completion_xp(target_amount, priority),
            reason="Financial goal completed",
            source="goal",
            idempotency_key=f"goal-completed:{goal_id}" if goal_id is not None else None,
            source_id=str(goal_id) if goal_id is not None else None,
        )
        achievements = await self._evaluate(
            user_id, "goal_completed", {"goal_id": goal_id, "target_amount": target_amount, "priority": priority}
        )
        flushed = await self._record(user_id, "goal_completed")
        await self.db.commit()
        return HookOutcome(
            event_type="goal_completed",
            user_id=user_id,
            xp=xp,
            achievements=achievements,
            engagement_flushed=flushed,
        )

    async def on_goal_progress_updated(self, user_id: int, goal_id: int | str | None = None) -> HookOutcome:
        achievements = await self._evaluate(user_id, "goal_progress_updated", {"goal_id": goal_id})
        flushed = await self._record(user_id, "goal_progress_updated")
        await self.db.commit()
        return HookOutcome(
            event_type="goal_progress_updated",
            user_id=user_id,
            achievements=achievements,
            engagement_flushed=flushed,
        )
