"""Achievement evaluator: catalog snapshot, unlock idempotency, progress."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from budgetquest.db.models import (
    Achievement,
    FinancialGoal,
    GoalContribution,
    Notification,
    Streak,
    Transaction,
    UserAchievement,
    UserLevel,
    XPLedger,
)
from budgetquest.gamification.achievement_service import (
    AchievementCatalog,
    evaluate_achievements,
    get_user_achievements,
    load_catalog,
    unlock_achievement,
)
from budgetquest.gamification.errors import UnknownEventType
from budgetquest.gamification.seed import ACHIEVEMENT_SEED_DATA, seed_achievements
from budgetquest.gamification.stats import collect_user_stats
from budgetquest.gamification.streak_service import trigger_streak


async def _add_transactions(db, user_id, n, amount="25.00", status="completed"):
    for _ in range(n):
        db.add(Transaction(user_id=user_id, amount=Decimal(amount), type="expense", status=status))
    await db.commit()


class TestSeed:

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, db_session):
        first = await seed_achievements(db_session)
        second = await seed_achievements(db_session)

        assert first == second == len(ACHIEVEMENT_SEED_DATA)
        count = await db_session.scalar(select(func.count()).select_from(Achievement))
        assert count == len(ACHIEVEMENT_SEED_DATA)

    @pytest.mark.asyncio
    async def test_load_catalog(self, seeded_db):
        catalog = await load_catalog(seeded_db)

        assert len(catalog) == len(ACHIEVEMENT_SEED_DATA)
        assert catalog.entries[0].slug == "first-transaction"
        assert catalog.get("achiever").rarity == "rare"
        assert catalog.get("missing") is None

    @pytest.mark.asyncio
    async def test_catalog_skips_inactive_and_invalid(self, seeded_db):
        achiever = await seeded_db.scalar(select(Achievement).where(Achievement.slug == "achiever"))
        achiever.is_active = False
        planner = await seeded_db.scalar(select(Achievement).where(Achievement.slug == "planner"))
        planner.criteria = {"min_goals_created": 1}
        await seeded_db.commit()

        catalog = await load_catalog(seeded_db)

        assert catalog.get("achiever") is None
        assert catalog.get("planner") is None
        assert len(catalog) == len(ACHIEVEMENT_SEED_DATA) - 2

    @pytest.mark.asyncio
    async def test_catalog_is_immutable(self, seeded_db):
        catalog = await load_catalog(seeded_db)
        with pytest.raises(AttributeError):
            catalog.entries = ()


class TestCollectUserStats:

    @pytest.mark.asyncio
    async def test_aggregates(self, db_session, user):
        await _add_transactions(db_session, user.id, 3, amount="100.00")
        await _add_transactions(db_session, user.id, 1, amount="999.00", status="pending")
        goal = FinancialGoal(user_id=user.id, name="Bike", target_amount=Decimal("500"), status="completed")
        db_session.add(goal)
        db_session.add(FinancialGoal(user_id=user.id, name="Trip", target_amount=Decimal("3000")))
        await db_session.flush()
        db_session.add(GoalContribution(goal_id=goal.id, user_id=user.id, amount=Decimal("500")))
        db_session.add(Streak(
            user_id=user.id, type="daily_transaction", current_count=2, best_count=9,
            last_activity_date=date(2026, 3, 10), is_active=True,
        ))
        await db_session.commit()

        stats = await collect_user_stats(db_session, user.id)

        assert stats.transaction_count == 3
        assert stats.transaction_total == Decimal("300")
        assert stats.goals_created == 2
        assert stats.goals_completed == 1
        assert stats.contribution_count == 1
        assert stats.savings_total == Decimal("500")
        assert stats.level == 1
        assert stats.best_streaks["daily_transaction"] == 9

    @pytest.mark.asyncio
    async def test_empty_user(self, db_session, user):
        stats = await collect_user_stats(db_session, user.id)
        assert stats.transaction_count == 0
        assert stats.savings_total == Decimal("0")
        assert dict(stats.best_streaks) == {}


class TestEvaluateAchievements:

    @pytest.mark.asyncio
    async def test_first_transaction_unlocks(self, seeded_db, user):
        await _add_transactions(seeded_db, user.id, 1)

        result = await evaluate_achievements(seeded_db, None, user.id, "transaction_created", {})

        assert result.slugs == ["first-transaction"]
        assert result.newly_unlocked[0].points == 10
        assert result.newly_unlocked[0].rarity == "common"

    @pytest.mark.asyncio
    async def test_nothing_to_unlock(self, seeded_db, user):
        result = await evaluate_achievements(seeded_db, None, user.id, "manual_check", {})
        assert result.newly_unlocked == []

    @pytest.mark.asyncio
    async def test_idempotent(self, seeded_db, user):
        await _add_transactions(seeded_db, user.id, 10)

        first = await evaluate_achievements(seeded_db, None, user.id, "transaction_created", {})
        second = await evaluate_achievements(seeded_db, None, user.id, "transaction_created", {})

        assert set(first.slugs) == {"first-transaction", "active-user"}
        assert second.newly_unlocked == []
        count = await seeded_db.scalar(select(func.count()).select_from(UserAchievement))
        assert count == 2

    @pytest.mark.asyncio
    async def test_points_are_added_as_xp(self, seeded_db, user):
        await _add_transactions(seeded_db, user.id, 10)

        await evaluate_achievements(seeded_db, None, user.id, "transaction_created", {})

        level = await seeded_db.scalar(select(UserLevel).where(UserLevel.user_id == user.id))
        assert level.total_xp == 10 + 25

    @pytest.mark.asyncio
    async def test_unlock_notification(self, seeded_db, user, redis_mock):
        await _add_transactions(seeded_db, user.id, 1)

        await evaluate_achievements(seeded_db, redis_mock, user.id, "transaction_created", {"transaction_id": 1})

        notification = await seeded_db.scalar(
            select(Notification).where(Notification.subtype == "achievement_unlocked")
        )
        assert notification.notification_metadata["points"] == 10
        assert notification.notification_metadata["rarity"] == "common"
        redis_mock.publish.assert_awaited()

    @pytest.mark.asyncio
    async def test_unlock_records_event_context(self, seeded_db, user):
        await _add_transactions(seeded_db, user.id, 1)

        await evaluate_achievements(
            seeded_db, None, user.id, "transaction_created", {"amount": Decimal("12.50")}
        )

        row = await seeded_db.scalar(select(UserAchievement))
        assert row.unlock_metadata == {"event_type": "transaction_created", "context": {"amount": "12.50"}}

    @pytest.mark.asyncio
    async def test_streak_criterion_uses_best_count(self, seeded_db, user):
        seeded_db.add(Streak(
            user_id=user.id, type="daily_transaction", current_count=1, best_count=7,
            last_activity_date=date(2026, 3, 10), is_active=True,
        ))
        await seeded_db.commit()

        result = await evaluate_achievements(seeded_db, None, user.id, "streak_updated", {})

        assert set(result.slugs) == {"streak-starter", "consistency"}

    @pytest.mark.asyncio
    async def test_savings_milestone(self, seeded_db, user):
        goal = FinancialGoal(user_id=user.id, name="Rainy day", target_amount=Decimal("10000"))
        seeded_db.add(goal)
        await seeded_db.flush()
        seeded_db.add(GoalContribution(goal_id=goal.id, user_id=user.id, amount=Decimal("1200")))
        await seeded_db.commit()

        result = await evaluate_achievements(seeded_db, None, user.id, "goal_progress_updated", {})

        assert set(result.slugs) == {"planner", "beginner-saver"}

    @pytest.mark.asyncio
    async def test_unknown_event(self, seeded_db, user):
        with pytest.raises(UnknownEventType):
            await evaluate_achievements(seeded_db, None, user.id, "tax_filed", {})

    @pytest.mark.asyncio
    async def test_explicit_catalog_snapshot(self, seeded_db, user):
        """Only entries in the passed snapshot are considered."""
        await _add_transactions(seeded_db, user.id, 10)
        full = await load_catalog(seeded_db)
        snapshot = AchievementCatalog(entries=(full.get("active-user"),))

        result = await evaluate_achievements(seeded_db, None, user.id, "transaction_created", {}, catalog=snapshot)

        assert result.slugs == ["active-user"]

    @pytest.mark.asyncio
    async def test_level_gained_from_points_can_unlock_more(self, seeded_db, user):
        seeded_db.add(Achievement(
            slug="level-3", name="Climber", description="Reach level 3", icon="arrow-up",
            color="#3B82F6", type="milestone", criteria={"kind": "min_level", "threshold": 3},
            points=5, rarity="common", sort_order=99,
        ))
        seeded_db.add(UserLevel(user_id=user.id, level=2, total_xp=200))
        await seeded_db.commit()
        await _add_transactions(seeded_db, user.id, 1)

        # first-transaction gives 10 XP: 210 < 220, still level 2
        result = await evaluate_achievements(seeded_db, None, user.id, "transaction_created", {})
        assert result.slugs == ["first-transaction"]

        await _add_transactions(seeded_db, user.id, 9)
        # active-user gives 25 XP: 235 >= 220, level 3 unlocks the climber
        result = await evaluate_achievements(seeded_db, None, user.id, "transaction_created", {})
        assert result.slugs == ["active-user", "level-3"]


class TestUnlockAchievement:

    @pytest.mark.asyncio
    async def test_duplicate_unlock_keeps_earlier_writes(self, seeded_db, user):
        catalog = await load_catalog(seeded_db)
        entry = catalog.get("first-transaction")
        seeded_db.add(UserAchievement(
            user_id=user.id, achievement_id=entry.achievement_id, unlocked_at=datetime.now(timezone.utc)
        ))
        await seeded_db.commit()

        streak = await trigger_streak(seeded_db, None, user.id, "daily_transaction", today=date(2026, 3, 10))
        unlocked = await unlock_achievement(seeded_db, None, user.id, entry)
        await seeded_db.commit()

        assert streak.success is True
        assert unlocked is None
        streaks = (await seeded_db.scalars(select(Streak).where(Streak.user_id == user.id))).all()
        assert [s.current_count for s in streaks] == [1]
        ledger = (await seeded_db.scalars(select(XPLedger).where(XPLedger.user_id == user.id))).all()
        assert [row.source for row in ledger] == ["streak"]
        held = await seeded_db.scalar(select(func.count()).select_from(UserAchievement))
        assert held == 1

    @pytest.mark.asyncio
    async def test_unlock_grants_points(self, seeded_db, user):
        entry = (await load_catalog(seeded_db)).get("first-transaction")

        unlocked = await unlock_achievement(seeded_db, None, user.id, entry)
        await seeded_db.commit()

        assert unlocked.slug == "first-transaction"
        level = await seeded_db.scalar(select(UserLevel).where(UserLevel.user_id == user.id))
        assert level.total_xp == entry.points


class TestGetUserAchievements:

    @pytest.mark.asyncio
    async def test_unlocked_and_locked(self, seeded_db, user):
        await _add_transactions(seeded_db, user.id, 4)
        await evaluate_achievements(seeded_db, None, user.id, "transaction_created", {})

        response = await get_user_achievements(seeded_db, user.id)

        assert [a.slug for a in response.unlocked] == ["first-transaction"]
        assert response.total_unlocked == 1
        assert response.total_available == len(ACHIEVEMENT_SEED_DATA)
        assert response.total_points == 10
        active = next(a for a in response.locked if a.slug == "active-user")
        assert active.current == 4
        assert active.required == 10
        assert active.percentage == 40
