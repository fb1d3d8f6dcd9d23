"""Engagement buffer: counters are written every N actions, not on every action."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from budgetquest.db.models import UserEngagement
from budgetquest.gamification.engagement import EngagementBuffer


async def _row(db, user_id):
    return await db.scalar(select(UserEngagement).where(UserEngagement.user_id == user_id))


class TestEngagementBuffer:

    @pytest.mark.asyncio
    async def test_writes_only_every_n_actions(self, db_session, user):
        buffer = EngagementBuffer(flush_every=10)

        for _ in range(9):
            assert await buffer.record(db_session, user.id, "click") is False
        assert await _row(db_session, user.id) is None
        assert buffer.pending_count(user.id) == 9

        assert await buffer.record(db_session, user.id, "click") is True
        row = await _row(db_session, user.id)
        assert row.actions_count == 10
        assert buffer.pending_count(user.id) == 0

    @pytest.mark.asyncio
    async def test_accumulates_across_flushes(self, db_session, user):
        buffer = EngagementBuffer(flush_every=3)
        for _ in range(6):
            await buffer.record(db_session, user.id, "view")

        row = await _row(db_session, user.id)
        assert row.actions_count == 6
        assert buffer.stats == {"actions_written": 6, "flushes": 2, "users_pending": 0}

    @pytest.mark.asyncio
    async def test_last_action_tracked(self, db_session, user):
        buffer = EngagementBuffer(flush_every=2)
        await buffer.record(db_session, user.id, "login")
        await buffer.record(db_session, user.id, "transaction_created")

        row = await _row(db_session, user.id)
        assert row.last_action == "transaction_created"

    @pytest.mark.asyncio
    async def test_flush_all(self, db_session, user, make_user):
        other = await make_user("other@example.com")
        buffer = EngagementBuffer(flush_every=100)
        await buffer.record(db_session, user.id, "login")
        await buffer.record(db_session, other.id, "login")
        await buffer.record(db_session, other.id, "login")

        assert await buffer.flush(db_session) == 2
        assert (await _row(db_session, other.id)).actions_count == 2
        assert await buffer.flush(db_session) == 0

    @pytest.mark.asyncio
    async def test_users_are_independent(self, db_session, user, make_user):
        other = await make_user("other@example.com")
        buffer = EngagementBuffer(flush_every=2)
        await buffer.record(db_session, user.id, "login")
        await buffer.record(db_session, other.id, "login")

        count = await db_session.scalar(select(func.count()).select_from(UserEngagement))
        assert count == 0

    @pytest.mark.asyncio
    async def test_failed_write_keeps_increments(self, user):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        buffer = EngagementBuffer(flush_every=1)

        with pytest.raises(OperationalError):
            await buffer.record(db, user.id, "login")
        assert buffer.pending_count(user.id) == 1

    @pytest.mark.asyncio
    async def test_failed_write_merges_with_actions_recorded_meanwhile(self):
        buffer = EngagementBuffer(flush_every=100)
        for _ in range(3):
            await buffer.record(AsyncMock(), 7, "click")

        async def record_then_fail(*args, **kwargs):
            await buffer.record(AsyncMock(), 7, "view")
            raise OperationalError("SELECT", {}, Exception("db down"))

        db = AsyncMock()
        db.execute.side_effect = record_then_fail

        with pytest.raises(OperationalError):
            await buffer.flush_user(db, 7)
        assert buffer.pending_count(7) == 4
        assert buffer._pending[7].last_action == "view"

    def test_default_flush_interval_from_settings(self):
        buffer = EngagementBuffer()
        assert buffer._flush_every == 10
