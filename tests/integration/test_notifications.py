"""Notification persistence and Redis push."""

from __future__ import annotations

import json
import logging

import pytest
from sqlalchemy import select

from budgetquest.db.models import Notification
from budgetquest.gamification.notifications import notify, push_notification_to_user


class TestNotify:

    @pytest.mark.asyncio
    async def test_persists_and_pushes(self, db_session, user, redis_mock):
        notification = await notify(
            db_session, redis_mock, user.id,
            subtype="streak_updated", title="Streak!", description="Keep it up!",
            metadata={"current_count": 2},
        )

        assert notification.id is not None
        stored = await db_session.scalar(select(Notification))
        assert stored.type == "gamification"
        assert stored.read is False

        channel, payload = redis_mock.publish.await_args.args
        assert channel == f"ws:user:{user.id}"
        message = json.loads(payload)
        assert message["event"] == "notification"
        assert message["data"]["id"] == str(notification.id)
        assert message["data"]["metadata"] == {"current_count": 2}
        assert message["data"]["read"] is False

    @pytest.mark.asyncio
    async def test_without_redis(self, db_session, user):
        notification = await notify(db_session, None, user.id, "level_up", "Level Up!", "Level 2")
        assert notification.id is not None

    @pytest.mark.asyncio
    async def test_publish_failure_is_logged_and_swallowed(self, db_session, user, redis_mock, caplog):
        redis_mock.publish.side_effect = ConnectionError("redis down")

        with caplog.at_level(logging.WARNING, logger="budgetquest.gamification.notifications"):
            notification = await notify(db_session, redis_mock, user.id, "level_up", "Level Up!", "Level 2")

        assert notification.id is not None
        assert "Failed to push notification" in caplog.text


class TestPushNotification:

    @pytest.mark.asyncio
    async def test_none_redis_is_noop(self):
        await push_notification_to_user(None, Notification(user_id=1, type="gamification", subtype="x", title="t"))
