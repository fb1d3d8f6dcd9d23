"""Persist gamification notifications and push them over Redis pub/sub."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from budgetquest.db.models import Notification

logger = logging.getLogger(__name__)


async def push_notification_to_user(redis: object | None, notification: Notification) -> None:
    """Publish a formatted notification dict to ws:user:{user_id}.

    The notification must already be flushed (have an ``id``).
    Failures are logged and swallowed; delivery never fails the caller.
    """
    if redis is None:
        return

    ws_payload = {
        "event": "notification",
        "data": {
            "id": str(notification.id),
            "type": notification.type,
            "subtype": notification.subtype,
            "title": notification.title,
            "description": notification.description,
            "timestamp": (
                notification.created_at.isoformat()
                if notification.created_at
                else None
            ),
            "read": False,
            "metadata": notification.notification_metadata or {},
        },
    }
    try:
        await redis.publish(  # type: ignore[union-attr]
            f"ws:user:{notification.user_id}",
            json.dumps(ws_payload),
        )
    except Exception:
        logger.warning(
            "Failed to push notification via ws:user:%s",
            notification.user_id,
            exc_info=True,
        )


async def notify(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    subtype: str,
    title: str,
    description: str,
    metadata: dict[str, Any] | None = None,
) -> Notification:
    """Store a gamification notification and push it to the user's sockets."""
    notification = Notification(
        user_id=user_id,
        type="gamification",
        subtype=subtype,
        title=title,
        description=description,
        notification_metadata=metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(notification)
    await db.flush()  # Assign notification.id for WS push

    await push_notification_to_user(redis, notification)
    return notification
