"""Buffered engagement counters.

Actions are counted in memory and written to ``user_engagement`` only every
``flush_every`` actions per user, keeping per-request writes bounded. Unflushed
increments are lost if the process dies; that is accepted for these counters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetquest.config import get_settings
from budgetquest.db.models import UserEngagement

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    count: int
    last_action: str
    last_action_at: datetime


class EngagementBuffer:
    """Cache-then-flush writer for per-user action counters."""

    def __init__(self, flush_every: int | None = None) -> None:
        self._flush_every = flush_every or get_settings().engagement_flush_every
        self._pending: dict[int, _Pending] = {}
        self._actions_written = 0
        self._flushes = 0

    async def record(
        self,
        db: AsyncSession,
        user_id: int,
        action: str,
        at: datetime | None = None,
    ) -> bool:
        """Count one action. Returns True if this call flushed the user's counters."""
        at = at or datetime.now(timezone.utc)
        pending = self._pending.get(user_id)
        if pending is None:
            pending = self._pending[user_id] = _Pending(0, action, at)
        pending.count += 1
        pending.last_action = action
        pending.last_action_at = at

        if pending.count >= self._flush_every:
            await self.flush_user(db, user_id)
            return True
        return False

    def pending_count(self, user_id: int) -> int:
        pending = self._pending.get(user_id)
        return pending.count if pending else 0

    async def flush_user(self, db: AsyncSession, user_id: int) -> None:
        """Write one user's buffered counters (caller commits)."""
        pending = self._pending.pop(user_id, None)
        if pending is None:
            return
        try:
            await self._write(db, user_id, pending)
        except SQLAlchemyError:
            # Merge back; record() may have started a new entry during the write
            newer = self._pending.get(user_id)
            if newer is None:
                self._pending[user_id] = pending
            else:
                newer.count += pending.count
            raise
        self._actions_written += pending.count
        self._flushes += 1
        logger.debug("Flushed %d engagement actions for user %d", pending.count, user_id)

    async def flush(self, db: AsyncSession) -> int:
        """Write every buffered counter. Returns number of users flushed."""
        user_ids = list(self._pending)
        for user_id in user_ids:
            await self.flush_user(db, user_id)
        if user_ids:
            logger.info("Flushed engagement counters for %d users", len(user_ids))
        return len(user_ids)

    async def _write(self, db: AsyncSession, user_id: int, pending: _Pending) -> None:
        result = await db.execute(
            select(UserEngagement).where(UserEngagement.user_id == user_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = UserEngagement(user_id=user_id, actions_count=0)
            db.add(row)
        row.actions_count += pending.count
        row.last_action = pending.last_action
        row.last_action_at = pending.last_action_at
        row.updated_at = datetime.now(timezone.utc)
        await db.flush()

    @property
    def stats(self) -> dict[str, int]:
        """Return buffer statistics."""
        return {
            "actions_written": self._actions_written,
            "flushes": self._flushes,
            "users_pending": len(self._pending),
        }
