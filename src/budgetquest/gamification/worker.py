"""Gamification arq worker: consumes finance events from Redis Streams.

Runs in its own consumer group so other consumers can process the same
finance events independently. Also schedules the daily expired-streak sweep.
"""

from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal, InvalidOperation

import redis.asyncio as aioredis
from arq import cron
from sqlalchemy.ext.asyncio import AsyncSession

from budgetquest.config import get_settings
from budgetquest.database import close_db, get_session, init_db
from budgetquest.gamification.engagement import EngagementBuffer
from budgetquest.gamification.errors import MalformedEvent
from budgetquest.gamification.hooks import GamificationHooks
from budgetquest.gamification.schemas import HookOutcome
from budgetquest.gamification.streak_service import expire_all_streaks
from budgetquest.logging_config import setup_logging

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "gamification-consumers"

STREAMS = [
    "finance:user_login",
    "finance:transaction_created",
    "finance:goal_created",
    "finance:goal_completed",
    "finance:goal_progress_updated",
]


async def _get_db_session() -> AsyncSession:
    """Get a database session for the worker."""
    async for session in get_session():
        return session
    raise RuntimeError("Failed to get database session")


def parse_event(raw_data: dict) -> dict:
    """Decode a stream entry: JSON under ``data`` or flat fields."""
    data_str = raw_data.get("data")
    if isinstance(data_str, str):
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError as e:
            raise MalformedEvent(f"Invalid JSON payload: {e}") from e
        if not isinstance(data, dict):
            raise MalformedEvent(f"Payload must be an object, got {type(data).__name__}")
        return data
    return dict(raw_data)


def _require_user_id(data: dict) -> int:
    try:
        return int(data["user_id"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEvent(f"Missing or invalid user_id in {data!r}") from e


def _require_amount(data: dict, key: str) -> Decimal:
    try:
        amount = Decimal(str(data[key]))
    except (KeyError, InvalidOperation) as e:
        raise MalformedEvent(f"Missing or invalid {key} in {data!r}") from e
    if not amount.is_finite():
        raise MalformedEvent(f"Non-finite {key} in {data!r}")
    return amount


async def dispatch_event(hooks: GamificationHooks, stream: str, data: dict) -> HookOutcome:
    """Route one finance event to its hook."""
    user_id = _require_user_id(data)

    if stream == "finance:user_login":
        return await hooks.on_user_login(user_id)
    if stream == "finance:transaction_created":
        return await hooks.on_transaction_created(
            user_id,
            _require_amount(data, "amount"),
            transaction_id=data.get("transaction_id"),
        )
    if stream == "finance:goal_created":
        return await hooks.on_goal_created(user_id, goal_id=data.get("goal_id"))
    if stream == "finance:goal_completed":
        return await hooks.on_goal_completed(
            user_id,
            _require_amount(data, "target_amount"),
            priority=data.get("priority", "medium"),
            goal_id=data.get("goal_id"),
        )
    if stream == "finance:goal_progress_updated":
        return await hooks.on_goal_progress_updated(user_id, goal_id=data.get("goal_id"))

    raise MalformedEvent(f"Unhandled stream {stream!r}")


async def gamification_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize logging, Redis and DB connections on worker startup."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )

    for stream in STREAMS:
        try:
            await redis_client.xgroup_create(stream, CONSUMER_GROUP, id="0", mkstream=True)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    ctx["redis"] = redis_client
    ctx["engagement"] = EngagementBuffer(settings.engagement_flush_every)
    logger.info("Gamification worker started")


async def gamification_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Flush buffered engagement counters and close connections."""
    engagement: EngagementBuffer | None = ctx.get("engagement")
    if engagement is not None:
        db = await _get_db_session()
        try:
            await engagement.flush(db)
            await db.commit()
        finally:
            await db.close()

    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Gamification worker shut down")


async def handle_message(ctx: dict, stream: str, msg_id: str, raw_data: dict) -> None:  # type: ignore[type-arg]
    """Process and acknowledge one stream entry.

    Malformed entries are logged and acknowledged so they are not redelivered.
    Any other failure leaves the entry in the pending list, where
    ``reclaim_pending`` retries it the next time the consumer starts.
    """
    redis_client: aioredis.Redis = ctx["redis"]
    try:
        data = parse_event(raw_data)
        db = await _get_db_session()
        try:
            hooks = GamificationHooks(db, redis_client, engagement=ctx.get("engagement"))
            outcome = await dispatch_event(hooks, stream, data)
        finally:
            await db.close()
    except MalformedEvent as e:
        logger.warning("Dropping malformed event %s from %s: %s", msg_id, stream, e)
        await redis_client.xack(stream, CONSUMER_GROUP, msg_id)
        return

    if outcome.achievements and outcome.achievements.newly_unlocked:
        logger.info(
            "Unlocked achievements: %s (stream=%s, event=%s)",
            outcome.achievements.slugs, stream, msg_id,
        )
    await redis_client.xack(stream, CONSUMER_GROUP, msg_id)


async def reclaim_pending(ctx: dict) -> int:  # type: ignore[type-arg]
    """Retry entries this consumer read earlier but never acknowledged.

    Makes a single pass over the pending list of each stream, so an entry
    that fails again stays pending until the next restart.
    """
    settings = get_settings()
    redis_client: aioredis.Redis = ctx["redis"]
    retried = 0

    for stream in STREAMS:
        last_id = "0"
        while True:
            events = await redis_client.xreadgroup(
                groupname=CONSUMER_GROUP,
                consumername=settings.gamification_consumer_name,
                streams={stream: last_id},
                count=settings.worker_batch_size,
            )
            messages = events[0][1] if events else []
            if not messages:
                break
            for msg_id, raw_data in messages:
                last_id = msg_id
                if not raw_data:
                    # Entry was trimmed from the stream
                    await redis_client.xack(stream, CONSUMER_GROUP, msg_id)
                    continue
                try:
                    await handle_message(ctx, stream, msg_id, raw_data)
                    retried += 1
                except Exception:
                    logger.exception("Retry of pending %s from %s failed", msg_id, stream)

    if retried:
        logger.info("Reprocessed %d pending finance events", retried)
    return retried


async def consume_gamification_events(ctx: dict) -> None:  # type: ignore[type-arg]
    """Main consumer loop: reads finance events and runs the hooks."""
    settings = get_settings()
    redis_client: aioredis.Redis = ctx["redis"]
    await reclaim_pending(ctx)
    streams = {s: ">" for s in STREAMS}

    while True:
        try:
            events = await redis_client.xreadgroup(
                groupname=CONSUMER_GROUP,
                consumername=settings.gamification_consumer_name,
                streams=streams,
                count=settings.worker_batch_size,
                block=settings.worker_block_ms,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            await asyncio.sleep(1)
            continue

        if not events:
            continue

        for stream_name, messages in events:
            stream_str = stream_name if isinstance(stream_name, str) else stream_name.decode()

            for msg_id, raw_data in messages:
                try:
                    await handle_message(ctx, stream_str, msg_id, raw_data)
                except Exception:
                    logger.exception("Failed to process %s from %s", msg_id, stream_str)


async def daily_streak_sweep(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: expire broken streaks every day at 00:05 UTC."""
    redis_client: aioredis.Redis = ctx["redis"]
    db = await _get_db_session()
    try:
        return await expire_all_streaks(db, redis_client)
    finally:
        await db.close()


class GamificationWorkerSettings:
    """arq worker settings for the gamification consumer."""

    functions = [consume_gamification_events, daily_streak_sweep]
    cron_jobs = [
        cron(daily_streak_sweep, hour=0, minute=5),
    ]
    on_startup = gamification_startup
    on_shutdown = gamification_shutdown
    max_jobs = 4
    job_timeout = 0  # consume_gamification_events runs forever
    allow_abort_jobs = True
