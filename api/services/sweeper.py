"""
Scheduled sweep — time-driven housekeeping, run from the API lifespan.

Each pass:
  1. expires stale `created` requests
  2. re-scores users active since the previous pass (optional)
  3. sends the nearby-tasks digest to opted-in commuters

A failing pass is logged and the loop keeps going.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from db.database import utcnow
from models.audit import AuditLog
from models.request import DeliveryRequest
from services import notifications
from services.auto_flagging import evaluate_and_enforce
from services.lifecycle import expire_stale_requests

logger = logging.getLogger(__name__)


async def active_user_ids(db: AsyncSession, since: datetime) -> set[str]:
    """Senders, helpers and blocked users seen since `since`."""
    users: set[str] = set()
    rows = (await db.execute(
        select(DeliveryRequest.sender_id, DeliveryRequest.commuter_id).where(DeliveryRequest.updated_at >= since)
    )).all()
    for sender_id, commuter_id in rows:
        users.add(sender_id)
        if commuter_id:
            users.add(commuter_id)

    blocked = (await db.execute(
        select(AuditLog.user_id).where(
            AuditLog.collection == "blocked_attempts",
            AuditLog.timestamp >= since,
            AuditLog.user_id.is_not(None),
        )
    )).scalars().all()
    users.update(blocked)
    users.discard("system")
    return users


async def run_sweep(session_factory: async_sessionmaker, since: datetime | None = None) -> dict:
    """One pass. Returns counts for logging and the admin trigger."""
    since = since or utcnow() - timedelta(seconds=settings.SWEEP_INTERVAL_SEC)
    summary = {"expired": 0, "usersScored": 0, "usersFlagged": 0, "digestsSent": 0}

    async with session_factory() as db:
        summary["expired"] = len(await expire_stale_requests(db))

    if settings.AUTO_FLAG_SWEEP_ENABLED:
        async with session_factory() as db:
            for user_id in sorted(await active_user_ids(db, since)):
                try:
                    score = await evaluate_and_enforce(db, user_id)
                except Exception as e:
                    await db.rollback()
                    logger.error("❌ Sweep scoring failed for %s: %s", user_id, e)
                    continue
                summary["usersScored"] += 1
                if score.enforcement:
                    summary["usersFlagged"] += 1

    async with session_factory() as db:
        summary["digestsSent"] = await notifications.notify_open_requests_summary(db)

    logger.info(
        "🧹 Sweep: %d expired, %d scored, %d flagged, %d digests",
        summary["expired"], summary["usersScored"], summary["usersFlagged"], summary["digestsSent"],
    )
    return summary


async def sweep_loop(session_factory: async_sessionmaker, interval: int | None = None):
    """Run forever until cancelled."""
    interval = interval or settings.SWEEP_INTERVAL_SEC
    last_run = utcnow() - timedelta(seconds=interval)
    while True:
        started = utcnow()
        try:
            await run_sweep(session_factory, since=last_run)
            last_run = started
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("❌ Sweep pass failed: %s", e)
        await asyncio.sleep(interval)
