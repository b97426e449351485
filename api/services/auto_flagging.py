"""
Auto-Flagging Engine — scores users on risk signals and enforces soft bans.

Signals (additive):
  high_task_frequency        ≥ MAX_TASKS_PER_DAY requests since local midnight   +2
  low_completion_rate        ≥ MAX_ACCEPTED_BUT_NOT_COMPLETED active, 0 completed +2
  multiple_blocked_attempts  ≥ BLOCKED_ATTEMPTS_THRESHOLD blocked attempts       +count
  previous_incidents         any confirmed incident                              +2 × count

score ≥ FLAG_SCORE_THRESHOLD → auto-flag: soft ban, cancel pre-pickup requests,
open an incident for review, audit the enforcement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import utcnow
from models.incident import Incident
from models.request import DeliveryRequest
from models.user import User
from services import audit_log
from services.actor import SYSTEM_ACTOR, ActorContext
from services.errors import AutoFlagEnforced, Forbidden, InvalidTransition, NotFound
from services.rate_limiter import RateLimiter, get_rate_limiter
from services.transitions import ACCEPTED_ACTIVE, PRE_PICKUP, RequestStatus

logger = logging.getLogger(__name__)

AUTO_CANCEL_REASON = "Auto-flagged by system"
SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2}


@dataclass
class FlagScore:
    user_id: str
    score: int = 0
    flags: list[dict] = field(default_factory=list)
    should_auto_flag: bool = False
    enforcement: dict | None = None

    @property
    def severity(self) -> str:
        if not self.flags:
            return "low"
        return max((f["severity"] for f in self.flags), key=lambda s: SEVERITY_RANK.get(s, 0))

    @property
    def reason(self) -> str:
        return "; ".join(f["reason"] for f in self.flags)

    def as_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "score": self.score,
            "flags": self.flags,
            "shouldAutoFlag": self.should_auto_flag,
            "enforcement": self.enforcement,
        }


def local_midnight_utc(now: datetime | None = None) -> datetime:
    """Start of the current local day, as naive UTC."""
    tz = ZoneInfo(settings.LOCAL_TIMEZONE)
    local = (now or utcnow()).replace(tzinfo=timezone.utc).astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


# ── Signals ────────────────────────────────────────────────

async def count_tasks_today(db: AsyncSession, user_id: str, now: datetime | None = None) -> int:
    result = await db.execute(
        select(func.count(DeliveryRequest.id)).where(
            DeliveryRequest.sender_id == user_id,
            DeliveryRequest.created_at >= local_midnight_utc(now),
        )
    )
    return result.scalar() or 0


async def count_commuter_tasks(db: AsyncSession, user_id: str) -> tuple[int, int]:
    """(currently held in an accepted state, ever completed)"""
    accepted = (await db.execute(
        select(func.count(DeliveryRequest.id)).where(
            DeliveryRequest.commuter_id == user_id,
            DeliveryRequest.status.in_([s.value for s in ACCEPTED_ACTIVE]),
        )
    )).scalar() or 0
    completed = (await db.execute(
        select(func.count(DeliveryRequest.id)).where(
            DeliveryRequest.commuter_id == user_id,
            DeliveryRequest.status == RequestStatus.COMPLETED.value,
        )
    )).scalar() or 0
    return accepted, completed


async def count_confirmed_incidents(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        select(func.count(Incident.id)).where(
            Incident.reported_user_id == user_id,
            Incident.status == "confirmed",
        )
    )
    return result.scalar() or 0


async def calculate_user_flag_score(db: AsyncSession, user_id: str, now: datetime | None = None) -> FlagScore:
    result = FlagScore(user_id=user_id)

    task_count = await count_tasks_today(db, user_id, now)
    if task_count >= settings.MAX_TASKS_PER_DAY:
        result.score += 2
        result.flags.append({
            "type": "high_task_frequency",
            "reason": f"User has created {task_count} tasks today (limit: {settings.MAX_TASKS_PER_DAY})",
            "severity": "medium",
            "count": task_count,
        })

    accepted, completed = await count_commuter_tasks(db, user_id)
    if accepted >= settings.MAX_ACCEPTED_BUT_NOT_COMPLETED and completed == 0:
        result.score += 2
        result.flags.append({
            "type": "low_completion_rate",
            "reason": f"Commuter has accepted {accepted} tasks but completed none",
            "severity": "medium",
            "count": accepted,
        })

    blocked = await audit_log.count_blocked_attempts(db, user_id)
    if blocked >= settings.BLOCKED_ATTEMPTS_THRESHOLD:
        result.score += blocked
        result.flags.append({
            "type": "multiple_blocked_attempts",
            "reason": f"User has {blocked} blocked task attempts",
            "severity": "high",
            "count": blocked,
        })

    incidents = await count_confirmed_incidents(db, user_id)
    if incidents > 0:
        result.score += incidents * 2
        result.flags.append({
            "type": "previous_incidents",
            "reason": f"User has {incidents} confirmed incident(s)",
            "severity": "high",
            "count": incidents,
        })

    result.should_auto_flag = result.score >= settings.FLAG_SCORE_THRESHOLD
    return result


# ── Ban check ──────────────────────────────────────────────

async def _fresh_user(db: AsyncSession, user_id: str) -> User | None:
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def is_banned(user: User | None, now: datetime | None = None) -> bool:
    if user is None or not user.is_soft_banned:
        return False
    return user.soft_ban_until is None or user.soft_ban_until > (now or utcnow())


async def ensure_not_banned(
    db: AsyncSession,
    user_id: str,
    actor: ActorContext | None = None,
) -> User | None:
    """
    Fail closed for a soft-banned user. Reads the row from the database on
    every call so a ban applied by another worker is seen immediately. An
    expired ban is lifted here.

    A refused action is journaled as a blocked attempt before raising. The
    entry is marked ``autoFlagged`` so it never feeds the user's own score.
    """
    user = await _fresh_user(db, user_id)
    if user is None or not user.is_soft_banned:
        return user

    now = utcnow()
    if is_banned(user, now):
        ban_until = user.soft_ban_until or now + timedelta(hours=settings.SOFT_BAN_HOURS)
        await audit_log.log_blocked_attempt(
            db, user_id, f"Account restricted until {ban_until.isoformat()}",
            {"eventType": audit_log.BANNED_ACTION_EVENT, "autoFlagged": True},
            actor or ActorContext(user_id=user_id),
        )
        await db.commit()
        logger.warning("⛔ Blocked action by soft-banned user %s (until %s)", user_id, ban_until)
        raise AutoFlagEnforced(ban_until)

    user.is_soft_banned = False
    await db.commit()
    logger.info("Soft ban expired for %s", user_id)
    return user


# ── Enforcement ────────────────────────────────────────────

async def _cancel_pre_pickup(db: AsyncSession, user_id: str, actions: list[str]) -> None:
    ids = (await db.execute(
        select(DeliveryRequest.id).where(
            DeliveryRequest.sender_id == user_id,
            DeliveryRequest.status.in_([s.value for s in PRE_PICKUP]),
        )
    )).scalars().all()

    for request_id in ids:
        try:
            now = utcnow()
            result = await db.execute(
                update(DeliveryRequest)
                .where(
                    DeliveryRequest.id == request_id,
                    DeliveryRequest.status.in_([s.value for s in PRE_PICKUP]),
                )
                .values(
                    status=RequestStatus.CANCELLED.value,
                    cancellation_reason=AUTO_CANCEL_REASON,
                    cancelled_at=now,
                    updated_at=now,
                    version=DeliveryRequest.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Moved past pickup since the scan; leave it alone
                continue
            await audit_log.log_task_event(
                db, request_id, "task_cancelled",
                {"senderId": user_id, "status": RequestStatus.CANCELLED.value,
                 "details": {"reason": AUTO_CANCEL_REASON}},
                SYSTEM_ACTOR,
            )
            await db.commit()
            actions.append(f"cancelled_task_{request_id}")
        except Exception as e:
            await db.rollback()
            logger.error("❌ Auto-flag cancel of %s failed: %s", request_id, e)


async def auto_flag_user(db: AsyncSession, user_id: str, reason: str, severity: str = "medium") -> dict:
    """
    Soft-ban the user and cancel their pre-pickup requests. Each cancellation
    commits on its own; a failure part-way keeps what was already applied.
    The incident is written last so its action list is the true one.
    """
    user = await _fresh_user(db, user_id)
    if user is None:
        raise NotFound("User not found", code="USER_NOT_FOUND")

    actions: list[str] = []
    now = utcnow()
    ban_until = now + timedelta(hours=settings.SOFT_BAN_HOURS)

    user.is_soft_banned = True
    user.soft_ban_until = ban_until
    user.auto_flagged = True
    user.auto_flag_reason = reason
    user.auto_flagged_at = now
    user.flag_severity = severity
    await db.commit()
    actions.append(f"soft_ban_{settings.SOFT_BAN_HOURS}h")

    await _cancel_pre_pickup(db, user_id, actions)

    incident = Incident(
        type="auto_flagged",
        reported_user_id=user_id,
        reason=reason,
        severity=severity,
        status="pending_review",
        auto_flagged=True,
        actions_taken=list(actions),
    )
    db.add(incident)
    await db.commit()

    await audit_log.log_blocked_attempt(
        db, user_id, f"Auto-flagged: {reason}",
        {"eventType": audit_log.AUTO_FLAG_EVENT, "autoFlagged": True},
        SYSTEM_ACTOR,
    )
    await db.commit()

    logger.warning("🚩 Auto-flagged %s (%s): %s", user_id, severity, ", ".join(actions))
    return {
        "success": True,
        "actions": actions,
        "softBanUntil": ban_until.isoformat(),
        "incidentId": str(incident.id),
    }


async def evaluate_and_enforce(db: AsyncSession, user_id: str) -> FlagScore:
    """Score the user and auto-flag when the threshold is reached."""
    score = await calculate_user_flag_score(db, user_id)
    if not score.should_auto_flag:
        return score

    user = await _fresh_user(db, user_id)
    if user is None:
        logger.warning("Flag threshold reached for unknown user %s", user_id)
        return score
    if is_banned(user):
        return score

    score.enforcement = await auto_flag_user(db, user_id, score.reason, score.severity)
    return score


async def lift_soft_ban(db: AsyncSession, user_id: str, admin_id: str) -> User:
    user = await _fresh_user(db, user_id)
    if user is None:
        raise NotFound("User not found", code="USER_NOT_FOUND")
    user.is_soft_banned = False
    user.soft_ban_until = None
    await db.commit()
    logger.info("Soft ban on %s lifted by admin %s", user_id, admin_id)
    return user


# ── Incidents ──────────────────────────────────────────────

async def report_user(
    db: AsyncSession,
    reporter_id: str,
    reported_user_id: str,
    reason: str,
    request_id: str | None = None,
    limiter: RateLimiter | None = None,
) -> Incident:
    await ensure_not_banned(db, reporter_id)
    await (limiter or get_rate_limiter()).enforce(reporter_id, "reportUser")

    if reporter_id == reported_user_id:
        raise Forbidden("You cannot report yourself", code="SELF_REPORT")
    if await db.get(User, reported_user_id) is None:
        raise NotFound("Reported user not found", code="USER_NOT_FOUND")

    incident = Incident(
        type="user_report",
        reported_user_id=reported_user_id,
        reporter_id=reporter_id,
        request_id=str(request_id) if request_id else None,
        reason=reason,
        severity="medium",
        status="pending_review",
        auto_flagged=False,
        actions_taken=[],
    )
    db.add(incident)
    await db.commit()
    await db.refresh(incident)
    logger.info("User %s reported %s", reporter_id, reported_user_id)
    return incident


async def list_incidents(db: AsyncSession, status: str | None = None, limit: int = 100) -> list[Incident]:
    query = select(Incident).order_by(Incident.created_at.desc()).limit(limit)
    if status:
        query = query.where(Incident.status == status)
    return list((await db.execute(query)).scalars().all())


async def review_incident(
    db: AsyncSession,
    incident_id,
    admin_id: str,
    decision: str,
    note: str | None = None,
) -> Incident:
    """Confirm or dismiss a pending incident. Confirmation feeds the flag score."""
    if decision not in ("confirmed", "dismissed"):
        raise InvalidTransition(f"Unknown review decision: {decision}", code="INVALID_DECISION")

    incident = await db.get(Incident, incident_id)
    if incident is None:
        raise NotFound("Incident not found", code="INCIDENT_NOT_FOUND")
    if incident.status != "pending_review":
        raise InvalidTransition("Incident has already been reviewed", current_status=incident.status)

    incident.status = decision
    incident.reviewed_at = utcnow()
    incident.reviewed_by = admin_id
    incident.review_note = note
    await db.commit()

    if decision == "confirmed":
        await evaluate_and_enforce(db, incident.reported_user_id)
    await db.refresh(incident)
    return incident
