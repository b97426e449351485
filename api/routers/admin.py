"""Admin API endpoints — compliance export, flagging and incident review."""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import async_session, get_db
from routers.deps import get_admin
from schemas import IncidentResponse, IncidentReview, ManualFlag
from services import audit_log, auto_flagging
from services.actor import ActorContext
from services.sweeper import run_sweep

router = APIRouter()


@router.get("/export")
async def export_logs(
    task_id: str | None = None,
    user_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    admin: ActorContext = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
):
    """Compliance bundle across all audit collections, chat decrypted."""
    return await audit_log.export_logs(db, admin.user_id, task_id=task_id, user_id=user_id, start=start, end=end)


@router.get("/users/{user_id}/flag-score")
async def flag_score(
    user_id: str,
    admin: ActorContext = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
):
    score = await auto_flagging.calculate_user_flag_score(db, user_id)
    return score.as_dict()


@router.post("/users/{user_id}/evaluate")
async def evaluate_user(
    user_id: str,
    admin: ActorContext = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
):
    """Score the user and enforce if over threshold."""
    score = await auto_flagging.evaluate_and_enforce(db, user_id)
    return score.as_dict()


@router.post("/users/{user_id}/flag")
async def flag_user(
    user_id: str,
    data: ManualFlag,
    admin: ActorContext = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
):
    return await auto_flagging.auto_flag_user(db, user_id, data.reason, data.severity)


@router.post("/users/{user_id}/unban")
async def unban_user(
    user_id: str,
    admin: ActorContext = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await auto_flagging.lift_soft_ban(db, user_id, admin.user_id)
    return {"userId": user.id, "isSoftBanned": user.is_soft_banned}


@router.get("/incidents", response_model=list[IncidentResponse])
async def list_incidents(
    status: str | None = None,
    limit: int = 100,
    admin: ActorContext = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
):
    return await auto_flagging.list_incidents(db, status=status, limit=limit)


@router.post("/incidents/{incident_id}/review", response_model=IncidentResponse)
async def review_incident(
    incident_id: uuid.UUID,
    data: IncidentReview,
    admin: ActorContext = Depends(get_admin),
    db: AsyncSession = Depends(get_db),
):
    return await auto_flagging.review_incident(db, incident_id, admin.user_id, data.decision, data.note)


@router.post("/sweep")
async def trigger_sweep(admin: ActorContext = Depends(get_admin)):
    """Run one expiry / re-scoring pass now."""
    return await run_sweep(async_session)
