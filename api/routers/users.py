"""User profile API endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db, utcnow
from models.user import User
from routers.deps import get_actor, ip_throttled
from schemas import (
    IncidentResponse, LocationUpdate, NotificationSettings, UserRegister, UserReport, UserResponse,
)
from services.actor import ActorContext
from services.auto_flagging import report_user
from services.content_validator import validate_singapore_phone
from services.errors import DomainError, NotFound

router = APIRouter()
logger = logging.getLogger(__name__)


async def _get_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not registered", code="USER_NOT_FOUND")
    return user


@router.post("/", response_model=UserResponse, dependencies=[Depends(ip_throttled)])
async def register_user(
    data: UserRegister,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Create or update the caller's profile (first call after sign-in)."""
    if data.phone and not validate_singapore_phone(data.phone):
        raise DomainError(code="INVALID_PHONE", http_status=422, message="Phone must be a Singapore number (+65XXXXXXXX)")

    user = await db.get(User, actor.user_id)
    if user is None:
        user = User(id=actor.user_id)
        db.add(user)
        logger.info("👤 New user registered: %s", actor.user_id)

    user.name = data.name
    user.phone = data.phone
    user.email = data.email
    user.role = data.role.value
    await db.commit()
    await db.refresh(user)
    return user


@router.get("/me", response_model=UserResponse)
async def get_me(actor: ActorContext = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    return await _get_user(db, actor.user_id)


@router.put("/me/notifications", response_model=UserResponse)
async def update_notifications(
    data: NotificationSettings,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Opt in/out of push and store the device token."""
    user = await _get_user(db, actor.user_id)
    user.notification_enabled = data.notification_enabled
    if data.fcm_token is not None:
        user.fcm_token = data.fcm_token
    await db.commit()
    await db.refresh(user)
    return user


@router.post("/me/location", response_model=UserResponse)
async def update_my_location(
    data: LocationUpdate,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Last known commuter position, used for nearby-request notices."""
    user = await _get_user(db, actor.user_id)
    user.current_lat = data.lat
    user.current_lng = data.lng
    user.last_location_update = utcnow()
    await db.commit()
    await db.refresh(user)
    return user


@router.post("/report", response_model=IncidentResponse, status_code=201)
async def report(
    data: UserReport,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Report another user; lands in the admin review queue."""
    return await report_user(db, actor.user_id, data.reported_user_id, data.reason, data.request_id)
