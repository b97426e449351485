"""
Ratings — post-delivery star ratings and the derived per-user average.

The sender rates the helper (stored as sender_rating); the helper rates the
sender (stored as commuter_rating). A user's rating is recomputed from
scratch over every completed request on each submission.
"""

import logging
import math

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import utcnow
from models.request import DeliveryRequest
from models.user import User
from services import audit_log, lifecycle
from services.actor import ActorContext
from services.auto_flagging import ensure_not_banned
from services.errors import DomainError, Forbidden, InvalidTransition
from services.transitions import RequestStatus

logger = logging.getLogger(__name__)

RATEABLE = (RequestStatus.DELIVERED.value, RequestStatus.COMPLETED.value)


def _round_half_up(value: float) -> float:
    return math.floor(value * 10 + 0.5) / 10


async def recompute_user_rating(db: AsyncSession, user_id: str) -> dict:
    """Average of ratings received across completed requests, to one decimal."""
    as_helper = (await db.execute(
        select(DeliveryRequest.sender_rating).where(
            DeliveryRequest.commuter_id == user_id,
            DeliveryRequest.status == RequestStatus.COMPLETED.value,
            DeliveryRequest.sender_rating.is_not(None),
        )
    )).scalars().all()
    as_sender = (await db.execute(
        select(DeliveryRequest.commuter_rating).where(
            DeliveryRequest.sender_id == user_id,
            DeliveryRequest.status == RequestStatus.COMPLETED.value,
            DeliveryRequest.commuter_rating.is_not(None),
        )
    )).scalars().all()

    ratings = [*as_helper, *as_sender]
    average = _round_half_up(sum(ratings) / len(ratings)) if ratings else None

    user = await db.get(User, user_id)
    if user is not None:
        user.rating = average
        user.total_deliveries = len(ratings)
        await db.commit()
    return {"userId": user_id, "rating": average, "totalDeliveries": len(ratings)}


async def submit_rating(
    db: AsyncSession,
    request_id,
    rating: int,
    actor: ActorContext,
    comment: str | None = None,
) -> DeliveryRequest:
    """Rate the other party once. Rating a delivered request completes it."""
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise DomainError(code="INVALID_RATING", http_status=422, message="Rating must be between 1 and 5")

    await ensure_not_banned(db, actor.user_id, actor)
    request = await lifecycle.get_request(db, request_id)
    if actor.user_id == request.sender_id:
        field, comment_field, ratee = "sender_rating", "sender_rating_comment", request.commuter_id
    elif request.commuter_id and actor.user_id == request.commuter_id:
        field, comment_field, ratee = "commuter_rating", "commuter_rating_comment", request.sender_id
    else:
        raise Forbidden("Only the sender or the helper can rate this delivery", code="NOT_PARTICIPANT")

    if request.status not in RATEABLE:
        raise InvalidTransition("Deliveries can only be rated after drop-off", current_status=request.status)

    column = getattr(DeliveryRequest, field)
    result = await db.execute(
        update(DeliveryRequest)
        .where(
            DeliveryRequest.id == request.id,
            DeliveryRequest.status.in_(RATEABLE),
            column.is_(None),
        )
        .values({field: rating, comment_field: comment, "updated_at": utcnow()})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition("You have already rated this delivery", current_status=request.status,
                                code="ALREADY_RATED")
    await db.refresh(request)
    await audit_log.log_task_event(
        db, request.id, "rating_submitted",
        {"senderId": request.sender_id, "commuterId": request.commuter_id, "status": request.status,
         "details": {"field": field, "rating": rating}},
        actor,
    )
    await db.commit()

    if request.status == RequestStatus.DELIVERED.value:
        try:
            request = await lifecycle.complete_request(db, request.id, actor)
        except InvalidTransition:
            # The other party's rating completed it first
            request = await lifecycle.get_request(db, request.id)

    await recompute_user_rating(db, ratee)
    logger.info("⭐ %s rated %s %d on %s", actor.user_id, ratee, rating, request.id)
    return request
