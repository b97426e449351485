"""
Request Lifecycle — every state change of a DeliveryRequest.

Each operation follows the same order:
  1. ban check (strongly consistent read of the acting user)
  2. rate limit, where the action has a quota
  3. content / physical-safety validation (creation only)
  4. one guarded UPDATE ... WHERE id = :id AND status IN (:allowed)
  5. task-event audit entry, committed with the update
  6. notifications (fire-and-forget)

Zero rows from the guarded UPDATE means another caller moved the request
first; the operation fails with InvalidTransition and nothing is written.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import utcnow
from models.request import DeliveryRequest
from services import audit_log, notifications
from services.actor import ActorContext, SYSTEM_ACTOR
from services.auto_flagging import ensure_not_banned, evaluate_and_enforce
from services.content_validator import validate_text
from services.errors import (
    ConcurrentApprovalConflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    OtpMismatch,
    ValidationRejected,
)
from services.physical_safety import validate_item
from services.rate_limiter import RateLimiter, get_rate_limiter
from services.transitions import (
    ACCEPTED_ACTIVE,
    Operation,
    RequestStatus,
    TERMINAL,
    TRACKABLE,
    allowed_from,
    next_status,
)

logger = logging.getLogger(__name__)

QUEUE_RETRIES = 3
CONFIRMATION_REQUIRED = "Please confirm the item is not on the restricted items list"

EVENT_TYPES = {
    Operation.REQUEST_TO_DELIVER: "rider_requested",
    Operation.APPROVE: "rider_approved",
    Operation.REJECT: "rider_rejected",
    Operation.REJECT_ALL: "riders_rejected",
    Operation.CANCEL: "task_cancelled",
    Operation.MARK_WAITING_PICKUP: "rider_arriving",
    Operation.INITIATE_PICKUP_OTP: "pickup_otp_initiated",
    Operation.VERIFY_PICKUP_OTP: "pickup_verified",
    Operation.START_TRANSIT: "transit_started",
    Operation.VERIFY_DROP_OTP: "drop_verified",
    Operation.COMPLETE: "task_completed",
    Operation.EXPIRE: "task_expired",
}


def generate_otp() -> str:
    """4-digit code in 1000..9999."""
    return str(secrets.randbelow(9000) + 1000)


def otp_matches(provided: str | int | None, stored: str) -> bool:
    if provided is None:
        return False
    return secrets.compare_digest(str(provided).strip(), str(stored))


# ── Loading & guarded writes ───────────────────────────────

async def _load(db: AsyncSession, request_id) -> DeliveryRequest:
    result = await db.execute(
        select(DeliveryRequest)
        .where(DeliveryRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFound("Request not found", code="REQUEST_NOT_FOUND")
    return request


async def get_request(db: AsyncSession, request_id) -> DeliveryRequest:
    return await _load(db, request_id)


async def _current_status(db: AsyncSession, request_id) -> str | None:
    result = await db.execute(select(DeliveryRequest.status).where(DeliveryRequest.id == request_id))
    return result.scalar_one_or_none()


async def _guarded_update(
    db: AsyncSession,
    request,
    operation: Operation | None,
    values: dict[str, Any],
    *,
    allowed: tuple[RequestStatus, ...] | None = None,
    extra_where: tuple = (),
    match_version: bool = False,
    bump_version: bool = True,
) -> bool:
    """Compare-and-set on status (and optionally version). True if the row was written."""
    statuses = allowed if allowed is not None else allowed_from(operation)
    conditions = [
        DeliveryRequest.id == request.id,
        DeliveryRequest.status.in_([s.value for s in statuses]),
        *extra_where,
    ]
    if match_version:
        conditions.append(DeliveryRequest.version == request.version)

    values = {**values, "updated_at": utcnow()}
    if bump_version:
        values["version"] = DeliveryRequest.version + 1

    result = await db.execute(
        update(DeliveryRequest)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _event_data(request: DeliveryRequest, from_status: str | None, **extra) -> dict[str, Any]:
    return {
        "senderId": request.sender_id,
        "commuterId": request.commuter_id,
        "fromStatus": from_status,
        "status": request.status,
        **extra,
    }


async def _transition(
    db: AsyncSession,
    request: DeliveryRequest,
    operation: Operation,
    actor: ActorContext,
    values: dict[str, Any] | None = None,
    *,
    extra_where: tuple = (),
    conflict: Callable[[str | None], Exception] | None = None,
    event: dict[str, Any] | None = None,
) -> DeliveryRequest:
    """Run one table-driven transition: pre-check, guarded write, audit, commit."""
    from_status = request.status
    target = next_status(from_status, operation)

    written = await _guarded_update(
        db, request, operation, {"status": target.value, **(values or {})}, extra_where=extra_where,
    )
    if not written:
        current = await _current_status(db, request.id)
        logger.info("Guard rejected %s on %s (now %s)", operation.value, request.id, current)
        if conflict is not None:
            raise conflict(current)
        raise InvalidTransition(
            "This request changed while your action was in progress. Please refresh.",
            current_status=current,
        )

    await db.refresh(request)
    await audit_log.log_task_event(
        db, request.id, EVENT_TYPES[operation], _event_data(request, from_status, **(event or {})), actor,
    )
    await db.commit()
    logger.info("Request %s: %s → %s by %s", request.id, from_status, target.value, actor.user_id)
    return request


async def _queue_write(
    db: AsyncSession,
    request: DeliveryRequest,
    operation: Operation,
    build: Callable[[DeliveryRequest], dict[str, Any] | None],
) -> tuple[DeliveryRequest, bool]:
    """
    Read-modify-write of the rider queue, retried on version conflicts.
    `build` returns the new column values, or None for a no-op.
    """
    for _ in range(QUEUE_RETRIES):
        values = build(request)
        if values is None:
            return request, False
        if await _guarded_update(db, request, operation, values, match_version=True):
            await db.refresh(request)
            return request, True
        request = await _load(db, request.id)
    raise InvalidTransition("Too many simultaneous changes to this request. Please retry.", code="QUEUE_CONFLICT")


def _require_sender(request: DeliveryRequest, actor: ActorContext) -> None:
    if request.sender_id != actor.user_id:
        raise Forbidden("Only the sender can do this", code="NOT_REQUEST_OWNER")


def _require_rider(request: DeliveryRequest, actor: ActorContext) -> None:
    if not request.commuter_id or request.commuter_id != actor.user_id:
        raise Forbidden("Only the approved helper can do this", code="NOT_ASSIGNED_RIDER")


def _require_participant(request: DeliveryRequest, actor: ActorContext) -> None:
    if actor.user_id not in (request.sender_id, request.commuter_id):
        raise Forbidden("Only the sender or the helper can do this", code="NOT_PARTICIPANT")


# ── Creation ───────────────────────────────────────────────

async def _raise_blocked(
    db: AsyncSession,
    actor: ActorContext,
    data: dict[str, Any],
    reason: str,
    matched_keywords: list[str] | None = None,
    matched_patterns: list[str] | None = None,
    **details,
):
    """Audit a blocked attempt, give the flag engine a look, then raise."""
    await audit_log.log_blocked_attempt(
        db,
        actor.user_id,
        reason,
        {
            "itemDescription": data.get("item_description"),
            "category": data.get("category"),
            "itemAttributes": data.get("item_attributes"),
            "matchedKeywords": matched_keywords,
            "matchedPatterns": matched_patterns,
            "pickupPincode": data.get("pickup_pincode"),
            "pickupDetails": data.get("pickup_details"),
            "dropPincode": data.get("drop_pincode"),
            "dropDetails": data.get("drop_details"),
            "priceOffered": data.get("price_offered"),
        },
        actor,
    )
    await db.commit()
    logger.warning("🚫 Blocked request by %s: %s %s", actor.user_id, reason, matched_keywords or "")

    try:
        await evaluate_and_enforce(db, actor.user_id)
    except Exception as e:
        logger.error("❌ Flag evaluation after blocked attempt failed for %s: %s", actor.user_id, e)

    raise ValidationRejected(reason, matched_keywords=matched_keywords, matchedPatterns=matched_patterns or [], **details)


async def create_request(
    db: AsyncSession,
    data: dict[str, Any],
    actor: ActorContext,
    limiter: RateLimiter | None = None,
) -> DeliveryRequest:
    """
    Create a request in `created` with fresh OTPs and a TTL.

    `data` uses the model's field names (pickup_pincode, item_description,
    item_attributes, user_confirmation, ...).
    """
    await ensure_not_banned(db, actor.user_id, actor)
    await (limiter or get_rate_limiter()).enforce(actor.user_id, "createRequest")

    content = validate_text(data.get("item_description"))
    if not content.is_valid:
        await _raise_blocked(
            db, actor, data, content.reason, content.all_matches, content.matched_patterns,
        )

    attributes = data.get("item_attributes") or {}
    safety = validate_item(attributes)
    if not safety.is_valid:
        await _raise_blocked(db, actor, data, safety.reason, warnings=safety.warnings)

    if data.get("user_confirmation") is not True:
        await _raise_blocked(db, actor, data, CONFIRMATION_REQUIRED)

    now = utcnow()
    otp_pickup = generate_otp()
    otp_drop = generate_otp()
    while otp_drop == otp_pickup:
        otp_drop = generate_otp()

    request = DeliveryRequest(
        sender_id=actor.user_id,
        requested_riders=[],
        pickup_pincode=data["pickup_pincode"],
        pickup_details=data.get("pickup_details") or "",
        pickup_lat=data.get("pickup_lat"),
        pickup_lng=data.get("pickup_lng"),
        drop_pincode=data["drop_pincode"],
        drop_details=data.get("drop_details") or "",
        drop_lat=data.get("drop_lat"),
        drop_lng=data.get("drop_lng"),
        item_description=data["item_description"],
        category=data.get("category") or "other",
        item_photo=data.get("item_photo"),
        item_attributes=attributes,
        price_offered=data.get("price_offered"),
        otp_pickup=otp_pickup,
        otp_drop=otp_drop,
        status=RequestStatus.CREATED.value,
        version=0,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(minutes=settings.REQUEST_TTL_MIN),
    )
    db.add(request)
    await db.flush()

    await audit_log.log_task_creation(
        db, request, actor,
        item_validation=content.as_dict(),
        mrt_validation=safety.as_dict(),
        user_confirmation=True,
    )
    await db.commit()
    logger.info("✅ Request %s created by %s", request.id, actor.user_id)

    await notifications.notify_nearby_request(db, request)
    return request


# ── Rider queue ────────────────────────────────────────────

async def _has_active_pickup(db: AsyncSession, rider_id: str) -> bool:
    result = await db.execute(
        select(DeliveryRequest.id).where(
            DeliveryRequest.commuter_id == rider_id,
            DeliveryRequest.status.in_([
                RequestStatus.APPROVED.value,
                RequestStatus.WAITING_PICKUP.value,
                RequestStatus.PICKUP_OTP_PENDING.value,
            ]),
        ).limit(1)
    )
    return result.first() is not None


async def request_to_deliver(
    db: AsyncSession,
    request_id,
    actor: ActorContext,
    limiter: RateLimiter | None = None,
) -> DeliveryRequest:
    """Queue the acting rider on an open request. Queuing twice is a no-op."""
    rider_id = actor.user_id
    await ensure_not_banned(db, rider_id, actor)
    await (limiter or get_rate_limiter()).enforce(rider_id, "acceptRequest")

    request = await _load(db, request_id)
    if request.sender_id == rider_id:
        raise Forbidden("You cannot deliver your own request", code="OWN_REQUEST")
    if rider_id in (request.requested_riders or []):
        return request
    if request.status == RequestStatus.CREATED.value and request.expires_at <= utcnow():
        raise InvalidTransition("This task has expired", current_status=request.status, code="REQUEST_EXPIRED")
    if await _has_active_pickup(db, rider_id):
        raise InvalidTransition(
            "You have an active pickup. Verify its pickup OTP before requesting a new task.",
            code="ACTIVE_PICKUP_PENDING",
        )

    from_status = request.status

    def build(current: DeliveryRequest):
        queue = list(current.requested_riders or [])
        if rider_id in queue:
            return None
        if current.status not in (s.value for s in allowed_from(Operation.REQUEST_TO_DELIVER)):
            raise InvalidTransition("This task is no longer available", current_status=current.status)
        queue.append(rider_id)
        target = next_status(current.status, Operation.REQUEST_TO_DELIVER)
        return {"status": target.value, "requested_riders": queue, "requested_by": queue[0]}

    request, written = await _queue_write(db, request, Operation.REQUEST_TO_DELIVER, build)
    if not written:
        return request

    await audit_log.log_task_event(
        db, request.id, EVENT_TYPES[Operation.REQUEST_TO_DELIVER],
        _event_data(request, from_status, details={"riderId": rider_id, "queue": request.requested_riders}),
        actor,
    )
    await db.commit()
    logger.info("Rider %s queued on %s (%d waiting)", rider_id, request.id, len(request.requested_riders))

    await notifications.notify_status_change(db, request, RequestStatus.REQUESTED.value)
    return request


async def approve_rider(db: AsyncSession, request_id, rider_id: str, actor: ActorContext) -> DeliveryRequest:
    """
    Sender picks one queued rider. Only the first approval wins: the guarded
    write requires the request to still be open and unassigned.
    """
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_sender(request, actor)

    if request.status not in (s.value for s in allowed_from(Operation.APPROVE)):
        raise ConcurrentApprovalConflict(request.status)
    if rider_id not in (request.requested_riders or []):
        raise InvalidTransition(
            "This rider has not requested this task", current_status=request.status, code="RIDER_NOT_QUEUED",
        )

    request = await _transition(
        db, request, Operation.APPROVE, actor,
        {"commuter_id": rider_id, "requested_riders": [], "requested_by": None},
        extra_where=(DeliveryRequest.commuter_id.is_(None),),
        conflict=ConcurrentApprovalConflict,
        event={"details": {"riderId": rider_id}},
    )
    await notifications.notify_status_change(db, request, RequestStatus.APPROVED.value)
    return request


async def reject_rider(
    db: AsyncSession,
    request_id,
    actor: ActorContext,
    rider_id: str | None = None,
) -> DeliveryRequest:
    """Drop one rider (or, with no rider, the whole queue). An empty queue reopens the request."""
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_sender(request, actor)

    operation = Operation.REJECT if rider_id else Operation.REJECT_ALL
    from_status = request.status

    def build(current: DeliveryRequest):
        target = next_status(current.status, operation)
        queue = list(current.requested_riders or [])
        if rider_id:
            if rider_id not in queue:
                raise InvalidTransition(
                    "This rider has not requested this task",
                    current_status=current.status, code="RIDER_NOT_QUEUED",
                )
            queue = [r for r in queue if r != rider_id]
        else:
            queue = []
        if not queue:
            target = RequestStatus.CREATED
        return {"status": target.value, "requested_riders": queue, "requested_by": queue[0] if queue else None}

    request, _ = await _queue_write(db, request, operation, build)
    await audit_log.log_task_event(
        db, request.id, EVENT_TYPES[operation],
        _event_data(request, from_status, details={"riderId": rider_id, "queue": request.requested_riders}),
        actor,
    )
    await db.commit()
    return request


async def cancel_request(
    db: AsyncSession,
    request_id,
    actor: ActorContext,
    reason: str | None = None,
) -> DeliveryRequest:
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_sender(request, actor)

    request = await _transition(
        db, request, Operation.CANCEL, actor,
        {"cancellation_reason": reason or "Cancelled by sender", "cancelled_at": utcnow()},
        event={"details": {"reason": reason}},
    )
    await notifications.notify_status_change(db, request, RequestStatus.CANCELLED.value)
    return request


# ── Pickup ─────────────────────────────────────────────────

async def mark_waiting_pickup(db: AsyncSession, request_id, actor: ActorContext) -> DeliveryRequest:
    """Approved rider announces they are close to the pickup point."""
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_rider(request, actor)

    request = await _transition(db, request, Operation.MARK_WAITING_PICKUP, actor)
    await notifications.notify_status_change(db, request, RequestStatus.WAITING_PICKUP.value)
    return request


async def announce_arrival(db: AsyncSession, request_id, location: str, actor: ActorContext) -> DeliveryRequest:
    """Arrival ping at pickup or drop. Audited and notified; status is unchanged."""
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_rider(request, actor)

    if location == "pickup":
        valid = (RequestStatus.APPROVED, RequestStatus.WAITING_PICKUP, RequestStatus.PICKUP_OTP_PENDING)
    elif location == "drop":
        valid = (RequestStatus.IN_TRANSIT,)
    else:
        raise InvalidTransition(f"Unknown arrival location: {location}", code="INVALID_LOCATION")
    if request.status not in (s.value for s in valid):
        raise InvalidTransition(
            f"Cannot announce {location} arrival on a request that is {request.status}",
            current_status=request.status,
        )

    await audit_log.log_task_event(
        db, request.id, f"arrived_at_{location}",
        _event_data(request, request.status, location={"lat": request.rider_lat, "lng": request.rider_lng}),
        actor,
    )
    await db.commit()
    await notifications.notify_arrival(db, request, location)
    return request


async def initiate_pickup_otp(db: AsyncSession, request_id, actor: ActorContext) -> DeliveryRequest:
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_rider(request, actor)

    request = await _transition(db, request, Operation.INITIATE_PICKUP_OTP, actor)
    await notifications.notify_status_change(db, request, RequestStatus.PICKUP_OTP_PENDING.value)
    return request


async def _record_otp_mismatch(db: AsyncSession, request: DeliveryRequest, otp_type: str, actor: ActorContext) -> None:
    await audit_log.log_task_event(
        db, request.id, f"{otp_type}_otp_mismatch",
        _event_data(request, request.status, otpVerified=False),
        actor,
    )
    await db.commit()
    logger.info("Wrong %s OTP on %s from %s", otp_type, request.id, actor.user_id)


async def verify_pickup_otp(
    db: AsyncSession,
    request_id,
    code: str,
    actor: ActorContext,
    photos: list[str] | None = None,
) -> DeliveryRequest:
    """Exact match against the pickup OTP moves the request to picked, once."""
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_rider(request, actor)

    next_status(request.status, Operation.VERIFY_PICKUP_OTP)
    if not otp_matches(code, request.otp_pickup):
        await _record_otp_mismatch(db, request, "pickup", actor)
        raise OtpMismatch("pickup")

    request = await _transition(
        db, request, Operation.VERIFY_PICKUP_OTP, actor,
        {"picked_at": utcnow()},
        event={"otpVerified": True, "photos": photos or []},
    )
    await notifications.notify_status_change(db, request, RequestStatus.PICKED.value)
    return request


# ── Delivery ───────────────────────────────────────────────

async def start_transit(db: AsyncSession, request_id, actor: ActorContext) -> DeliveryRequest:
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_rider(request, actor)

    request = await _transition(db, request, Operation.START_TRANSIT, actor)
    await notifications.notify_status_change(db, request, RequestStatus.IN_TRANSIT.value)
    return request


async def verify_drop_otp(
    db: AsyncSession,
    request_id,
    code: str,
    actor: ActorContext,
    photos: list[str] | None = None,
) -> DeliveryRequest:
    """Only an in_transit request can be advanced to delivered."""
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_rider(request, actor)

    next_status(request.status, Operation.VERIFY_DROP_OTP)
    if not otp_matches(code, request.otp_drop):
        await _record_otp_mismatch(db, request, "drop", actor)
        raise OtpMismatch("drop")

    request = await _transition(
        db, request, Operation.VERIFY_DROP_OTP, actor,
        {"delivered_at": utcnow(), "tracking_enabled": False},
        event={"otpVerified": True, "photos": photos or []},
    )
    await notifications.notify_status_change(db, request, RequestStatus.DELIVERED.value)
    return request


async def complete_request(db: AsyncSession, request_id, actor: ActorContext) -> DeliveryRequest:
    """delivered → completed. Reached through the rating/closure flow."""
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_participant(request, actor)

    request = await _transition(db, request, Operation.COMPLETE, actor, {"completed_at": utcnow()})
    await notifications.notify_status_change(db, request, RequestStatus.COMPLETED.value)
    return request


async def confirm_payment(
    db: AsyncSession,
    request_id,
    actor: ActorContext,
    amount: float | None = None,
) -> DeliveryRequest:
    """Sender asserts the PayNow tip was paid. Recorded once; no money moves here."""
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_sender(request, actor)

    payable = (RequestStatus.DELIVERED, RequestStatus.COMPLETED)
    if request.status not in (s.value for s in payable):
        raise InvalidTransition(
            "Payment can only be confirmed after delivery", current_status=request.status,
        )

    written = await _guarded_update(
        db, request, None,
        {"payment_confirmed": True, "payment_confirmed_at": utcnow()},
        allowed=payable,
        extra_where=(DeliveryRequest.payment_confirmed.is_(False),),
    )
    if not written:
        raise InvalidTransition(
            "Payment has already been confirmed", current_status=request.status, code="PAYMENT_ALREADY_CONFIRMED",
        )
    await db.refresh(request)

    await audit_log.log_payment_confirmation(
        db, request.id, request.sender_id, request.commuter_id,
        amount if amount is not None else request.price_offered, actor,
    )
    await db.commit()
    await notifications.notify_status_change(db, request, notifications.PAYMENT_CONFIRMED)
    return request


# ── Tracking ───────────────────────────────────────────────

async def enable_tracking(db: AsyncSession, request_id, actor: ActorContext) -> DeliveryRequest:
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_rider(request, actor)

    if request.status not in (s.value for s in TRACKABLE):
        raise InvalidTransition(
            "Tracking can only be enabled after pickup", current_status=request.status,
            code="TRACKING_NOT_ALLOWED",
        )
    written = await _guarded_update(
        db, request, None, {"tracking_enabled": True},
        allowed=TRACKABLE,
        extra_where=(DeliveryRequest.commuter_id == actor.user_id,),
        bump_version=False,
    )
    if not written:
        raise InvalidTransition(
            "Tracking can only be enabled after pickup",
            current_status=await _current_status(db, request.id), code="TRACKING_NOT_ALLOWED",
        )
    await db.refresh(request)
    await audit_log.log_task_event(db, request.id, "tracking_enabled", _event_data(request, request.status), actor)
    await db.commit()
    return request


async def disable_tracking(db: AsyncSession, request_id, actor: ActorContext) -> DeliveryRequest:
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_rider(request, actor)

    await _guarded_update(
        db, request, None, {"tracking_enabled": False},
        allowed=tuple(RequestStatus),
        extra_where=(DeliveryRequest.commuter_id == actor.user_id,),
        bump_version=False,
    )
    await db.refresh(request)
    await audit_log.log_task_event(db, request.id, "tracking_disabled", _event_data(request, request.status), actor)
    await db.commit()
    return request


async def update_rider_location(
    db: AsyncSession,
    request_id,
    lat: float,
    lng: float,
    actor: ActorContext,
) -> DeliveryRequest:
    """Last write wins. Accepted only while tracking is on."""
    await ensure_not_banned(db, actor.user_id, actor)
    request = await _load(db, request_id)
    _require_rider(request, actor)

    written = await _guarded_update(
        db, request, None,
        {"rider_lat": lat, "rider_lng": lng, "last_location_update": utcnow()},
        allowed=TRACKABLE,
        extra_where=(
            DeliveryRequest.commuter_id == actor.user_id,
            DeliveryRequest.tracking_enabled.is_(True),
        ),
        bump_version=False,
    )
    if not written:
        raise InvalidTransition(
            "Location tracking is not enabled for this request",
            current_status=request.status, code="TRACKING_DISABLED",
        )
    await db.commit()
    await db.refresh(request)
    return request


# ── Expiry ─────────────────────────────────────────────────

async def expire_stale_requests(db: AsyncSession, now: datetime | None = None) -> list[str]:
    """Move every `created` request past its expiresAt to expired. Nothing else is touched."""
    now = now or utcnow()
    ids = (await db.execute(
        select(DeliveryRequest.id).where(
            DeliveryRequest.status == RequestStatus.CREATED.value,
            DeliveryRequest.expires_at < now,
        )
    )).scalars().all()

    expired: list[str] = []
    for request_id in ids:
        result = await db.execute(
            update(DeliveryRequest)
            .where(
                DeliveryRequest.id == request_id,
                DeliveryRequest.status == RequestStatus.CREATED.value,
                DeliveryRequest.expires_at < now,
            )
            .values(status=RequestStatus.EXPIRED.value, updated_at=now, version=DeliveryRequest.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        await audit_log.log_task_event(
            db, request_id, EVENT_TYPES[Operation.EXPIRE],
            {"fromStatus": RequestStatus.CREATED.value, "status": RequestStatus.EXPIRED.value},
            SYSTEM_ACTOR,
        )
        await db.commit()
        expired.append(str(request_id))

    if expired:
        logger.info("⏰ Expired %d stale requests", len(expired))
    return expired


# ── Queries ────────────────────────────────────────────────

async def list_my_requests(db: AsyncSession, user_id: str, include_closed: bool = False) -> list[DeliveryRequest]:
    query = select(DeliveryRequest).where(DeliveryRequest.sender_id == user_id)
    if not include_closed:
        query = query.where(DeliveryRequest.status.not_in([s.value for s in TERMINAL]))
    result = await db.execute(query.order_by(DeliveryRequest.created_at.desc()))
    return list(result.scalars().all())


async def list_available_requests(
    db: AsyncSession,
    rider_id: str,
    pincode: str | None = None,
) -> list[DeliveryRequest]:
    """Open, unexpired requests from other senders."""
    query = select(DeliveryRequest).where(
        DeliveryRequest.status.in_([RequestStatus.CREATED.value, RequestStatus.REQUESTED.value]),
        DeliveryRequest.sender_id != rider_id,
        DeliveryRequest.expires_at > utcnow(),
    )
    if pincode:
        query = query.where(or_(DeliveryRequest.pickup_pincode == pincode, DeliveryRequest.drop_pincode == pincode))
    result = await db.execute(query.order_by(DeliveryRequest.created_at.desc()))
    return list(result.scalars().all())


async def list_rider_tasks(db: AsyncSession, rider_id: str) -> list[DeliveryRequest]:
    result = await db.execute(
        select(DeliveryRequest).where(
            DeliveryRequest.commuter_id == rider_id,
            DeliveryRequest.status.in_([s.value for s in ACCEPTED_ACTIVE]),
        ).order_by(DeliveryRequest.updated_at.desc())
    )
    return list(result.scalars().all())
