"""Delivery request API endpoints — creation, rider queue, pickup/drop, closure."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from routers.deps import get_actor
from schemas import (
    Arrival, CancelRequest, LocationUpdate, OtpVerify, PaymentConfirm,
    RatingSubmit, RejectRider, RequestCreate, RequestResponse, RiderChoice,
)
from services import lifecycle, ratings
from services.actor import ActorContext

router = APIRouter()


def _out(request, actor: ActorContext) -> RequestResponse:
    return RequestResponse.for_viewer(request, actor.user_id)


@router.post("/", response_model=RequestResponse, status_code=201)
async def create_request(
    data: RequestCreate,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Create a delivery request after rate-limit, content and safety checks."""
    request = await lifecycle.create_request(db, data.to_service_data(), actor)
    return _out(request, actor)


@router.get("/mine", response_model=list[RequestResponse])
async def list_mine(
    include_closed: bool = False,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    requests = await lifecycle.list_my_requests(db, actor.user_id, include_closed=include_closed)
    return [_out(r, actor) for r in requests]


@router.get("/available", response_model=list[RequestResponse])
async def list_available(
    pincode: str | None = None,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Open requests a rider can queue for."""
    requests = await lifecycle.list_available_requests(db, actor.user_id, pincode)
    return [_out(r, actor) for r in requests]


@router.get("/active", response_model=list[RequestResponse])
async def list_active_tasks(actor: ActorContext = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    """Tasks the caller is currently delivering."""
    return [_out(r, actor) for r in await lifecycle.list_rider_tasks(db, actor.user_id)]


@router.get("/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.get_request(db, request_id), actor)


# ── Rider queue ────────────────────────────────────────────

@router.post("/{request_id}/request-to-deliver", response_model=RequestResponse)
async def request_to_deliver(
    request_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.request_to_deliver(db, request_id, actor), actor)


@router.post("/{request_id}/approve", response_model=RequestResponse)
async def approve_rider(
    request_id: uuid.UUID,
    data: RiderChoice,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.approve_rider(db, request_id, data.rider_id, actor), actor)


@router.post("/{request_id}/reject", response_model=RequestResponse)
async def reject_rider(
    request_id: uuid.UUID,
    data: RejectRider,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Reject one rider, or the whole queue when no rider is given."""
    return _out(await lifecycle.reject_rider(db, request_id, actor, data.rider_id), actor)


@router.post("/{request_id}/cancel", response_model=RequestResponse)
async def cancel_request(
    request_id: uuid.UUID,
    data: CancelRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.cancel_request(db, request_id, actor, data.reason), actor)


# ── Pickup & drop ──────────────────────────────────────────

@router.post("/{request_id}/waiting-pickup", response_model=RequestResponse)
async def mark_waiting_pickup(
    request_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.mark_waiting_pickup(db, request_id, actor), actor)


@router.post("/{request_id}/arrive", response_model=RequestResponse)
async def announce_arrival(
    request_id: uuid.UUID,
    data: Arrival,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.announce_arrival(db, request_id, data.location, actor), actor)


@router.post("/{request_id}/pickup-otp/initiate", response_model=RequestResponse)
async def initiate_pickup_otp(
    request_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.initiate_pickup_otp(db, request_id, actor), actor)


@router.post("/{request_id}/pickup-otp/verify", response_model=RequestResponse)
async def verify_pickup_otp(
    request_id: uuid.UUID,
    data: OtpVerify,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.verify_pickup_otp(db, request_id, data.otp, actor, data.photos), actor)


@router.post("/{request_id}/start-transit", response_model=RequestResponse)
async def start_transit(
    request_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.start_transit(db, request_id, actor), actor)


@router.post("/{request_id}/drop-otp/verify", response_model=RequestResponse)
async def verify_drop_otp(
    request_id: uuid.UUID,
    data: OtpVerify,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.verify_drop_otp(db, request_id, data.otp, actor, data.photos), actor)


@router.post("/{request_id}/complete", response_model=RequestResponse)
async def complete_request(
    request_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.complete_request(db, request_id, actor), actor)


# ── Tracking ───────────────────────────────────────────────

@router.post("/{request_id}/tracking/enable", response_model=RequestResponse)
async def enable_tracking(
    request_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.enable_tracking(db, request_id, actor), actor)


@router.post("/{request_id}/tracking/disable", response_model=RequestResponse)
async def disable_tracking(
    request_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.disable_tracking(db, request_id, actor), actor)


@router.post("/{request_id}/location", response_model=RequestResponse)
async def update_location(
    request_id: uuid.UUID,
    data: LocationUpdate,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.update_rider_location(db, request_id, data.lat, data.lng, actor), actor)


# ── Closure ────────────────────────────────────────────────

@router.post("/{request_id}/confirm-payment", response_model=RequestResponse)
async def confirm_payment(
    request_id: uuid.UUID,
    data: PaymentConfirm,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return _out(await lifecycle.confirm_payment(db, request_id, actor, data.amount), actor)


@router.post("/{request_id}/rate", response_model=RequestResponse)
async def rate_delivery(
    request_id: uuid.UUID,
    data: RatingSubmit,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Rate the other party; the first rating on a delivered request completes it."""
    return _out(await ratings.submit_rating(db, request_id, data.rating, actor, data.comment), actor)
