"""
Notification Service — role-specific push messages for request events.

One call per (recipient, event). Payload contract:
    {title, body, data: {requestId, type, role}}
    type ∈ status_change | payment | arrival | nearby_request
    role ∈ sender | helper

Dispatch is fire-and-forget: a failed push is logged, never raised, and
never affects the transition that triggered it.
"""

import logging
import math

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.request import DeliveryRequest
from models.user import User

logger = logging.getLogger(__name__)

ROLE_SENDER = "sender"
ROLE_HELPER = "helper"

TYPE_STATUS_CHANGE = "status_change"
TYPE_PAYMENT = "payment"
TYPE_ARRIVAL = "arrival"
TYPE_NEARBY = "nearby_request"

PAYMENT_CONFIRMED = "paymentConfirmed"
ARRIVED_AT_PICKUP = "arrivedAtPickup"
ARRIVED_AT_DROP = "arrivedAtDrop"


# ── Message tables ─────────────────────────────────────────

def _tip(request) -> str:
    price = getattr(request, "price_offered", None)
    return f" Tip: ${price:g}" if price else ""


def get_status_notification(status: str, is_sender: bool, request=None) -> dict[str, str]:
    """Title/body pair for a status (or paymentConfirmed) as seen by one side."""
    if status == "approved":
        if is_sender:
            return {"title": "Helper Approved! 🎉", "body": "Your helper has been approved and is ready to pick up."}
        return {"title": "You're Approved! ✅", "body": "The sender approved your request. You can now proceed to pickup."}

    if status == "waiting_pickup":
        if is_sender:
            return {"title": "Helper Arriving Soon 📍", "body": "Your helper is on the way to the pickup location."}
        return {"title": "Almost There! 🚶", "body": "You're near the pickup location. Get ready to verify OTP."}

    if status == "pickup_otp_pending":
        if is_sender:
            return {
                "title": "OTP Verification Started 🔐",
                "body": "Your helper is verifying the pickup OTP. Provide the code when asked.",
            }
        return {"title": "Enter Pickup OTP 🔑", "body": "Enter the OTP provided by the sender to complete pickup."}

    if status == "picked":
        if is_sender:
            return {"title": "Item Picked Up! 📦", "body": "Your helper has picked up the item and is starting delivery."}
        return {"title": "Pickup Complete! ✅", "body": "Item picked up successfully. Start your delivery now."}

    if status == "in_transit":
        if is_sender:
            return {"title": "Delivery In Progress 🚚", "body": "Your helper is on the way to the drop-off location."}
        return {"title": "On Your Way 🚶", "body": "You're delivering the item. Head to the drop-off location."}

    if status == "delivered":
        if is_sender:
            return {"title": "Item Delivered! 🎉", "body": "Your helper has arrived at the drop-off location."}
        return {
            "title": "Arrived at Drop-off 📍",
            "body": "You've arrived. Verify the drop-off OTP to complete delivery.",
        }

    if status == "completed":
        if is_sender:
            return {"title": "Delivery Completed! ✅", "body": f"Your delivery is complete!{_tip(request)}"}
        return {"title": "Delivery Complete! 🎉", "body": f"Great job! Delivery completed.{_tip(request)}"}

    if status == PAYMENT_CONFIRMED:
        if is_sender:
            return {"title": "Payment Confirmed! 💰", "body": "The tip payment has been confirmed."}
        price = getattr(request, "price_offered", None) or 0
        return {"title": "Payment Received! 💰", "body": f"You received ${price:g} tip!"}

    return {"title": "Status Updated", "body": f"Your delivery status has been updated to {status}."}


def get_arrival_notification(location: str, is_sender: bool) -> dict[str, str]:
    """location is 'pickup' or 'drop'."""
    if location == "pickup":
        if is_sender:
            return {"title": "Helper Arrived! 📍", "body": "Your helper has arrived at the pickup location."}
        return {"title": "You've Arrived! 📍", "body": "You're at the pickup location. Request OTP verification."}
    if is_sender:
        return {"title": "Helper Arrived at Drop-off! 📍", "body": "Your helper has arrived at the drop-off location."}
    return {"title": "Arrived at Drop-off! 📍", "body": "You're at the drop-off location. Verify OTP to complete."}


def build_message(title: str, body: str, request_id, type_: str, role: str | None = None) -> dict:
    data = {"type": type_}
    if request_id is not None:
        data["requestId"] = str(request_id)
    if role:
        data["role"] = role
    return {"title": title, "body": body, "data": data}


# ── Transport ──────────────────────────────────────────────

async def send_push(token: str, message: dict) -> bool:
    """POST one message to the push gateway. Returns success, never raises."""
    if not settings.PUSH_SERVER_KEY:
        logger.debug("Push disabled (no server key); dropping %s", message["data"].get("type"))
        return False

    request_id = message["data"].get("requestId")
    link = f"{settings.APP_BASE_URL.rstrip('/')}/requests/{request_id}" if request_id else settings.APP_BASE_URL
    payload = {
        "to": token,
        "notification": {"title": message["title"], "body": message["body"]},
        "data": {**message["data"], "url": link},
        "webpush": {"fcm_options": {"link": link}},
        "android": {"priority": "high"},
    }
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(
                settings.PUSH_GATEWAY_URL,
                json=payload,
                headers={"Authorization": f"key={settings.PUSH_SERVER_KEY}"},
            )
            return resp.status_code == 200
    except Exception as e:
        logger.warning("⚠️ Push notification error: %s", e)
        return False


async def _deliver(user: User | None, message: dict) -> bool:
    if user is None or not user.notification_enabled or not user.fcm_token:
        return False
    return await send_push(user.fcm_token, message)


async def _participants(db: AsyncSession, request: DeliveryRequest) -> tuple[User | None, User | None]:
    sender = await db.get(User, request.sender_id)
    helper = await db.get(User, request.commuter_id) if request.commuter_id else None
    return sender, helper


# ── Event fan-out ──────────────────────────────────────────

async def notify_status_change(db: AsyncSession, request: DeliveryRequest, status: str) -> int:
    """Notify the sender and the approved helper. Returns pushes delivered."""
    type_ = TYPE_PAYMENT if status == PAYMENT_CONFIRMED else TYPE_STATUS_CHANGE
    try:
        sender, helper = await _participants(db, request)
        sent = 0
        for user, is_sender, role in ((sender, True, ROLE_SENDER), (helper, False, ROLE_HELPER)):
            if user is None:
                continue
            text = get_status_notification(status, is_sender, request)
            if await _deliver(user, build_message(text["title"], text["body"], request.id, type_, role)):
                sent += 1
        return sent
    except Exception as e:
        logger.warning("⚠️ Status notification for %s failed: %s", request.id, e)
        return 0


async def notify_arrival(db: AsyncSession, request: DeliveryRequest, location: str) -> int:
    try:
        sender, helper = await _participants(db, request)
        sent = 0
        for user, is_sender, role in ((sender, True, ROLE_SENDER), (helper, False, ROLE_HELPER)):
            if user is None:
                continue
            text = get_arrival_notification(location, is_sender)
            if await _deliver(user, build_message(text["title"], text["body"], request.id, TYPE_ARRIVAL, role)):
                sent += 1
        return sent
    except Exception as e:
        logger.warning("⚠️ Arrival notification for %s failed: %s", request.id, e)
        return 0


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Straight-line distance in km."""
    R = 6371  # Earth radius in km
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(R * c, 3)


async def _opted_in_commuters(db: AsyncSession, exclude_id: str | None = None) -> list[User]:
    result = await db.execute(
        select(User).where(
            User.notification_enabled.is_(True),
            User.fcm_token.is_not(None),
            User.role.in_(["commuter", "both"]),
        )
    )
    return [u for u in result.scalars().all() if u.id != exclude_id]


async def notify_nearby_request(db: AsyncSession, request: DeliveryRequest) -> int:
    """
    Tell opted-in commuters within NEARBY_RADIUS_KM of the pickup point about
    a new request. Commuters without a known position are skipped. Closest
    first, capped at NEARBY_NOTIFY_LIMIT.
    """
    if request.pickup_lat is None or request.pickup_lng is None:
        return 0
    try:
        candidates = []
        for user in await _opted_in_commuters(db, exclude_id=request.sender_id):
            if user.current_lat is None or user.current_lng is None:
                continue
            km = haversine_distance(request.pickup_lat, request.pickup_lng, user.current_lat, user.current_lng)
            if km <= settings.NEARBY_RADIUS_KM:
                candidates.append((km, user))
        candidates.sort(key=lambda pair: pair[0])

        sent = 0
        for _, user in candidates[: settings.NEARBY_NOTIFY_LIMIT]:
            message = build_message(
                "📦 New Delivery Task Available",
                f"A new delivery task is available near {request.pickup_pincode}. Check it out!",
                request.id,
                TYPE_NEARBY,
                ROLE_HELPER,
            )
            if await _deliver(user, message):
                sent += 1
        logger.info("📣 Nearby notice for %s: %d/%d commuters", request.id, sent, len(candidates))
        return sent
    except Exception as e:
        logger.warning("⚠️ Nearby notification for %s failed: %s", request.id, e)
        return 0


async def notify_open_requests_summary(db: AsyncSession) -> int:
    """Periodic digest: each opted-in commuter hears how many open requests lie nearby."""
    result = await db.execute(
        select(DeliveryRequest).where(
            DeliveryRequest.status.in_(["created", "requested"]),
            DeliveryRequest.pickup_lat.is_not(None),
            DeliveryRequest.pickup_lng.is_not(None),
        )
    )
    open_requests = result.scalars().all()
    if not open_requests:
        return 0

    sent = 0
    for user in await _opted_in_commuters(db):
        if user.current_lat is None or user.current_lng is None:
            continue
        count = sum(
            1 for r in open_requests
            if r.sender_id != user.id
            and haversine_distance(r.pickup_lat, r.pickup_lng, user.current_lat, user.current_lng)
            <= settings.NEARBY_RADIUS_KM
        )
        if not count:
            continue
        message = build_message(
            "🚚 New Delivery Tasks Nearby",
            f"{count} delivery task{'s' if count > 1 else ''} available near you!",
            None,
            TYPE_NEARBY,
            ROLE_HELPER,
        )
        if await _deliver(user, message):
            sent += 1
    return sent
