"""
Chat — messages between the sender and the approved helper of one request.

Every message, delivered or not, lands in chat_logs encrypted. A message the
screen rejects is never stored in `messages`; it is logged with
wasFiltered=True and recorded as a blocked attempt.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.message import ChatMessage
from services import audit_log, lifecycle
from services.actor import ActorContext
from services.auto_flagging import ensure_not_banned, evaluate_and_enforce
from services.content_validator import check_suspicious_message
from services.errors import DomainError, Forbidden, InvalidTransition, ValidationRejected
from services.rate_limiter import RateLimiter, get_rate_limiter
from services.transitions import RequestStatus

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000
CLOSED = (RequestStatus.CANCELLED.value, RequestStatus.EXPIRED.value, RequestStatus.REJECTED.value)


def _counterpart(request, user_id: str) -> str:
    if user_id == request.sender_id and request.commuter_id:
        return request.commuter_id
    if request.commuter_id and user_id == request.commuter_id:
        return request.sender_id
    raise Forbidden("Only the sender and the approved helper can chat on this request", code="NOT_PARTICIPANT")


async def send_chat_message(
    db: AsyncSession,
    request_id,
    message: str,
    actor: ActorContext,
    photo_url: str | None = None,
    limiter: RateLimiter | None = None,
) -> ChatMessage:
    await ensure_not_banned(db, actor.user_id, actor)
    await (limiter or get_rate_limiter()).enforce(actor.user_id, "sendMessage")

    request = await lifecycle.get_request(db, request_id)
    receiver_id = _counterpart(request, actor.user_id)
    if request.status in CLOSED:
        raise InvalidTransition("Chat is closed for this request", current_status=request.status)

    text = (message or "").strip()[:MAX_MESSAGE_LENGTH]
    if not text:
        raise DomainError(code="EMPTY_MESSAGE", http_status=422, message="Message cannot be empty")
    screen = check_suspicious_message(text)
    if not screen.is_valid:
        await audit_log.log_chat_message(db, request.id, actor.user_id, receiver_id, text, actor, was_filtered=True)
        await audit_log.log_blocked_attempt(
            db, actor.user_id, screen.reason,
            {"eventType": "message_blocked", "taskId": str(request.id), "matchedKeywords": screen.all_matches},
            actor,
        )
        await db.commit()
        logger.warning("🚫 Filtered chat message from %s on %s: %s", actor.user_id, request.id, screen.all_matches)
        try:
            await evaluate_and_enforce(db, actor.user_id)
        except Exception as e:
            logger.error("❌ Flag evaluation after filtered message failed for %s: %s", actor.user_id, e)
        raise ValidationRejected(screen.reason, matched_keywords=screen.all_matches)

    chat = ChatMessage(
        request_id=request.id,
        sender_id=actor.user_id,
        receiver_id=receiver_id,
        message=text,
        photo_url=photo_url,
    )
    db.add(chat)
    await audit_log.log_chat_message(db, request.id, actor.user_id, receiver_id, text, actor, was_filtered=False)
    await db.commit()
    return chat


async def list_messages(db: AsyncSession, request_id, actor: ActorContext, limit: int = 200) -> list[ChatMessage]:
    request = await lifecycle.get_request(db, request_id)
    _counterpart(request, actor.user_id)
    result = await db.execute(
        select(ChatMessage)
        .where(ChatMessage.request_id == request.id)
        .order_by(ChatMessage.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())
