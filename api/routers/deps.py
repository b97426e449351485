"""Shared FastAPI dependencies: acting user, admin gate, pre-auth throttle."""

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from models.user import User
from services.actor import ActorContext, extract_ip_address, generate_device_fingerprint
from services.errors import Forbidden
from services.rate_limiter import get_ip_throttle, get_rate_limiter


def get_actor(
    request: Request,
    x_user_id: str = Header(..., description="uid from the auth provider"),
    x_device_fingerprint: str | None = Header(None),
) -> ActorContext:
    """Identity is established upstream; we only read it and collect device metadata."""
    headers = request.headers
    user_agent = headers.get("user-agent", "")
    fingerprint = x_device_fingerprint or generate_device_fingerprint({
        "userAgent": user_agent,
        "platform": headers.get("sec-ch-ua-platform"),
        "language": headers.get("accept-language"),
    })
    return ActorContext(
        user_id=x_user_id,
        device_fingerprint=fingerprint,
        ip_address=extract_ip_address(headers, request.client.host if request.client else None),
        user_agent=user_agent,
    )


async def get_admin(
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> ActorContext:
    user = await db.get(User, actor.user_id)
    if user is None or not user.is_admin:
        raise Forbidden("Admin access required", code="ADMIN_ONLY")
    await get_rate_limiter().enforce(actor.user_id, "adminAction")
    return actor


async def ip_throttled(request: Request) -> None:
    """Network-address throttle for endpoints reachable before a profile exists."""
    ip = extract_ip_address(request.headers, request.client.host if request.client else None)
    await get_ip_throttle().enforce(ip, request.url.path)
