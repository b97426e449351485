"""
CommuteDrop — FastAPI Backend
Peer-to-peer parcel handoff between commuters, with the trust & safety core.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from db.database import async_session, engine, utcnow
from routers import admin, chat, requests, users
from services.errors import AutoFlagEnforced, DomainError, RateLimited
from services.sweeper import sweep_loop

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("🚀 CommuteDrop API starting...")
    sweeper = asyncio.create_task(sweep_loop(async_session))
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await engine.dispose()
    logger.info("🛑 CommuteDrop API shut down.")


app = FastAPI(
    title="CommuteDrop API",
    description="Peer-to-peer commuter delivery backend",
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ───────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Errors ─────────────────────────────────────────────────
@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(_seconds_until(exc.reset_time))
    elif isinstance(exc, AutoFlagEnforced):
        headers["Retry-After"] = str(_seconds_until(exc.ban_until))
    return JSONResponse(
        status_code=exc.http_status,
        content={"code": exc.code, "detail": exc.message, "details": exc.details},
        headers=headers,
    )


def _seconds_until(moment) -> int:
    return max(int((moment - utcnow()).total_seconds()), 1)


# ── Routers ────────────────────────────────────────────────
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(requests.router, prefix="/api/requests", tags=["Requests"])
app.include_router(chat.router, prefix="/api/chat", tags=["Chat"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "CommuteDrop API"}


@app.get("/health/db")
async def health_db():
    """Verify the DB connection."""
    from sqlalchemy import text
    try:
        async with engine.connect() as conn:
            count_row = (await conn.execute(text("SELECT COUNT(*) FROM requests"))).first()
        return {"status": "ok", "requests_count": count_row[0] if count_row else 0}
    except Exception as e:
        return {"status": "error", "detail": str(e)}
