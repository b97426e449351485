"""Per-request chat between sender and helper."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from routers.deps import get_actor
from schemas import ChatMessageResponse, ChatSend
from services import chat
from services.actor import ActorContext

router = APIRouter()


@router.post("/{request_id}/messages", response_model=ChatMessageResponse, status_code=201)
async def send_message(
    request_id: uuid.UUID,
    data: ChatSend,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await chat.send_chat_message(db, request_id, data.message, actor, photo_url=data.photo_url)


@router.get("/{request_id}/messages", response_model=list[ChatMessageResponse])
async def list_messages(
    request_id: uuid.UUID,
    limit: int = 200,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await chat.list_messages(db, request_id, actor, limit=limit)
