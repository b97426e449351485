"""Tests for request-scoped chat and the suspicious-message screen."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import pytest
from sqlalchemy import select

from conftest import RIDER_A, SENDER
from models.audit import AuditLog
from models.message import ChatMessage
from services import audit_log, chat, lifecycle
from services.errors import DomainError, Forbidden, InvalidTransition, ValidationRejected


@pytest.mark.asyncio
async def test_participants_can_chat(db, advance, sender, rider_a):
    request = await advance("approved")
    first = await chat.send_chat_message(db, request.id, "I'm at exit A", rider_a)
    await chat.send_chat_message(db, request.id, "  Coming down now  ", sender)

    assert first.receiver_id == SENDER
    messages = await chat.list_messages(db, request.id, sender)
    assert [(m.sender_id, m.message) for m in messages] == [
        (RIDER_A, "I'm at exit A"),
        (SENDER, "Coming down now"),
    ]

    logs = (await db.execute(
        select(AuditLog).where(AuditLog.collection == audit_log.CHAT_LOGS)
    )).scalars().all()
    assert len(logs) == 2
    assert all(log.body["wasFiltered"] is False for log in logs)
    assert all("exit" not in log.body["messageEncrypted"] for log in logs)


@pytest.mark.asyncio
async def test_outsiders_cannot_chat(db, advance, rider_b):
    request = await advance("approved")
    with pytest.raises(Forbidden):
        await chat.send_chat_message(db, request.id, "hello", rider_b)
    with pytest.raises(Forbidden):
        await chat.list_messages(db, request.id, rider_b)


@pytest.mark.asyncio
async def test_no_chat_before_a_helper_is_approved(db, sender, request_data):
    request = await lifecycle.create_request(db, dict(request_data), sender)
    with pytest.raises(Forbidden):
        await chat.send_chat_message(db, request.id, "anyone?", sender)


@pytest.mark.asyncio
async def test_suspicious_message_is_filtered_and_logged(db, advance, sender):
    request = await advance("approved")
    with pytest.raises(ValidationRejected) as exc:
        await chat.send_chat_message(db, request.id, "Pay me cash only, off platform", sender)
    assert set(exc.value.details["matchedKeywords"]) == {"cash only", "off platform"}

    stored = (await db.execute(select(ChatMessage))).scalars().all()
    assert stored == []

    log = (await db.execute(
        select(AuditLog).where(AuditLog.collection == audit_log.CHAT_LOGS)
    )).scalar_one()
    assert log.body["wasFiltered"] is True

    blocked = (await db.execute(
        select(AuditLog).where(AuditLog.collection == audit_log.BLOCKED_ATTEMPTS)
    )).scalar_one()
    assert blocked.event_type == "message_blocked"
    assert blocked.task_id == str(request.id)

    bundle = await audit_log.export_logs(db, "admin-1", task_id=str(request.id))
    assert bundle["chatLogs"][0]["messageDecrypted"] == "Pay me cash only, off platform"


@pytest.mark.asyncio
async def test_chat_closed_after_cancel(db, advance, sender):
    request = await advance("approved")
    await lifecycle.cancel_request(db, request.id, sender)
    with pytest.raises(InvalidTransition):
        await chat.send_chat_message(db, request.id, "still there?", sender)


@pytest.mark.asyncio
async def test_long_messages_truncated(db, advance, sender):
    request = await advance("approved")
    sent = await chat.send_chat_message(db, request.id, "a" * 5000, sender)
    assert len(sent.message) == chat.MAX_MESSAGE_LENGTH


@pytest.mark.asyncio
async def test_blank_message_is_rejected(db, advance, sender):
    request = await advance("approved")
    with pytest.raises(DomainError) as exc:
        await chat.send_chat_message(db, request.id, "   \n ", sender)
    assert exc.value.code == "EMPTY_MESSAGE"

    assert (await db.execute(select(ChatMessage))).scalars().all() == []
    logs = (await db.execute(
        select(AuditLog).where(AuditLog.collection == audit_log.CHAT_LOGS)
    )).scalars().all()
    assert logs == []
