"""Tests for risk scoring, soft bans and incident review."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from conftest import RIDER_A, RIDER_B, SENDER
from db.database import utcnow
from models.audit import AuditLog
from models.incident import Incident
from models.user import User
from services import audit_log, auto_flagging, chat, lifecycle, ratings
from services.actor import SYSTEM_ACTOR
from services.errors import AutoFlagEnforced, Forbidden, NotFound, RateLimited, ValidationRejected


@pytest.mark.asyncio
async def test_five_tasks_today_scores_two_without_flag(db, sender, request_data):
    for _ in range(5):
        await lifecycle.create_request(db, dict(request_data), sender)
    with pytest.raises(RateLimited):
        await lifecycle.create_request(db, dict(request_data), sender)

    score = await auto_flagging.calculate_user_flag_score(db, SENDER)
    assert score.score == 2
    assert score.should_auto_flag is False
    assert [f["type"] for f in score.flags] == ["high_task_frequency"]
    assert score.flags[0]["count"] == 5


@pytest.mark.asyncio
async def test_requests_from_yesterday_do_not_count(db, make_request):
    midnight = auto_flagging.local_midnight_utc()
    for _ in range(5):
        await make_request(created_at=midnight - timedelta(minutes=5))
    assert await auto_flagging.count_tasks_today(db, SENDER) == 0


def test_local_midnight_is_singapore_day_start():
    # 2024-03-10 17:30 UTC is 01:30 on the 11th in Singapore
    assert auto_flagging.local_midnight_utc(datetime(2024, 3, 10, 17, 30)) == datetime(2024, 3, 10, 16, 0)


@pytest.mark.asyncio
async def test_three_blocked_attempts_reach_threshold(db, sender):
    for _ in range(3):
        await audit_log.log_blocked_attempt(db, SENDER, "restricted", {"itemDescription": "vodka"}, sender)
    await db.commit()

    score = await auto_flagging.calculate_user_flag_score(db, SENDER)
    assert score.score == 3
    assert score.should_auto_flag is True
    assert score.severity == "high"
    assert score.flags[0]["type"] == "multiple_blocked_attempts"


@pytest.mark.asyncio
async def test_two_blocked_attempts_score_nothing(db, sender):
    for _ in range(2):
        await audit_log.log_blocked_attempt(db, SENDER, "restricted", {}, sender)
    await db.commit()
    score = await auto_flagging.calculate_user_flag_score(db, SENDER)
    assert score.score == 0
    assert score.flags == []


@pytest.mark.asyncio
async def test_accepted_but_never_completed(db, make_request):
    for status in ("approved", "picked", "in_transit"):
        await make_request(sender_id=RIDER_B, status=status, commuter_id=RIDER_A)

    score = await auto_flagging.calculate_user_flag_score(db, RIDER_A)
    assert score.score == 2
    assert score.flags[0]["type"] == "low_completion_rate"

    await make_request(sender_id=RIDER_B, status="completed", commuter_id=RIDER_A)
    assert (await auto_flagging.calculate_user_flag_score(db, RIDER_A)).score == 0


@pytest.mark.asyncio
async def test_auto_flag_cancels_only_pre_pickup_requests(db, users, make_request):
    before = {}
    for status in ("created", "requested", "approved", "waiting_pickup", "pickup_otp_pending", "picked", "in_transit"):
        commuter = RIDER_A if status not in ("created", "requested") else None
        before[status] = await make_request(status=status, commuter_id=commuter)

    result = await auto_flagging.auto_flag_user(db, SENDER, "manual review", "high")

    assert result["success"] is True
    assert result["actions"][0] == "soft_ban_12h"
    assert len(result["actions"]) == 5

    for status, request in before.items():
        fresh = await lifecycle.get_request(db, request.id)
        if status in ("created", "requested", "approved", "waiting_pickup"):
            assert fresh.status == "cancelled"
            assert fresh.cancellation_reason == auto_flagging.AUTO_CANCEL_REASON
            assert f"cancelled_task_{request.id}" in result["actions"]
        else:
            assert fresh.status == status

    user = await db.get(User, SENDER)
    await db.refresh(user)
    assert user.is_soft_banned is True
    assert user.auto_flagged is True
    assert user.flag_severity == "high"
    assert abs((user.soft_ban_until - utcnow()) - timedelta(hours=12)) < timedelta(minutes=1)

    incident = (await db.execute(select(Incident).where(Incident.reported_user_id == SENDER))).scalar_one()
    assert str(incident.id) == result["incidentId"]
    assert incident.type == "auto_flagged"
    assert incident.status == "pending_review"
    assert incident.actions_taken == result["actions"]

    events = (await db.execute(
        select(AuditLog).where(AuditLog.collection == audit_log.TASK_EVENTS, AuditLog.event_type == "task_cancelled")
    )).scalars().all()
    assert len(events) == 4
    assert all(e.body["metadata"]["userId"] == SYSTEM_ACTOR.user_id for e in events)

    summary = (await db.execute(
        select(AuditLog).where(AuditLog.event_type == "user_auto_flagged")
    )).scalar_one()
    assert summary.body["autoFlagged"] is True


@pytest.mark.asyncio
async def test_auto_flag_unknown_user(db):
    with pytest.raises(NotFound):
        await auto_flagging.auto_flag_user(db, "ghost", "x")


@pytest.mark.asyncio
async def test_third_blocked_creation_bans_the_sender(db, users, sender, request_data):
    bad = {**request_data, "item_description": "cheap vodka"}
    for _ in range(3):
        with pytest.raises(ValidationRejected):
            await lifecycle.create_request(db, dict(bad), sender)

    user = await db.get(User, SENDER)
    await db.refresh(user)
    assert user.is_soft_banned is True
    assert await audit_log.count_blocked_attempts(db, SENDER) == 3

    with pytest.raises(AutoFlagEnforced) as exc:
        await lifecycle.create_request(db, dict(request_data), sender)
    assert exc.value.http_status == 403


@pytest.mark.asyncio
async def test_expired_ban_is_lifted_on_next_action(db, users):
    user = users[SENDER]
    user.is_soft_banned = True
    user.soft_ban_until = utcnow() - timedelta(minutes=1)
    await db.commit()

    lifted = await auto_flagging.ensure_not_banned(db, SENDER)
    assert lifted.is_soft_banned is False


@pytest.mark.asyncio
async def test_already_banned_user_is_not_flagged_twice(db, users, sender):
    await auto_flagging.auto_flag_user(db, SENDER, "first")
    for _ in range(3):
        await audit_log.log_blocked_attempt(db, SENDER, "restricted", {}, sender)
    await db.commit()

    score = await auto_flagging.evaluate_and_enforce(db, SENDER)
    assert score.should_auto_flag is True
    assert score.enforcement is None
    incidents = (await db.execute(select(Incident).where(Incident.reported_user_id == SENDER))).scalars().all()
    assert len(incidents) == 1


@pytest.mark.asyncio
async def test_confirmed_reports_feed_the_score(db, users):
    first = await auto_flagging.report_user(db, RIDER_A, SENDER, "rude at pickup")
    second = await auto_flagging.report_user(db, RIDER_B, SENDER, "no show")
    assert first.status == "pending_review"

    await auto_flagging.review_incident(db, first.id, "admin-1", "confirmed")
    assert (await auto_flagging.calculate_user_flag_score(db, SENDER)).score == 2

    reviewed = await auto_flagging.review_incident(db, second.id, "admin-1", "confirmed", note="repeat")
    assert reviewed.reviewed_by == "admin-1"

    user = await db.get(User, SENDER)
    await db.refresh(user)
    assert user.is_soft_banned is True


@pytest.mark.asyncio
async def test_report_guards(db, users):
    with pytest.raises(Forbidden):
        await auto_flagging.report_user(db, SENDER, SENDER, "me")
    with pytest.raises(NotFound):
        await auto_flagging.report_user(db, SENDER, "ghost", "who")


@pytest.mark.asyncio
async def test_lift_soft_ban(db, users):
    await auto_flagging.auto_flag_user(db, SENDER, "x")
    user = await auto_flagging.lift_soft_ban(db, SENDER, "admin-1")
    assert user.is_soft_banned is False
    assert await auto_flagging.ensure_not_banned(db, SENDER) is not None


async def _ban(db, users, user_id):
    user = users[user_id]
    user.is_soft_banned = True
    user.soft_ban_until = utcnow() + timedelta(hours=12)
    await db.commit()


@pytest.mark.asyncio
async def test_banned_sender_cannot_complete_or_rate(db, users, advance, sender):
    request = await advance("delivered")
    await _ban(db, users, SENDER)

    with pytest.raises(AutoFlagEnforced):
        await lifecycle.complete_request(db, request.id, sender)
    with pytest.raises(AutoFlagEnforced):
        await ratings.submit_rating(db, request.id, 5, sender)

    request = await lifecycle.get_request(db, request.id)
    assert request.status == "delivered"
    assert request.sender_rating is None


@pytest.mark.asyncio
async def test_banned_rider_is_refused_on_every_step(db, users, advance, rider_a):
    request = await advance("in_transit")
    await lifecycle.enable_tracking(db, request.id, rider_a)
    await _ban(db, users, RIDER_A)

    with pytest.raises(AutoFlagEnforced):
        await lifecycle.disable_tracking(db, request.id, rider_a)
    with pytest.raises(AutoFlagEnforced):
        await lifecycle.update_rider_location(db, request.id, 1.30, 103.85, rider_a)
    with pytest.raises(AutoFlagEnforced):
        await lifecycle.verify_drop_otp(db, request.id, request.otp_drop, rider_a)
    with pytest.raises(AutoFlagEnforced):
        await chat.send_chat_message(db, request.id, "almost there", rider_a)

    request = await lifecycle.get_request(db, request.id)
    assert request.status == "in_transit"
    assert request.tracking_enabled is True


@pytest.mark.asyncio
async def test_refused_action_is_journaled_but_not_scored(db, users, sender, request_data):
    await _ban(db, users, SENDER)
    for _ in range(3):
        with pytest.raises(AutoFlagEnforced):
            await lifecycle.create_request(db, dict(request_data), sender)

    entries = (await db.execute(
        select(AuditLog).where(
            AuditLog.collection == audit_log.BLOCKED_ATTEMPTS,
            AuditLog.event_type == audit_log.BANNED_ACTION_EVENT,
        )
    )).scalars().all()
    assert len(entries) == 3
    assert all(e.user_id == SENDER and e.body["autoFlagged"] is True for e in entries)
    assert entries[0].body["metadata"]["deviceFingerprint"] == sender.device_fingerprint
    assert all(audit_log.verify_entry(e) for e in entries)
    assert await audit_log.count_blocked_attempts(db, SENDER) == 0
