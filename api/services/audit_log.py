"""
Immutable Audit Log — append-only, hash-stamped records for liability.

Every entry:
  - gets a logId and server timestamp
  - is serialized canonically (sorted keys, compact JSON)
  - is stamped with SHA-256 of that serialization as hashSignature
  - is inserted once; there is no update or delete path

Collections:
  task_logs         task creation snapshots
  task_events       status transitions
  chat_logs         chat messages (body encrypted at rest)
  payment_logs      user-asserted PayNow confirmations
  blocked_attempts  requests/messages rejected by safety rules

Hashes cover a single entry only; they are not chained across entries.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import utcnow
from models.audit import AuditLog
from services.actor import ActorContext

logger = logging.getLogger(__name__)

TASK_LOGS = "task_logs"
TASK_EVENTS = "task_events"
CHAT_LOGS = "chat_logs"
PAYMENT_LOGS = "payment_logs"
BLOCKED_ATTEMPTS = "blocked_attempts"

COLLECTIONS = (TASK_LOGS, TASK_EVENTS, CHAT_LOGS, PAYMENT_LOGS, BLOCKED_ATTEMPTS)

PAYMENT_METHOD = "PayNow"
DECRYPTION_ERROR = "[DECRYPTION_ERROR]"

# Blocked-attempt entries written by enforcement itself; never scored
AUTO_FLAG_EVENT = "user_auto_flagged"
BANNED_ACTION_EVENT = "banned_action_blocked"
ENFORCEMENT_EVENTS = (AUTO_FLAG_EVENT, BANNED_ACTION_EVENT)


# ── Serialization & hashing ────────────────────────────────

def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(body: dict[str, Any]) -> str:
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=_json_default, ensure_ascii=False)


def compute_hash(body: dict[str, Any]) -> str:
    """SHA-256 of the canonical serialization, excluding any hashSignature."""
    unsigned = {k: v for k, v in body.items() if k != "hashSignature"}
    return hashlib.sha256(canonical_json(unsigned).encode("utf-8")).hexdigest()


def verify_entry(entry: AuditLog) -> bool:
    """Recompute an entry's hash and compare with the stored signature."""
    return compute_hash(entry.body) == entry.hash_signature


# ── Encryption (chat payloads) ─────────────────────────────

def _fernet(passphrase: str | None = None) -> Fernet:
    digest = hashlib.sha256((passphrase or settings.LOG_ENCRYPTION_KEY).encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_text(text: str, passphrase: str | None = None) -> str:
    return _fernet(passphrase).encrypt(text.encode("utf-8")).decode("ascii")


def decrypt_text(token: str, passphrase: str | None = None) -> str:
    return _fernet(passphrase).decrypt(token.encode("ascii")).decode("utf-8")


# ── Append ─────────────────────────────────────────────────

async def append(
    db: AsyncSession,
    collection: str,
    payload: dict[str, Any],
    *,
    task_id: str | None = None,
    user_id: str | None = None,
) -> AuditLog:
    """
    Write one entry. The caller owns the transaction: the entry is flushed
    here and committed together with whatever state change it records.
    """
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown audit collection: {collection}")

    now = utcnow()
    log_id = str(uuid.uuid4())
    record = {
        **payload,
        "logId": log_id,
        "timestamp": now,
        "createdAt": now,
    }
    # Round-trip through JSON so the stored body is exactly what was hashed
    body = json.loads(canonical_json(record))
    entry = AuditLog(
        log_id=log_id,
        collection=collection,
        event_type=body.get("eventType", collection),
        task_id=str(task_id) if task_id is not None else None,
        user_id=user_id,
        timestamp=now,
        body=body,
        hash_signature=compute_hash(body),
    )
    db.add(entry)
    await db.flush()
    return entry


# ── Specialized constructors ───────────────────────────────

def _location(pincode, details, lat, lng) -> dict[str, Any]:
    return {"pincode": pincode, "details": details, "lat": lat, "lng": lng}


async def log_task_creation(
    db: AsyncSession,
    request,
    actor: ActorContext,
    item_validation: dict | None = None,
    mrt_validation: dict | None = None,
    user_confirmation: bool = False,
) -> AuditLog:
    payload = {
        "eventType": "task_created",
        "taskId": str(request.id),
        "senderId": request.sender_id,
        "itemDescription": request.item_description,
        "category": request.category,
        "itemPhoto": request.item_photo,
        "itemAttributes": request.item_attributes or {},
        "priceOffered": request.price_offered,
        "pickupLocation": _location(
            request.pickup_pincode, request.pickup_details, request.pickup_lat, request.pickup_lng,
        ),
        "dropLocation": _location(
            request.drop_pincode, request.drop_details, request.drop_lat, request.drop_lng,
        ),
        "expiresAt": request.expires_at,
        "metadata": {**actor.metadata(), "timestamp": utcnow()},
        "validationResults": {
            "itemValidation": item_validation,
            "mrtValidation": mrt_validation,
            "userConfirmation": user_confirmation,
        },
    }
    return await append(db, TASK_LOGS, payload, task_id=str(request.id), user_id=request.sender_id)


async def log_task_event(
    db: AsyncSession,
    task_id,
    event_type: str,
    event_data: dict[str, Any],
    actor: ActorContext,
) -> AuditLog:
    payload = {
        "eventType": event_type,
        "taskId": str(task_id),
        "senderId": event_data.get("senderId"),
        "commuterId": event_data.get("commuterId"),
        "fromStatus": event_data.get("fromStatus"),
        "status": event_data.get("status"),
        "location": event_data.get("location"),
        "photos": event_data.get("photos"),
        "otpVerified": bool(event_data.get("otpVerified", False)),
        "details": event_data.get("details"),
        "metadata": {**actor.metadata(), "timestamp": utcnow()},
    }
    return await append(db, TASK_EVENTS, payload, task_id=str(task_id), user_id=actor.user_id)


async def log_chat_message(
    db: AsyncSession,
    task_id,
    sender_id: str,
    receiver_id: str,
    message: str,
    actor: ActorContext,
    was_filtered: bool = False,
) -> AuditLog:
    payload = {
        "eventType": "chat_message",
        "taskId": str(task_id),
        "senderId": sender_id,
        "receiverId": receiver_id,
        "messageEncrypted": encrypt_text(message),
        "messageLength": len(message),
        "wasFiltered": was_filtered,
        "metadata": {**actor.metadata(include_user=False), "timestamp": utcnow()},
    }
    return await append(db, CHAT_LOGS, payload, task_id=str(task_id), user_id=sender_id)


async def log_payment_confirmation(
    db: AsyncSession,
    task_id,
    sender_id: str,
    commuter_id: str | None,
    amount: float | None,
    actor: ActorContext,
) -> AuditLog:
    payload = {
        "eventType": "payment_confirmation",
        "taskId": str(task_id),
        "senderId": sender_id,
        "commuterId": commuter_id,
        "amount": amount or None,
        "paymentMethod": PAYMENT_METHOD,
        "confirmed": True,
        "metadata": {**actor.metadata(), "timestamp": utcnow()},
    }
    return await append(db, PAYMENT_LOGS, payload, task_id=str(task_id), user_id=actor.user_id)


async def log_blocked_attempt(
    db: AsyncSession,
    user_id: str,
    reason: str,
    task_data: dict[str, Any],
    actor: ActorContext,
) -> AuditLog:
    """Record a rejected attempt with the fields a successful creation would carry."""
    payload = {
        "eventType": task_data.get("eventType", "task_blocked"),
        "userId": user_id,
        "reason": reason,
        "itemDescription": task_data.get("itemDescription"),
        "category": task_data.get("category"),
        "itemAttributes": task_data.get("itemAttributes"),
        "matchedKeywords": task_data.get("matchedKeywords") or [],
        "matchedPatterns": task_data.get("matchedPatterns") or [],
        "taskData": {
            "pickupPincode": task_data.get("pickupPincode"),
            "pickupDetails": task_data.get("pickupDetails"),
            "dropPincode": task_data.get("dropPincode"),
            "dropDetails": task_data.get("dropDetails"),
            "priceOffered": task_data.get("priceOffered"),
        },
        "autoFlagged": bool(task_data.get("autoFlagged", False)),
        "metadata": {**actor.metadata(include_user=False), "timestamp": utcnow()},
    }
    return await append(db, BLOCKED_ATTEMPTS, payload, task_id=task_data.get("taskId"), user_id=user_id)


async def count_blocked_attempts(db: AsyncSession, user_id: str) -> int:
    """Blocked attempts attributed to a user, excluding enforcement entries."""
    result = await db.execute(
        select(func.count()).select_from(AuditLog).where(
            AuditLog.collection == BLOCKED_ATTEMPTS,
            AuditLog.user_id == user_id,
            AuditLog.event_type.notin_(ENFORCEMENT_EVENTS),
        )
    )
    return result.scalar_one()


# ── Compliance export ──────────────────────────────────────

async def _fetch(
    db: AsyncSession,
    collection: str,
    task_id: str | None,
    user_id: str | None,
    start: datetime | None,
    end: datetime | None,
) -> list[AuditLog]:
    query = select(AuditLog).where(AuditLog.collection == collection)
    if task_id:
        query = query.where(AuditLog.task_id == str(task_id))
    if user_id:
        query = query.where(AuditLog.user_id == user_id)
    if start:
        query = query.where(AuditLog.timestamp >= start)
    if end:
        query = query.where(AuditLog.timestamp <= end)
    result = await db.execute(query.order_by(AuditLog.timestamp.asc()))
    return list(result.scalars().all())


def _export_row(entry: AuditLog) -> dict[str, Any]:
    return {"id": entry.log_id, **entry.body, "hashSignature": entry.hash_signature}


async def export_logs(
    db: AsyncSession,
    exported_by: str,
    task_id: str | None = None,
    user_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    """
    Read-only compliance bundle across all collections. This is the only
    read path that decrypts chat content.
    """
    bundle: dict[str, Any] = {
        "exportedAt": utcnow().isoformat(),
        "exportedBy": exported_by,
        "taskLogs": [],
        "taskEvents": [],
        "chatLogs": [],
        "paymentLogs": [],
        "blockedAttempts": [],
    }

    for entry in await _fetch(db, TASK_LOGS, task_id, user_id, start, end):
        bundle["taskLogs"].append(_export_row(entry))
    for entry in await _fetch(db, TASK_EVENTS, task_id, user_id, start, end):
        bundle["taskEvents"].append(_export_row(entry))
    for entry in await _fetch(db, PAYMENT_LOGS, task_id, user_id, start, end):
        bundle["paymentLogs"].append(_export_row(entry))
    for entry in await _fetch(db, BLOCKED_ATTEMPTS, task_id, user_id, start, end):
        bundle["blockedAttempts"].append(_export_row(entry))

    fernet = _fernet()
    for entry in await _fetch(db, CHAT_LOGS, task_id, user_id, start, end):
        row = _export_row(entry)
        token = row.get("messageEncrypted")
        if token:
            try:
                row["messageDecrypted"] = fernet.decrypt(token.encode("ascii")).decode("utf-8")
            except InvalidToken:
                logger.warning("Chat log %s could not be decrypted", entry.log_id)
                row["messageDecrypted"] = DECRYPTION_ERROR
        bundle["chatLogs"].append(row)

    logger.info(
        "Compliance export by %s: task=%s user=%s → %d task logs, %d events, %d chats, %d blocked",
        exported_by, task_id, user_id, len(bundle["taskLogs"]), len(bundle["taskEvents"]),
        len(bundle["chatLogs"]), len(bundle["blockedAttempts"]),
    )
    return bundle
