"""
Request lifecycle transition table.

    created → requested → approved → waiting_pickup → pickup_otp_pending
            → picked → in_transit → delivered → completed

Side branches: cancelled (any pre-pickup state), expired (created only,
time-driven). Every legal move is one entry in TRANSITIONS; anything not
listed is rejected.
"""

from __future__ import annotations

from enum import Enum

from services.errors import InvalidTransition


class RequestStatus(str, Enum):
    CREATED = "created"
    REQUESTED = "requested"
    APPROVED = "approved"
    WAITING_PICKUP = "waiting_pickup"
    PICKUP_OTP_PENDING = "pickup_otp_pending"
    PICKED = "picked"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REJECTED = "rejected"


class Operation(str, Enum):
    REQUEST_TO_DELIVER = "request_to_deliver"
    APPROVE = "approve"
    REJECT = "reject"
    REJECT_ALL = "reject_all"
    CANCEL = "cancel"
    MARK_WAITING_PICKUP = "mark_waiting_pickup"
    INITIATE_PICKUP_OTP = "initiate_pickup_otp"
    VERIFY_PICKUP_OTP = "verify_pickup_otp"
    START_TRANSIT = "start_transit"
    VERIFY_DROP_OTP = "verify_drop_otp"
    COMPLETE = "complete"
    EXPIRE = "expire"


S = RequestStatus
Op = Operation

PRE_PICKUP = (S.CREATED, S.REQUESTED, S.APPROVED, S.WAITING_PICKUP)
ACCEPTED_ACTIVE = (S.APPROVED, S.WAITING_PICKUP, S.PICKUP_OTP_PENDING, S.PICKED, S.IN_TRANSIT)
TERMINAL = (S.COMPLETED, S.CANCELLED, S.EXPIRED, S.REJECTED)
TRACKABLE = (S.PICKED, S.IN_TRANSIT)

# (from_status, operation) -> to_status
TRANSITIONS: dict[tuple[RequestStatus, Operation], RequestStatus] = {
    (S.CREATED, Op.REQUEST_TO_DELIVER): S.REQUESTED,
    (S.REQUESTED, Op.REQUEST_TO_DELIVER): S.REQUESTED,

    (S.CREATED, Op.APPROVE): S.APPROVED,
    (S.REQUESTED, Op.APPROVE): S.APPROVED,

    # Rejecting one rider leaves the others queued; an emptied queue
    # drops back to created (see lifecycle.reject_rider)
    (S.CREATED, Op.REJECT): S.CREATED,
    (S.REQUESTED, Op.REJECT): S.REQUESTED,
    (S.CREATED, Op.REJECT_ALL): S.CREATED,
    (S.REQUESTED, Op.REJECT_ALL): S.CREATED,

    (S.CREATED, Op.CANCEL): S.CANCELLED,
    (S.REQUESTED, Op.CANCEL): S.CANCELLED,
    (S.APPROVED, Op.CANCEL): S.CANCELLED,
    (S.WAITING_PICKUP, Op.CANCEL): S.CANCELLED,

    (S.APPROVED, Op.MARK_WAITING_PICKUP): S.WAITING_PICKUP,
    (S.APPROVED, Op.INITIATE_PICKUP_OTP): S.PICKUP_OTP_PENDING,
    (S.WAITING_PICKUP, Op.INITIATE_PICKUP_OTP): S.PICKUP_OTP_PENDING,

    (S.WAITING_PICKUP, Op.VERIFY_PICKUP_OTP): S.PICKED,
    (S.PICKUP_OTP_PENDING, Op.VERIFY_PICKUP_OTP): S.PICKED,

    (S.PICKED, Op.START_TRANSIT): S.IN_TRANSIT,
    (S.IN_TRANSIT, Op.VERIFY_DROP_OTP): S.DELIVERED,
    (S.DELIVERED, Op.COMPLETE): S.COMPLETED,

    (S.CREATED, Op.EXPIRE): S.EXPIRED,
}


def allowed_from(operation: Operation) -> tuple[RequestStatus, ...]:
    """Every status from which `operation` is legal."""
    return tuple(src for (src, op) in TRANSITIONS if op == operation)


def next_status(status: str | RequestStatus, operation: Operation) -> RequestStatus:
    """Look up the target status, raising InvalidTransition for illegal moves."""
    try:
        current = RequestStatus(status)
    except ValueError:
        raise InvalidTransition(f"Unknown status: {status}", current_status=str(status))

    target = TRANSITIONS.get((current, operation))
    if target is None:
        raise InvalidTransition(
            f"Cannot {operation.value.replace('_', ' ')} a request that is {current.value}",
            current_status=current.value,
        )
    return target


def is_terminal(status: str | RequestStatus) -> bool:
    return RequestStatus(status) in TERMINAL
