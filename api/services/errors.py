"""Domain errors with stable machine-readable codes and HTTP mapping."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(eq=False)
class DomainError(Exception):
    code: str
    http_status: int
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class NotFound(DomainError):
    def __init__(self, message: str = "Not found", code: str = "NOT_FOUND"):
        super().__init__(code=code, http_status=404, message=message)


class Forbidden(DomainError):
    def __init__(self, message: str, code: str = "FORBIDDEN"):
        super().__init__(code=code, http_status=403, message=message)


class ValidationRejected(DomainError):
    """Content or physical-safety failure. Always logged as a blocked attempt."""

    def __init__(self, message: str, matched_keywords: list[str] | None = None, **details: Any):
        super().__init__(
            code="VALIDATION_REJECTED",
            http_status=422,
            message=message,
            details={"matchedKeywords": matched_keywords or [], **details},
        )


class RateLimited(DomainError):
    def __init__(self, action: str, remaining: int, reset_time: datetime):
        DomainError.__init__(
            self,
            code="RATE_LIMITED",
            http_status=429,
            message=f"Too many {action} requests. Try again later.",
            details={"action": action, "remaining": remaining, "resetTime": reset_time.isoformat()},
        )
        self.remaining = remaining
        self.reset_time = reset_time


class InvalidTransition(DomainError):
    def __init__(self, message: str, current_status: str | None = None, code: str = "INVALID_TRANSITION"):
        super().__init__(
            code=code,
            http_status=409,
            message=message,
            details={"currentStatus": current_status} if current_status else None,
        )


class ConcurrentApprovalConflict(InvalidTransition):
    """A second approval lost the race; the request is already taken."""

    def __init__(self, current_status: str | None = None):
        super().__init__(
            "This task has already been taken",
            current_status=current_status,
            code="REQUEST_ALREADY_TAKEN",
        )


class OtpMismatch(DomainError):
    def __init__(self, otp_type: str):
        super().__init__(
            code="OTP_MISMATCH",
            http_status=400,
            message=f"Incorrect {otp_type} OTP. Please try again.",
            details={"otpType": otp_type},
        )


class AutoFlagEnforced(DomainError):
    """Soft ban active; mutating operations fail closed until it expires."""

    def __init__(self, ban_until: datetime):
        DomainError.__init__(
            self,
            code="ACCOUNT_RESTRICTED",
            http_status=403,
            message="Your account is temporarily restricted. Please try again later.",
            details={"softBanUntil": ban_until.isoformat()},
        )
        self.ban_until = ban_until
