"""Who is acting: user id plus device and network metadata for audit entries."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping

SYSTEM_USER_ID = "system"


@dataclass(frozen=True)
class ActorContext:
    user_id: str
    device_fingerprint: str = "unknown"
    ip_address: str = "unknown"
    user_agent: str = ""

    def metadata(self, include_user: bool = True) -> dict[str, Any]:
        meta = {
            "deviceFingerprint": self.device_fingerprint,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
        }
        if include_user:
            meta["userId"] = self.user_id
        return meta


SYSTEM_ACTOR = ActorContext(
    user_id=SYSTEM_USER_ID,
    device_fingerprint="system",
    ip_address="system",
    user_agent="auto-flagging-engine",
)


def generate_device_fingerprint(device_info: Mapping[str, Any]) -> str:
    """SHA-256 over a fixed set of device traits. IP is deliberately excluded."""
    fingerprint = json.dumps({
        "userAgent": device_info.get("userAgent") or "",
        "platform": device_info.get("platform") or "",
        "language": device_info.get("language") or "",
        "timezone": device_info.get("timezone") or "",
        "screenResolution": device_info.get("screenResolution") or "",
    }, separators=(",", ":"))
    return hashlib.sha256(fingerprint.encode()).hexdigest()


def hash_device_id(device_id: str) -> str:
    return hashlib.sha256(device_id.encode()).hexdigest()


def extract_ip_address(headers: Mapping[str, str], client_host: str | None = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return headers.get("x-real-ip") or client_host or "unknown"
