"""API configuration from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://commutedrop:commutedrop@db:5432/commutedrop"
    REDIS_URL: str = "redis://redis:6379/0"
    USE_REDIS_COUNTERS: bool = True
    LOG_LEVEL: str = "INFO"

    # Chat payloads in chat_logs are encrypted with a key derived from this
    LOG_ENCRYPTION_KEY: str = "default-key-change-in-production"

    # Push dispatcher (FCM-compatible gateway)
    PUSH_GATEWAY_URL: str = "https://fcm.googleapis.com/fcm/send"
    PUSH_SERVER_KEY: str = ""
    APP_BASE_URL: str = "/"

    # Per-user action quotas: {action: {max, windowMs}}
    RATE_LIMITS: dict[str, dict[str, int]] = {
        "createRequest": {"max": 5, "windowMs": HOUR_MS},
        "acceptRequest": {"max": 10, "windowMs": HOUR_MS},
        "sendMessage": {"max": 50, "windowMs": HOUR_MS},
        "reportUser": {"max": 3, "windowMs": DAY_MS},
        "adminAction": {"max": 100, "windowMs": HOUR_MS},
    }
    DEFAULT_RATE_LIMIT: dict[str, int] = {"max": 10, "windowMs": HOUR_MS}

    # Network-address throttle for pre-auth routes
    IP_THROTTLE_MAX: int = 10
    IP_THROTTLE_WINDOW_MS: int = 60 * 1000

    # Lifecycle
    REQUEST_TTL_MIN: int = 60

    # Auto-flagging
    SOFT_BAN_HOURS: int = 12
    MAX_TASKS_PER_DAY: int = 5
    MAX_ACCEPTED_BUT_NOT_COMPLETED: int = 3
    BLOCKED_ATTEMPTS_THRESHOLD: int = 3
    FLAG_SCORE_THRESHOLD: int = 3
    LOCAL_TIMEZONE: str = "Asia/Singapore"

    # Scheduled sweep
    SWEEP_INTERVAL_SEC: int = 300
    AUTO_FLAG_SWEEP_ENABLED: bool = True

    # Nearby-request notifications
    NEARBY_RADIUS_KM: float = 5.0
    NEARBY_NOTIFY_LIMIT: int = 10

    class Config:
        env_file = ".env"
        extra = "allow"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
