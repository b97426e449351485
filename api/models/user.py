"""User ORM model — senders and commuting riders share one table."""

from datetime import datetime

from sqlalchemy import String, Integer, Float, Boolean, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.database import Base, utcnow


class User(Base):
    __tablename__ = "users"

    # Identity comes from the external auth provider (uid)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    phone: Mapped[str | None] = mapped_column(String(20))
    email: Mapped[str | None] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(16), default="sender")  # sender, commuter, both
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)

    # Derived from completed requests, see services.ratings
    rating: Mapped[float | None] = mapped_column(Float)
    total_deliveries: Mapped[int] = mapped_column(Integer, default=0)

    # Enforcement
    is_soft_banned: Mapped[bool] = mapped_column(Boolean, default=False)
    soft_ban_until: Mapped[datetime | None] = mapped_column(DateTime)
    auto_flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_flag_reason: Mapped[str | None] = mapped_column(Text)
    auto_flagged_at: Mapped[datetime | None] = mapped_column(DateTime)
    flag_severity: Mapped[str | None] = mapped_column(String(16))

    # Notifications
    notification_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    fcm_token: Mapped[str | None] = mapped_column(Text)
    current_lat: Mapped[float | None] = mapped_column(Float)
    current_lng: Mapped[float | None] = mapped_column(Float)
    last_location_update: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
