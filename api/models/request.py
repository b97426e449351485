"""DeliveryRequest ORM model — one peer-to-peer parcel handoff."""

import uuid
from datetime import datetime

from sqlalchemy import String, Integer, Float, Boolean, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.database import Base, JSONType, utcnow


class DeliveryRequest(Base):
    __tablename__ = "requests"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Rider assignment: a queue until the sender approves exactly one
    commuter_id: Mapped[str | None] = mapped_column(String(128), index=True)
    requested_riders: Mapped[list] = mapped_column(JSONType, default=list)
    requested_by: Mapped[str | None] = mapped_column(String(128))

    # Locations
    pickup_pincode: Mapped[str] = mapped_column(String(200), nullable=False)
    pickup_details: Mapped[str] = mapped_column(Text, default="")
    pickup_lat: Mapped[float | None] = mapped_column(Float)
    pickup_lng: Mapped[float | None] = mapped_column(Float)
    drop_pincode: Mapped[str] = mapped_column(String(200), nullable=False)
    drop_details: Mapped[str] = mapped_column(Text, default="")
    drop_lat: Mapped[float | None] = mapped_column(Float)
    drop_lng: Mapped[float | None] = mapped_column(Float)

    # Item
    item_description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), default="other")
    item_photo: Mapped[str | None] = mapped_column(Text)
    item_attributes: Mapped[dict] = mapped_column(JSONType, default=dict)
    price_offered: Mapped[float | None] = mapped_column(Float)

    # OTPs are generated once at creation and never rewritten
    otp_pickup: Mapped[str] = mapped_column(String(4), nullable=False)
    otp_drop: Mapped[str] = mapped_column(String(4), nullable=False)

    status: Mapped[str] = mapped_column(String(32), default="created", index=True)
    # Bumped by every guarded write; queue edits compare against it
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Tracking
    tracking_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    rider_lat: Mapped[float | None] = mapped_column(Float)
    rider_lng: Mapped[float | None] = mapped_column(Float)
    last_location_update: Mapped[datetime | None] = mapped_column(DateTime)

    # Closure
    payment_confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime)
    sender_rating: Mapped[int | None] = mapped_column(Integer)
    sender_rating_comment: Mapped[str | None] = mapped_column(Text)
    commuter_rating: Mapped[int | None] = mapped_column(Integer)
    commuter_rating_comment: Mapped[str | None] = mapped_column(Text)
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    picked_at: Mapped[datetime | None] = mapped_column(DateTime)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime)
