"""Pydantic schemas for API request/response models.

Field names on the wire are camelCase (senderId, pickupPincode, ...) to match
the persisted request contract consumed by the apps.
"""

from __future__ import annotations
import uuid
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ── Enums ──────────────────────────────────────────────────

class Category(str, Enum):
    DOCUMENTS = "documents"
    ELECTRONICS = "electronics"
    CLOTHING = "clothing"
    BOOKS = "books"
    PERSONAL_ITEMS = "personal_items"
    OTHER = "other"


class UserRole(str, Enum):
    SENDER = "sender"
    COMMUTER = "commuter"
    BOTH = "both"


# ── Request Schemas ────────────────────────────────────────

class ItemAttributesIn(CamelModel):
    weight: float | None = Field(default=None, ge=0)
    width: float | None = Field(default=None, ge=0)
    height: float | None = Field(default=None, ge=0)
    length: float | None = Field(default=None, ge=0)
    quantity: int | None = Field(default=None, ge=1)
    is_fragile: bool | None = None
    requires_refrigeration: bool | None = None
    requires_freezing: bool | None = None
    is_leaking: bool | None = None
    may_leak: bool | None = None


class RequestCreate(CamelModel):
    pickup_pincode: str = Field(min_length=1, max_length=200)
    pickup_details: str = ""
    pickup_lat: float | None = None
    pickup_lng: float | None = None
    drop_pincode: str = Field(min_length=1, max_length=200)
    drop_details: str = ""
    drop_lat: float | None = None
    drop_lng: float | None = None
    # Left unconstrained so an empty description is audited like any other rejection
    item_description: str = ""
    category: Category = Category.OTHER
    item_photo: str | None = None
    item_attributes: ItemAttributesIn | None = None
    price_offered: float | None = Field(default=None, ge=0)
    user_confirmation: bool = False

    def to_service_data(self) -> dict:
        data = self.model_dump(exclude={"item_attributes"})
        data["category"] = self.category.value
        data["item_attributes"] = (
            self.item_attributes.model_dump(by_alias=True, exclude_none=True) if self.item_attributes else {}
        )
        return data


class RequestResponse(CamelModel):
    id: uuid.UUID
    sender_id: str
    commuter_id: str | None = None
    requested_riders: list[str] = []
    requested_by: str | None = None
    pickup_pincode: str
    pickup_details: str = ""
    pickup_lat: float | None = None
    pickup_lng: float | None = None
    drop_pincode: str
    drop_details: str = ""
    drop_lat: float | None = None
    drop_lng: float | None = None
    item_description: str
    category: str
    item_photo: str | None = None
    item_attributes: dict = {}
    price_offered: float | None = None
    status: str
    # Only ever filled in for the sender
    otp_pickup: str | None = None
    otp_drop: str | None = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    tracking_enabled: bool = False
    rider_lat: float | None = None
    rider_lng: float | None = None
    last_location_update: datetime | None = None
    payment_confirmed: bool = False
    sender_rating: int | None = None
    commuter_rating: int | None = None
    cancellation_reason: str | None = None

    @classmethod
    def for_viewer(cls, request, viewer_id: str) -> "RequestResponse":
        out = cls.model_validate(request)
        if viewer_id != request.sender_id:
            out.otp_pickup = None
            out.otp_drop = None
        return out


class RiderChoice(CamelModel):
    rider_id: str


class RejectRider(CamelModel):
    rider_id: str | None = None


class CancelRequest(CamelModel):
    reason: str | None = None


class OtpVerify(CamelModel):
    otp: str = Field(min_length=1, max_length=8)
    photos: list[str] = []


class Arrival(CamelModel):
    location: Literal["pickup", "drop"]


class LocationUpdate(CamelModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class PaymentConfirm(CamelModel):
    amount: float | None = Field(default=None, ge=0)


class RatingSubmit(CamelModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=1000)


# ── Chat Schemas ───────────────────────────────────────────

class ChatSend(CamelModel):
    message: str = Field(min_length=1, max_length=2000)
    photo_url: str | None = None


class ChatMessageResponse(CamelModel):
    id: uuid.UUID
    request_id: uuid.UUID
    sender_id: str
    receiver_id: str
    message: str
    photo_url: str | None = None
    created_at: datetime


# ── User Schemas ───────────────────────────────────────────

class UserRegister(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    phone: str | None = None
    email: str | None = None
    role: UserRole = UserRole.SENDER


class UserResponse(CamelModel):
    id: str
    name: str
    phone: str | None = None
    email: str | None = None
    role: str
    rating: float | None = None
    total_deliveries: int = 0
    is_soft_banned: bool = False
    soft_ban_until: datetime | None = None
    notification_enabled: bool = False
    created_at: datetime


class NotificationSettings(CamelModel):
    notification_enabled: bool
    fcm_token: str | None = None


# ── Trust & Safety Schemas ─────────────────────────────────

class UserReport(CamelModel):
    reported_user_id: str
    reason: str = Field(min_length=1, max_length=2000)
    request_id: str | None = None


class IncidentResponse(CamelModel):
    id: uuid.UUID
    type: str
    reported_user_id: str
    reporter_id: str | None = None
    request_id: str | None = None
    reason: str
    severity: str
    status: str
    auto_flagged: bool
    actions_taken: list[str] = []
    created_at: datetime
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    review_note: str | None = None


class IncidentReview(CamelModel):
    decision: Literal["confirmed", "dismissed"]
    note: str | None = None


class ManualFlag(CamelModel):
    reason: str = Field(min_length=1)
    severity: Literal["low", "medium", "high"] = "medium"
