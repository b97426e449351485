"""
Physical Safety Ruleset — transport limits for items carried on MRT.

Rules (all evaluated, every violation reported):
  - weight < 1kg
  - width / height / length < 25cm each
  - quantity > 1: weight x quantity < 1kg
  - no refrigerated or frozen items
  - no leaking or potentially leaking items
  - fragile is advisory only

An attribute that was not supplied passes its own rule.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

MAX_WEIGHT_KG = 1.0
MAX_DIMENSION_CM = 25.0


@dataclass
class ItemAttributes:
    weight: float | None = None
    width: float | None = None
    height: float | None = None
    length: float | None = None
    quantity: int | None = None
    is_fragile: bool = False
    requires_refrigeration: bool = False
    requires_freezing: bool = False
    is_leaking: bool = False
    may_leak: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ItemAttributes":
        data = data or {}
        return cls(
            weight=data.get("weight"),
            width=data.get("width"),
            height=data.get("height"),
            length=data.get("length"),
            quantity=data.get("quantity"),
            is_fragile=data.get("isFragile", data.get("is_fragile", False)) is True,
            requires_refrigeration=data.get(
                "requiresRefrigeration", data.get("requires_refrigeration", False)
            ) is True,
            requires_freezing=data.get("requiresFreezing", data.get("requires_freezing", False)) is True,
            is_leaking=data.get("isLeaking", data.get("is_leaking", False)) is True,
            may_leak=data.get("mayLeak", data.get("may_leak", False)) is True,
        )


@dataclass
class PhysicalSafetyResult:
    is_valid: bool
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"isValid": self.is_valid, "reason": self.reason, "warnings": self.warnings}


def validate_item(attrs: ItemAttributes | dict[str, Any] | None) -> PhysicalSafetyResult:
    """Check structured item attributes against the MRT transport limits."""
    if not isinstance(attrs, ItemAttributes):
        attrs = ItemAttributes.from_dict(attrs)

    errors: list[str] = []
    warnings: list[str] = []

    if attrs.weight is not None and attrs.weight >= MAX_WEIGHT_KG:
        errors.append("Item weight must be less than 1kg")

    for name in ("width", "height", "length"):
        value = getattr(attrs, name)
        if value is not None and value >= MAX_DIMENSION_CM:
            errors.append(f"Item {name} must be less than 25cm")

    if attrs.quantity is not None and attrs.quantity > 1:
        total_weight = (attrs.weight or 0) * attrs.quantity
        if total_weight >= MAX_WEIGHT_KG:
            errors.append("Total weight of multiple items must be less than 1kg")

    if attrs.requires_refrigeration or attrs.requires_freezing:
        errors.append("Temperature-sensitive items are not allowed")

    if attrs.is_leaking or attrs.may_leak:
        errors.append("Leaking or potentially leaking items are not allowed")

    if attrs.is_fragile:
        warnings.append("Fragile item: rider must confirm careful handling")

    if errors:
        return PhysicalSafetyResult(is_valid=False, reason="; ".join(errors), warnings=warnings)
    return PhysicalSafetyResult(is_valid=True, warnings=warnings)
