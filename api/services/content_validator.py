"""
Content Validator — screens free text (item descriptions, chat messages)
against restricted keywords, patterns and suspicious phrases.

Pure and stateless: every matched term is returned so callers can log it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from services.restricted_items import (
    RESTRICTED_KEYWORDS,
    RESTRICTED_PATTERNS,
    SUSPICIOUS_PHRASES,
    SUSPICIOUS_MESSAGE_KEYWORDS,
)

REJECTION_REASON = "Item contains restricted or prohibited keywords"


@dataclass
class ContentValidationResult:
    is_valid: bool
    reason: str | None = None
    matched_keywords: list[str] = field(default_factory=list)
    matched_patterns: list[str] = field(default_factory=list)
    matched_phrases: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "isValid": self.is_valid,
            "reason": self.reason,
            "matchedKeywords": self.matched_keywords,
            "matchedPatterns": self.matched_patterns,
            "matchedPhrases": self.matched_phrases,
        }

    @property
    def all_matches(self) -> list[str]:
        """Keywords and phrases together, the list blocked attempts record."""
        return [*self.matched_keywords, *self.matched_phrases]


def validate_text(text: str | None) -> ContentValidationResult:
    """Screen text against all three restricted-content lists."""
    if not text or not isinstance(text, str):
        return ContentValidationResult(is_valid=False, reason="Item description is required")

    lowered = text.lower()
    keywords = [k for k in RESTRICTED_KEYWORDS if k.lower() in lowered]
    patterns = [p.pattern for p in RESTRICTED_PATTERNS if p.search(text)]
    phrases = [p for p in SUSPICIOUS_PHRASES if p.lower() in lowered]

    if keywords or patterns or phrases:
        return ContentValidationResult(
            is_valid=False,
            reason=REJECTION_REASON,
            matched_keywords=keywords,
            matched_patterns=patterns,
            matched_phrases=phrases,
        )
    return ContentValidationResult(is_valid=True)


def check_suspicious_message(message: str | None) -> ContentValidationResult:
    """Chat-only screen for wording that points at illegal activity."""
    if not message or not isinstance(message, str):
        return ContentValidationResult(is_valid=True)

    lowered = message.lower()
    matched = [k for k in SUSPICIOUS_MESSAGE_KEYWORDS if k in lowered]
    if matched:
        return ContentValidationResult(
            is_valid=False,
            reason="Message contains suspicious keywords indicating potential illegal activity",
            matched_phrases=matched,
        )
    return ContentValidationResult(is_valid=True)


_SG_PHONE = re.compile(r"^\+65[689]\d{7}$")


def validate_singapore_phone(phone: str | None) -> bool:
    """+65 followed by 8 digits starting with 6, 8 or 9."""
    return bool(phone) and bool(_SG_PHONE.match(phone))
