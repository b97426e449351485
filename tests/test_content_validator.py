"""Tests for the restricted-content screen and phone validation."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

from services.content_validator import (
    REJECTION_REASON,
    check_suspicious_message,
    validate_singapore_phone,
    validate_text,
)


def test_clean_description_passes():
    result = validate_text("Two paperback novels")
    assert result.is_valid is True
    assert result.reason is None
    assert result.all_matches == []


def test_keyword_match_is_case_insensitive():
    result = validate_text("Box of CIGARETTES")
    assert result.is_valid is False
    assert result.reason == REJECTION_REASON
    assert "cigarettes" in result.matched_keywords
    assert "cigarette" in result.matched_keywords


def test_pattern_catches_obfuscated_form():
    """'cigs' is not on the keyword list; the pattern screen still catches it."""
    result = validate_text("a few cigs")
    assert result.is_valid is False
    assert "cig" in result.matched_patterns


def test_suspicious_phrase_is_reported():
    result = validate_text("Books, please don't open the bag")
    assert result.is_valid is False
    assert "don't open" in result.matched_phrases
    assert "don't open" in result.all_matches


def test_every_match_is_returned():
    result = validate_text("cash and a knife")
    assert {"cash", "knife"} <= set(result.matched_keywords)
    assert len(result.matched_patterns) >= 2


def test_empty_text_is_rejected():
    for text in (None, ""):
        result = validate_text(text)
        assert result.is_valid is False
        assert result.reason == "Item description is required"


def test_as_dict_uses_wire_names():
    data = validate_text("vodka").as_dict()
    assert data["isValid"] is False
    assert "vodka" in data["matchedKeywords"]
    assert set(data) == {"isValid", "reason", "matchedKeywords", "matchedPatterns", "matchedPhrases"}


def test_suspicious_message():
    result = check_suspicious_message("Pay me CASH ONLY and don't tell anyone")
    assert result.is_valid is False
    assert set(result.matched_phrases) == {"cash only", "don't tell"}


def test_ordinary_message_passes():
    assert check_suspicious_message("I'm at exit B, wearing a blue cap").is_valid is True
    assert check_suspicious_message("").is_valid is True


def test_singapore_phone():
    assert validate_singapore_phone("+6591234567") is True
    assert validate_singapore_phone("+6561234567") is True
    assert validate_singapore_phone("+6571234567") is False
    assert validate_singapore_phone("91234567") is False
    assert validate_singapore_phone("+659123456") is False
    assert validate_singapore_phone(None) is False
