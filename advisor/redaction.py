from __future__ import annotations

import re
import unicodedata

MAX_LABEL_LENGTH = 120
MAX_PREVIEW_LENGTH = 400

EMAIL_PATTERN = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
LONG_NUMBER_PATTERN = re.compile(r"(?<!\d)\d{5,}(?!\d)")
WHITESPACE_PATTERN = re.compile(r"\s+")


def redact_free_text(value: str | None, max_length: int = MAX_LABEL_LENGTH) -> str:
    """Mask e-mails and long digit runs, collapse whitespace and cap the length."""
    return _mask(value)[:max_length]


def preview_text(value: str | None, max_length: int = MAX_PREVIEW_LENGTH) -> str:
    if not value or not value.strip():
        return ""
    redacted = _mask(value)
    if len(redacted) <= max_length:
        return redacted
    return f"{redacted[:max_length]}..."


def normalize_for_match(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = re.sub(r"[^a-z0-9\s]", " ", stripped)
    return WHITESPACE_PATTERN.sub(" ", cleaned).strip()


def labels_match(left: str, right: str) -> bool:
    normalized_left = normalize_for_match(left)
    normalized_right = normalize_for_match(right)
    if not normalized_left or not normalized_right:
        return False
    return (
        normalized_left == normalized_right
        or normalized_left in normalized_right
        or normalized_right in normalized_left
    )


def _mask(value: str | None) -> str:
    if not value:
        return ""
    redacted = EMAIL_PATTERN.sub("[redacted-email]", value)
    redacted = LONG_NUMBER_PATTERN.sub("[redacted-number]", redacted)
    return WHITESPACE_PATTERN.sub(" ", redacted).strip()
