"""
Text Normalization

Canonical form and dedup key for user-entered descriptions.
Two descriptions that differ only in case, punctuation or spacing map to
the same hash and therefore to one embedding and one recommendation.
"""

from __future__ import annotations

import hashlib
import re
from typing import Final

from bookmatch.core.errors import ValidationError

# Everything except ASCII letters, digits, Polish letters and the space
_DISALLOWED: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9ąćęłńóśżź ]+")
_WHITESPACE: Final[re.Pattern[str]] = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """
    Normalize user text for deduplication.

    Lowercases, replaces special characters with spaces (keeping letters,
    digits and Polish diacritics), collapses whitespace runs and trims.

    Raises:
        ValidationError: If ``text`` is not a string.
    """
    if not isinstance(text, str):
        raise ValidationError(f"Expected str, got {type(text).__name__}")

    text = text.lower()
    text = _DISALLOWED.sub(" ", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def generate_hash(normalized_text: str) -> str:
    """SHA-256 hex digest (64 chars) of already-normalized text."""
    if not isinstance(normalized_text, str):
        raise ValidationError(f"Expected str, got {type(normalized_text).__name__}")
    return hashlib.sha256(normalized_text.encode("utf-8")).hexdigest()


def text_hash(text: str) -> str:
    """Dedup key of raw text: ``generate_hash(normalize_text(text))``."""
    return generate_hash(normalize_text(text))
