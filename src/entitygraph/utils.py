"""Shared utility functions for the entity graph.

This module provides the text and vector helpers used by the dedup
engine, the inference engine and the embedding services so they all
agree on what "normalized" and "similar" mean.
"""

import math
import re
from datetime import datetime, timezone
from typing import Optional

from rapidfuzz.distance import Levenshtein

# Characters kept by normalize_value besides word chars and whitespace
_NON_VALUE_CHARS = re.compile(r"[^\w\s@.+\-]")
_WHITESPACE = re.compile(r"\s+")

# Quote characters stripped from organization names
_QUOTES = re.compile(r"[\"'«»“”„‘’]")

# Legal-form tokens (Russian and international) stripped from organization names
_LEGAL_FORMS = re.compile(
    r"\b(ооо|оао|зао|пао|ао|ип|нко|гуп|муп|фгуп|llc|inc|corp|ltd|gmbh|ag)\b\.?",
    re.IGNORECASE,
)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp (None passes through)."""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def normalize_embedding(embedding: list[float]) -> list[float]:
    """Normalize embedding to unit length for consistent similarity math.

    Args:
        embedding: Vector of floats representing an embedding.

    Returns:
        Normalized embedding with unit length (L2 norm = 1).
        Returns the original embedding if it has zero magnitude.
    """
    norm = math.sqrt(sum(x * x for x in embedding))
    if norm == 0:
        return embedding
    return [x / norm for x in embedding]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors.

    Zero vectors never match anything and return 0.0.

    Raises:
        ValueError: If vectors have different dimensions.
    """
    if len(a) != len(b):
        raise ValueError(f"Embedding dimensions don't match: {len(a)} vs {len(b)}")

    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot_product / (norm_a * norm_b)


def normalize_value(value: Optional[str]) -> str:
    """Normalize a fact value for comparison.

    Lowercases, trims, collapses whitespace and strips everything except
    word characters, whitespace and the symbols common in contacts
    (``@ . + -``).
    """
    if not value:
        return ""
    normalized = _WHITESPACE.sub(" ", value.lower().strip())
    return _NON_VALUE_CHARS.sub("", normalized)


def text_similarity(a: str, b: str) -> float:
    """Levenshtein similarity of two already-normalized strings.

    Returns 1.0 for equal strings and 0.0 when either is empty or when the
    lengths differ by more than half of the longer one.
    """
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    longer = max(len(a), len(b))
    if abs(len(a) - len(b)) > longer * 0.5:
        return 0.0

    return 1.0 - Levenshtein.distance(a, b) / longer


def normalize_company_name(name: Optional[str]) -> str:
    """Normalize an organization name for matching.

    Strips quotes and legal-form tokens (LLC, Inc, ООО, ...), lowercases
    and collapses whitespace.
    """
    if not name:
        return ""
    normalized = _QUOTES.sub("", name.lower())
    normalized = _LEGAL_FORMS.sub(" ", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def name_similarity(a: str, b: str) -> float:
    """Plain normalized Levenshtein similarity for organization names."""
    if a == b:
        return 1.0
    longer = max(len(a), len(b))
    if longer == 0:
        return 0.0
    return 1.0 - Levenshtein.distance(a, b) / longer


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so user input matches literally (ESCAPE '\\')."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
