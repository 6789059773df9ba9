"""Deterministic embeddings for tests.

Texts sharing words get nearby vectors, identical texts get identical vectors,
so semantic dedup can be exercised without a model.
"""

import hashlib
import random
import re

from ..utils import normalize_embedding

WHOLE_TEXT_WEIGHT = 4.0
TRIGRAM_WEIGHT = 0.5


def _term_vector(term: str, dimensions: int) -> list[float]:
    seed = int.from_bytes(hashlib.sha256(term.encode("utf-8")).digest()[:8], "big")
    rng = random.Random(seed)
    return [rng.gauss(0, 1) for _ in range(dimensions)]


def hash_to_embedding(text: str, dimensions: int = 384) -> list[float]:
    """Convert text to a unit vector built from hashed terms.

    Contributions: every word longer than two characters, character
    trigrams of the normalized text (so "Acme Corp" and "Acme Corp." stay
    close) and the whole text with a heavy weight.
    """
    embedding = [0.0] * dimensions
    normalized = " ".join(text.lower().split())

    def add_term(term: str, weight: float) -> None:
        for i, x in enumerate(_term_vector(term, dimensions)):
            embedding[i] += x * weight

    for word in set(re.findall(r"\w+", normalized)):
        if len(word) > 2:
            add_term(word, 1.0)

    for trigram in {normalized[i:i + 3] for i in range(len(normalized) - 2)}:
        add_term("#" + trigram, TRIGRAM_WEIGHT)

    if normalized:
        add_term(normalized, WHOLE_TEXT_WEIGHT)
    else:
        embedding = _term_vector("", dimensions)

    return normalize_embedding(embedding)
