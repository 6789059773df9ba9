"""Fact deduplication: text-based and semantic duplicate checks.

Three strategies, tried in this order by the fact service:

1. Semantic: embed the new value and look for an active fact of the same
   entity and type above ``semantic_threshold`` cosine similarity.
2. Exact: normalized values are equal.
3. Fuzzy: normalized Levenshtein similarity. For temporal fact types a
   similarity in ``[temporal_min, temporal_max)`` means the value changed
   (supersede); otherwise a similarity at or above ``fuzzy_threshold``
   means the same value written differently (boost the existing fact).
"""

import logging
from typing import Optional

from ..interfaces import (
    BatchDedupResult,
    DedupCheck,
    EntityFact,
    FactAction,
    FactDraft,
    IEmbeddingService,
    SemanticMatch,
)
from ..utils import normalize_value, text_similarity
from .fact_store import FactStore

logger = logging.getLogger(__name__)

# Fact types expected to change over time
TEMPORAL_FACT_TYPES = frozenset({"position", "company", "department", "location", "status"})

DEFAULT_SEMANTIC_THRESHOLD = 0.83
DEFAULT_FUZZY_THRESHOLD = 0.8
DEFAULT_TEMPORAL_MIN = 0.3
DEFAULT_TEMPORAL_MAX = 0.95


class FactDeduplicationService:
    """Duplicate detection for entity facts.

    The text checks are synchronous and read the fact store directly. The
    semantic check awaits the embedding service; callers decide what to do
    when it fails.
    """

    def __init__(
        self,
        fact_store: FactStore,
        embedding_service: Optional[IEmbeddingService] = None,
        semantic_threshold: float = DEFAULT_SEMANTIC_THRESHOLD,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
        temporal_min: float = DEFAULT_TEMPORAL_MIN,
        temporal_max: float = DEFAULT_TEMPORAL_MAX,
        temporal_fact_types: Optional[frozenset[str]] = None,
    ):
        self.fact_store = fact_store
        self.embedding_service = embedding_service
        self.semantic_threshold = semantic_threshold
        self.fuzzy_threshold = fuzzy_threshold
        self.temporal_min = temporal_min
        self.temporal_max = temporal_max
        self.temporal_fact_types = (
            frozenset(temporal_fact_types) if temporal_fact_types is not None
            else TEMPORAL_FACT_TYPES
        )

    def is_temporal(self, fact_type: str) -> bool:
        return fact_type in self.temporal_fact_types

    def check_duplicate(self, entity_id: str, draft: FactDraft) -> DedupCheck:
        """Text-based check of one draft against the entity's active facts.

        Returns:
            DedupCheck whose action is SKIPPED (exact duplicate), SUPERSEDED
            (temporal value change), UPDATED (fuzzy duplicate) or CREATED.
        """
        normalized = normalize_value(draft.value)
        if not normalized:
            return DedupCheck(action=FactAction.CREATED, reason="No text value to compare")

        existing = self.fact_store.find_active(entity_id, draft.fact_type)
        return self._compare(normalized, draft.fact_type, existing)

    def _compare(self, normalized: str, fact_type: str, existing: list[EntityFact]) -> DedupCheck:
        best: Optional[EntityFact] = None
        best_score = 0.0
        for fact in existing:
            candidate = normalize_value(fact.value)
            if not candidate:
                continue
            if candidate == normalized:
                return DedupCheck(
                    action=FactAction.SKIPPED,
                    reason="Exact duplicate",
                    existing_fact=fact,
                    similarity=1.0,
                )
            score = text_similarity(normalized, candidate)
            if score > best_score:
                best, best_score = fact, score

        if best is None:
            return DedupCheck(action=FactAction.CREATED, reason="No duplicate found")

        if self.is_temporal(fact_type) and self.temporal_min <= best_score < self.temporal_max:
            logger.debug(
                "Temporal update for %s: '%s' (similarity %.2f)", fact_type, best.value, best_score
            )
            return DedupCheck(
                action=FactAction.SUPERSEDED,
                reason=f"Temporal update of {fact_type}",
                existing_fact=best,
                similarity=best_score,
            )

        if best_score >= self.fuzzy_threshold:
            return DedupCheck(
                action=FactAction.UPDATED,
                reason=f"Fuzzy duplicate (similarity {best_score:.2f})",
                existing_fact=best,
                similarity=best_score,
            )

        return DedupCheck(action=FactAction.CREATED, reason="No duplicate found")

    async def semantic_check(
        self, entity_id: str, value: str, fact_type: Optional[str] = None
    ) -> tuple[Optional[SemanticMatch], list[float]]:
        """Embed ``value`` and look for a semantically equivalent active fact.

        Returns:
            (match or None, embedding of ``value``). The embedding is returned
            so the caller can store it with a newly created fact.

        Raises:
            RuntimeError: No embedding service configured.
            Exception: Whatever the embedding service raises.
        """
        if self.embedding_service is None:
            raise RuntimeError("No embedding service configured")

        embedding = await self.embedding_service.embed(value)
        match = self.fact_store.find_most_similar(
            entity_id, embedding, self.semantic_threshold, fact_type=fact_type
        )
        if match is not None:
            logger.debug(
                "Semantic duplicate for '%s': fact %s (similarity %.3f)",
                value, match.fact.id, match.similarity,
            )
        return match, embedding

    def process_batch(self, entity_id: str, drafts: list[FactDraft]) -> BatchDedupResult:
        """Deduplicate a batch of drafts for one entity.

        Drafts with the same fact type and normalized value collapse into the
        one with the higher confidence. Survivors are then checked against
        the store. When several survivors would supersede the same stored
        fact only one of them is kept, so the entity ends with a single
        active value of that type.
        """
        result = BatchDedupResult()

        survivors: dict[str, FactDraft] = {}
        order: list[str] = []
        for draft in drafts:
            normalized = normalize_value(draft.value)
            if not normalized:
                # Structured-only drafts cannot be compared
                key = f"{draft.fact_type}:#{len(order)}"
            else:
                key = f"{draft.fact_type}:{normalized}"
            current = survivors.get(key)
            if current is None:
                survivors[key] = draft
                order.append(key)
                continue
            result.skipped_count += 1
            if (draft.confidence or 0.0) > (current.confidence or 0.0):
                survivors[key] = draft

        # One replacement per superseded fact; later drafts win ties
        replacements: dict[str, FactDraft] = {}
        for key in order:
            draft = survivors[key]
            check = self.check_duplicate(entity_id, draft)
            if check.action is FactAction.CREATED:
                result.to_create.append(draft)
            elif check.action is FactAction.SUPERSEDED:
                target = check.existing_fact.id
                current = replacements.get(target)
                if current is not None:
                    result.skipped_count += 1
                    if (draft.confidence or 0.0) < (current.confidence or 0.0):
                        continue
                replacements[target] = draft
            else:
                result.skipped_count += 1

        result.to_supersede = [(draft, target) for target, draft in replacements.items()]
        return result
