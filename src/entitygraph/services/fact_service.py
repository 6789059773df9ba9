"""Fact creation through the dedup pipeline."""

import logging
from typing import Optional

from ..exceptions import ConflictError
from ..interfaces import (
    BatchCreateResult,
    CreateFactResult,
    EntityFact,
    FactAction,
    FactDraft,
    FactRank,
    FusionAction,
    FusionDecision,
    IEmbeddingService,
    IFusionDecisionProvider,
    SemanticMatch,
)
from ..utils import utcnow
from .deduplication import FactDeduplicationService
from .entity_store import EntityStore
from .fact_store import FactStore
from .fusion import FUSION_CONFIDENCE_THRESHOLD

logger = logging.getLogger(__name__)


class FactService:
    """Creates facts without letting duplicates into the store.

    Usage:
        service = FactService(entity_store, fact_store, embedding_service=embedder)
        result = await service.create(person.id, FactDraft("position", "Engineer"))
        result.action  # FactAction.CREATED

    Embedding failures never fail a create: the semantic check is skipped
    and the fact is stored without an embedding.

    Args:
        entity_store: Used to check that the owning entity exists.
        fact_store: Fact persistence.
        embedding_service: Optional; enables semantic dedup.
        fusion_provider: Optional; decides what to do with semantic
            duplicates. Without one, semantic duplicates are skipped.
        dedup_service: Pre-built dedup service (built from the stores when None).
        fusion_confidence_threshold: Fusion decisions below this confidence
            are escalated to review.
    """

    def __init__(
        self,
        entity_store: EntityStore,
        fact_store: FactStore,
        embedding_service: Optional[IEmbeddingService] = None,
        fusion_provider: Optional[IFusionDecisionProvider] = None,
        dedup_service: Optional[FactDeduplicationService] = None,
        fusion_confidence_threshold: float = FUSION_CONFIDENCE_THRESHOLD,
    ):
        self.entity_store = entity_store
        self.fact_store = fact_store
        self.embedding_service = embedding_service
        self.fusion_provider = fusion_provider
        self.fusion_confidence_threshold = fusion_confidence_threshold
        self.dedup = dedup_service or FactDeduplicationService(
            fact_store, embedding_service=embedding_service
        )

    async def create(self, entity_id: str, draft: FactDraft) -> CreateFactResult:
        """Create a fact for an existing entity.

        Raises:
            NotFoundError: Unknown entity.
        """
        self.entity_store.find_one(entity_id)
        return await self.create_with_dedup(entity_id, draft)

    async def create_with_dedup(
        self, entity_id: str, draft: FactDraft, context: Optional[str] = None
    ) -> CreateFactResult:
        """Run the dedup checks and create, boost, supersede or skip.

        Args:
            entity_id: Owning entity (not re-checked here).
            draft: Candidate fact.
            context: Free text passed to the fusion provider.
        """
        embedding: Optional[list[float]] = None

        if draft.value and self.dedup.embedding_service is not None:
            try:
                match, embedding = await self.dedup.semantic_check(
                    entity_id, draft.value, draft.fact_type
                )
            except Exception as e:
                logger.warning(
                    "Semantic dedup unavailable for entity %s, using text dedup: %s",
                    entity_id, e,
                )
            else:
                if match is not None:
                    return await self._handle_semantic_duplicate(
                        entity_id, draft, match, embedding, context
                    )

        check = self.dedup.check_duplicate(entity_id, draft)
        if check.action is FactAction.SKIPPED:
            return CreateFactResult(
                fact=check.existing_fact,
                action=FactAction.SKIPPED,
                reason=check.reason,
                existing_fact_id=check.existing_fact.id,
                similarity=check.similarity,
            )
        if check.action is FactAction.UPDATED:
            fact = self.fact_store.confirm(check.existing_fact.id)
            return CreateFactResult(
                fact=fact,
                action=FactAction.UPDATED,
                reason=check.reason,
                existing_fact_id=fact.id,
                similarity=check.similarity,
            )
        if check.action is FactAction.SUPERSEDED:
            return await self._supersede(
                entity_id, draft, check.existing_fact, check.reason,
                embedding=embedding, similarity=check.similarity,
            )

        return await self._create_new(entity_id, draft, embedding=embedding)

    async def create_batch(self, entity_id: str, drafts: list[FactDraft]) -> BatchCreateResult:
        """Create several facts for one entity after batch dedup.

        Raises:
            NotFoundError: Unknown entity.
        """
        self.entity_store.find_one(entity_id)
        plan = self.dedup.process_batch(entity_id, drafts)
        batch = BatchCreateResult(skipped_count=plan.skipped_count)

        for draft in plan.to_create:
            batch.results.append(await self._create_new(entity_id, draft))
        for draft, old_fact_id in plan.to_supersede:
            existing = self.fact_store.find_one(old_fact_id)
            batch.results.append(
                await self._supersede(entity_id, draft, existing, f"Temporal update of {draft.fact_type}")
            )

        logger.info(
            "Batch for entity %s: %d written, %d skipped",
            entity_id, len(batch.results), batch.skipped_count,
        )
        return batch

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _embed_best_effort(self, value: Optional[str]) -> Optional[list[float]]:
        if not value or self.embedding_service is None:
            return None
        try:
            return await self.embedding_service.embed(value)
        except Exception as e:
            logger.warning("Embedding generation failed, storing fact without it: %s", e)
            return None

    async def _create_new(
        self,
        entity_id: str,
        draft: FactDraft,
        embedding: Optional[list[float]] = None,
        rank: FactRank = FactRank.NORMAL,
    ) -> CreateFactResult:
        if embedding is None:
            embedding = await self._embed_best_effort(draft.value)

        now = utcnow()
        fact = EntityFact(
            entity_id=entity_id,
            fact_type=draft.fact_type,
            value=draft.value,
            category=draft.category,
            value_json=draft.value_json,
            source=draft.source,
            confidence=draft.confidence,
            rank=rank,
            embedding=embedding,
            valid_from=now,
            valid_until=None,
            created_at=now,
            updated_at=now,
        )
        self.fact_store.insert(fact)

        reason = "Created with embedding" if embedding else "Created without embedding"
        logger.debug("Created %s fact %s for entity %s", fact.fact_type, fact.id, entity_id)
        return CreateFactResult(fact=fact, action=FactAction.CREATED, reason=reason)

    async def _supersede(
        self,
        entity_id: str,
        draft: FactDraft,
        existing: EntityFact,
        reason: str,
        embedding: Optional[list[float]] = None,
        similarity: Optional[float] = None,
    ) -> CreateFactResult:
        """Create the replacement first, then close the old fact.

        If closing fails the replacement is invalidated again so the entity
        is left with the old fact only.

        Raises:
            ConflictError: Another write closed ``existing`` first.
        """
        created = await self._create_new(entity_id, draft, embedding=embedding, rank=FactRank.PREFERRED)
        try:
            closed = self.fact_store.supersede(existing.id, created.fact.id)
        except Exception:
            logger.error(
                "Closing fact %s failed, invalidating replacement %s",
                existing.id, created.fact.id,
            )
            self.fact_store.invalidate(created.fact.id)
            raise
        if not closed:
            self.fact_store.invalidate(created.fact.id)
            raise ConflictError(f"Fact '{existing.id}' was already superseded")

        logger.info(
            "Fact %s superseded by %s (%s: '%s' -> '%s')",
            existing.id, created.fact.id, draft.fact_type, existing.value, draft.value,
        )
        return CreateFactResult(
            fact=created.fact,
            action=FactAction.SUPERSEDED,
            reason=reason,
            existing_fact_id=existing.id,
            similarity=similarity,
        )

    async def _decide(
        self, existing: EntityFact, draft: FactDraft, context: Optional[str]
    ) -> FusionDecision:
        try:
            decision = await self.fusion_provider.decide(existing, draft.value, draft.source, context)
        except Exception as e:
            logger.error("Fusion decision failed for fact %s: %s", existing.id, e)
            return FusionDecision(
                action=FusionAction.REVIEW,
                confidence=0.0,
                explanation=f"Fusion decision failed: {e}",
            )

        if decision.confidence < self.fusion_confidence_threshold and decision.action is not FusionAction.REVIEW:
            logger.info(
                "Low confidence (%.2f) for %s on fact %s, escalating to review",
                decision.confidence, decision.action.value, existing.id,
            )
            return FusionDecision(
                action=FusionAction.REVIEW,
                confidence=decision.confidence,
                explanation=f"Low confidence {decision.action.value}: {decision.explanation}",
            )
        return decision

    async def _handle_semantic_duplicate(
        self,
        entity_id: str,
        draft: FactDraft,
        match: SemanticMatch,
        embedding: list[float],
        context: Optional[str],
    ) -> CreateFactResult:
        existing = match.fact

        if self.fusion_provider is None:
            return CreateFactResult(
                fact=existing,
                action=FactAction.SKIPPED,
                reason="Semantic duplicate",
                existing_fact_id=existing.id,
                similarity=match.similarity,
            )

        decision = await self._decide(existing, draft, context)
        action = decision.action

        if action is FusionAction.SKIP:
            return CreateFactResult(
                fact=existing,
                action=FactAction.SKIPPED,
                reason=f"Fusion skip: {decision.explanation}",
                existing_fact_id=existing.id,
                similarity=match.similarity,
            )

        if action is FusionAction.CONFIRM:
            fact = self.fact_store.confirm(existing.id)
            return CreateFactResult(
                fact=fact,
                action=FactAction.UPDATED,
                reason=f"Fusion confirm: {decision.explanation}",
                existing_fact_id=existing.id,
                similarity=match.similarity,
            )

        if action is FusionAction.UPDATE:
            merged = decision.merged_value or draft.value
            fact = self.fact_store.enrich(existing.id, merged)
            new_embedding = await self._embed_best_effort(merged)
            if new_embedding is not None:
                self.fact_store.set_embedding(fact.id, new_embedding)
                fact.embedding = new_embedding
            return CreateFactResult(
                fact=fact,
                action=FactAction.UPDATED,
                reason=f"Fusion update: {decision.explanation}",
                existing_fact_id=existing.id,
                similarity=match.similarity,
            )

        if action is FusionAction.SUPERSEDE:
            return await self._supersede(
                entity_id, draft, existing, f"Fusion supersede: {decision.explanation}",
                embedding=embedding, similarity=match.similarity,
            )

        if action is FusionAction.COEXIST:
            created = await self._create_new(entity_id, draft, embedding=embedding)
            created.reason = f"Fusion coexist: {decision.explanation}"
            created.existing_fact_id = existing.id
            created.similarity = match.similarity
            return created

        review_reason = f"Conflicts with new value '{draft.value}'. {decision.explanation}"
        fact = self.fact_store.flag_for_review(existing.id, review_reason)
        logger.info("Fact %s flagged for review: %s", existing.id, review_reason)
        return CreateFactResult(
            fact=fact,
            action=FactAction.SKIPPED,
            reason=f"Needs review: {review_reason}",
            existing_fact_id=existing.id,
            similarity=match.similarity,
            needs_review=True,
            pending_draft=draft,
        )
