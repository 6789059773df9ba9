"""Wiring of the stores and services into one object."""

import asyncio
import logging
from typing import Optional

from ..interfaces import IEmbeddingService, IFusionDecisionProvider
from .database import Database
from .deduplication import FactDeduplicationService
from .entity_store import EntityStore
from .fact_service import FactService
from .fact_store import FactStore
from .fusion import (
    FUSION_CONFIDENCE_THRESHOLD,
    AutoSkipFusion,
    AutoSupersedeFusion,
    DelegateToReviewerFusion,
    SourcePriorityFusion,
)
from .graph import GraphProjector
from .inference import EMPLOYMENT_FROM_COMPANY, InferenceRule, RelationInferenceEngine
from .relation_store import RelationStore

logger = logging.getLogger(__name__)


class KnowledgeGraph:
    """All components of the entity graph sharing one database.

    Usage:
        with create_knowledge_graph(config) as kg:
            person = kg.entities.create(EntityType.PERSON, "Ann")
            await kg.facts.create(person.id, FactDraft("position", "Engineer"))
            kg.graph.get_graph(person.id)
    """

    def __init__(
        self,
        db: Database,
        embedding_service: Optional[IEmbeddingService] = None,
        fusion_provider: Optional[IFusionDecisionProvider] = None,
        dedup_options: Optional[dict] = None,
        fusion_confidence_threshold: float = FUSION_CONFIDENCE_THRESHOLD,
        inference_rule: InferenceRule = EMPLOYMENT_FROM_COMPANY,
        inference_options: Optional[dict] = None,
    ):
        self.db = db
        self.embedding_service = embedding_service
        self.fact_store = FactStore(db)
        self.entities = EntityStore(db, fact_store=self.fact_store)
        self.relations = RelationStore(db, self.entities)
        self.facts = FactService(
            self.entities,
            self.fact_store,
            embedding_service=embedding_service,
            fusion_provider=fusion_provider,
            dedup_service=FactDeduplicationService(
                self.fact_store, embedding_service=embedding_service, **(dedup_options or {})
            ),
            fusion_confidence_threshold=fusion_confidence_threshold,
        )
        self.inference = RelationInferenceEngine(
            self.fact_store,
            self.entities,
            self.relations,
            rule=inference_rule,
            **(inference_options or {}),
        )
        self.graph = GraphProjector(self.entities, self.relations)

    def close(self) -> None:
        """Close the database and the embedding client, if it has one.

        Inside a running event loop use ``aclose`` instead; the embedding
        client cannot be awaited from here.
        """
        close_embeddings = getattr(self.embedding_service, "close", None)
        if close_embeddings is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(close_embeddings())
            else:
                logger.warning("close() called inside an event loop; use aclose() to close embeddings")
        self.db.close()

    async def aclose(self) -> None:
        """Close the embedding client and the database."""
        close_embeddings = getattr(self.embedding_service, "close", None)
        if close_embeddings is not None:
            await close_embeddings()
        self.db.close()

    def __enter__(self) -> "KnowledgeGraph":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
        return None


def create_embedding_service(
    provider: str,
    model: Optional[str] = None,
    dimensions: Optional[int] = None,
    api_key: Optional[str] = None,
    api_base: Optional[str] = None,
) -> Optional[IEmbeddingService]:
    """Build the configured embedding service; "none" gives None."""
    if provider == "none":
        return None
    if provider == "fastembed":
        from .fastembed_service import FastEmbedService

        kwargs: dict = {"dimensions": dimensions}
        if model:
            kwargs["model"] = model
        return FastEmbedService(**kwargs)
    if provider == "openai":
        from .embeddings import OpenAIEmbeddingService

        kwargs = {"api_key": api_key, "api_base": api_base}
        if model:
            kwargs["model"] = model
        if dimensions:
            kwargs["dimensions"] = dimensions
        return OpenAIEmbeddingService(**kwargs)
    raise ValueError(f"Unknown embedding provider: {provider}")


def create_fusion_provider(strategy: str) -> Optional[IFusionDecisionProvider]:
    """Build a fusion strategy by name; "none" gives None (skip duplicates)."""
    strategies = {
        "skip": AutoSkipFusion,
        "supersede": AutoSupersedeFusion,
        "review": DelegateToReviewerFusion,
        "source_priority": SourcePriorityFusion,
    }
    if strategy == "none":
        return None
    if strategy not in strategies:
        raise ValueError(f"Unknown fusion strategy: {strategy}")
    return strategies[strategy]()


def create_knowledge_graph(
    config=None,
    embedding_service: Optional[IEmbeddingService] = None,
) -> KnowledgeGraph:
    """Factory function to create a KnowledgeGraph from configuration.

    Args:
        config: EntityGraphConfig. If None, loads from environment.
        embedding_service: Overrides the configured embedding provider
            (used by tests to inject a mock).
    """
    from ..server.config import EntityGraphConfig

    if config is None:
        config = EntityGraphConfig.from_env()

    if embedding_service is None:
        embedding_service = create_embedding_service(
            config.embedding.provider,
            model=config.embedding.model,
            dimensions=config.embedding.dimensions,
            api_key=config.embedding.api_key,
            api_base=config.embedding.api_base,
        )

    kg = KnowledgeGraph(
        Database(config.db.path),
        embedding_service=embedding_service,
        fusion_provider=create_fusion_provider(config.dedup.fusion),
        dedup_options={
            "semantic_threshold": config.dedup.semantic_threshold,
            "fuzzy_threshold": config.dedup.fuzzy_threshold,
            "temporal_min": config.dedup.temporal_min,
            "temporal_max": config.dedup.temporal_max,
            "temporal_fact_types": frozenset(config.dedup.temporal_fact_types),
        },
        fusion_confidence_threshold=config.dedup.fusion_confidence_threshold,
        inference_rule=InferenceRule(fact_type=config.inference.fact_type),
        inference_options={
            "org_match_threshold": config.inference.org_match_threshold,
            "default_confidence": config.inference.default_confidence,
        },
    )

    logger.info(
        "Knowledge graph ready (db: %s, embeddings: %s, fusion: %s)",
        config.db.path, config.embedding.provider, config.dedup.fusion,
    )
    return kg
