"""Relation inference from facts.

A "company" fact on a person implies an employment relation with the
organization of that name, if such an organization exists. The engine
scans facts that are not linked yet, so running it again only picks up
what changed since; ``find_by_pair`` keeps re-runs from creating
duplicates.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..interfaces import (
    Entity,
    EntityFact,
    EntityType,
    InferenceResult,
    InferenceStats,
    MemberDraft,
    RelationDraft,
    RelationSource,
    RelationType,
)
from ..utils import name_similarity, normalize_company_name
from .entity_store import EntityStore
from .fact_store import FactStore
from .relation_store import RelationStore

logger = logging.getLogger(__name__)

DEFAULT_ORG_MATCH_THRESHOLD = 0.7
DEFAULT_INFERRED_CONFIDENCE = 0.7
MIN_SIGNIFICANT_WORD_LENGTH = 3
CANDIDATE_LIMIT = 20


@dataclass(frozen=True)
class InferenceRule:
    """Which fact type implies which relation, and with what roles."""
    fact_type: str = "company"
    relation_type: RelationType = RelationType.EMPLOYMENT
    subject_role: str = "employee"
    target_role: str = "employer"
    subject_type: EntityType = EntityType.PERSON
    target_type: EntityType = EntityType.ORGANIZATION


EMPLOYMENT_FROM_COMPANY = InferenceRule()


class RelationInferenceEngine:
    """Derives relations from facts.

    Usage:
        engine = RelationInferenceEngine(fact_store, entity_store, relation_store)
        result = engine.infer_relations(dry_run=True)
        for planned in result.details:
            print(planned["entity_name"], "->", planned["organization_name"])
    """

    def __init__(
        self,
        fact_store: FactStore,
        entity_store: EntityStore,
        relation_store: RelationStore,
        rule: InferenceRule = EMPLOYMENT_FROM_COMPANY,
        org_match_threshold: float = DEFAULT_ORG_MATCH_THRESHOLD,
        default_confidence: float = DEFAULT_INFERRED_CONFIDENCE,
    ):
        self.fact_store = fact_store
        self.entity_store = entity_store
        self.relation_store = relation_store
        self.rule = rule
        self.org_match_threshold = org_match_threshold
        self.default_confidence = default_confidence

    def infer_relations(
        self,
        since: Optional[datetime] = None,
        dry_run: bool = False,
        limit: Optional[int] = None,
    ) -> InferenceResult:
        """Scan unlinked facts and create the relations they imply.

        Args:
            since: Only facts created at or after this time.
            dry_run: Report planned relations in ``details`` without writing.
                ``created`` then counts relations that would be created.
            limit: Maximum number of facts to examine.

        Returns:
            InferenceResult; per-fact failures are listed in ``errors`` and
            do not stop the scan.
        """
        result = InferenceResult()
        facts = self.fact_store.find_unlinked(
            self.rule.fact_type, self.rule.relation_type.value, since=since, limit=limit
        )
        logger.info(
            "Relation inference: %d unlinked %s facts%s",
            len(facts), self.rule.fact_type, " (dry run)" if dry_run else "",
        )

        for fact in facts:
            result.processed += 1
            try:
                self._process_fact(fact, dry_run, result)
            except Exception as e:
                logger.error("Inference failed for fact %s: %s", fact.id, e)
                result.errors.append({"fact_id": fact.id, "error": str(e)})

        logger.info(
            "Relation inference done: processed=%d created=%d skipped=%d errors=%d",
            result.processed, result.created, result.skipped, len(result.errors),
        )
        return result

    def _process_fact(self, fact: EntityFact, dry_run: bool, result: InferenceResult) -> None:
        subject = self.entity_store.get(fact.entity_id)
        if subject is None or subject.entity_type is not self.rule.subject_type:
            result.skipped += 1
            return

        target = self.find_matching_organization(fact.value)
        if target is None or target.id == subject.id:
            logger.debug("No organization matches '%s' (fact %s)", fact.value, fact.id)
            result.skipped += 1
            return

        if self.relation_store.find_by_pair(subject.id, target.id, self.rule.relation_type):
            result.skipped += 1
            return

        if dry_run:
            result.details.append({
                "fact_id": fact.id,
                "fact_value": fact.value,
                "entity_id": subject.id,
                "entity_name": subject.name,
                "organization_id": target.id,
                "organization_name": target.name,
            })
            result.created += 1
            return

        self.relation_store.create(RelationDraft(
            relation_type=self.rule.relation_type,
            members=[
                MemberDraft(entity_id=subject.id, role=self.rule.subject_role),
                MemberDraft(entity_id=target.id, role=self.rule.target_role),
            ],
            source=RelationSource.INFERRED,
            confidence=fact.confidence if fact.confidence is not None else self.default_confidence,
            metadata={
                "inferred_from": f"{self.rule.fact_type}_fact",
                "source_fact_id": fact.id,
                "source_fact_value": fact.value,
            },
        ))
        result.created += 1

    def find_matching_organization(self, value: Optional[str]) -> Optional[Entity]:
        """Best organization for a company name, or None.

        Candidates come from a substring search on the normalized name, or on
        its first significant word when that finds nothing. The best candidate
        must score above ``org_match_threshold``.
        """
        normalized = normalize_company_name(value)
        if not normalized:
            return None

        candidates = self._search(normalized)
        if not candidates:
            first_word = next(
                (w for w in normalized.split() if len(w) >= MIN_SIGNIFICANT_WORD_LENGTH),
                None,
            )
            if first_word:
                candidates = self._search(first_word)

        best: Optional[Entity] = None
        best_score = 0.0
        for candidate in candidates:
            score = name_similarity(normalized, normalize_company_name(candidate.name))
            if score > self.org_match_threshold and score > best_score:
                best, best_score = candidate, score
        return best

    def _search(self, term: str) -> list[Entity]:
        page = self.entity_store.find_all(
            entity_type=self.rule.target_type, search=term, limit=CANDIDATE_LIMIT
        )
        return page["items"]

    def get_inference_stats(self) -> InferenceStats:
        """Counters describing the inference backlog."""
        unlinked = self.fact_store.find_unlinked(self.rule.fact_type, self.rule.relation_type.value)
        organizations = self.entity_store.find_all(entity_type=self.rule.target_type, limit=1)
        return InferenceStats(
            total_facts=self.fact_store.count_active(self.rule.fact_type),
            unlinked_facts=len(unlinked),
            organizations=organizations["total"],
            inferred_relations=self.relation_store.count_by_source(RelationSource.INFERRED),
        )
