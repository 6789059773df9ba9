"""Core interfaces and records for the entity graph.

Entities, facts and relations live in flat stores keyed by id. The records
below only ever reference each other by id; graph views are built from
those ids on demand.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from .utils import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class EntityType(Enum):
    """Kind of entity."""
    PERSON = "person"
    ORGANIZATION = "organization"


class EntityState(Enum):
    """Lifecycle state derived from the soft-delete timestamp."""
    ACTIVE = "active"
    DELETED = "deleted"


class FactSource(Enum):
    """Where a fact came from."""
    MANUAL = "manual"
    EXTRACTED = "extracted"
    IMPORTED = "imported"


class FactRank(Enum):
    """Display rank of a fact; sort order follows declaration order."""
    PREFERRED = "preferred"
    NORMAL = "normal"
    DEPRECATED = "deprecated"


class FactCategory(Enum):
    PERSONAL = "personal"
    CONTACT = "contact"
    PROFESSIONAL = "professional"
    BUSINESS = "business"
    LEGAL = "legal"
    FINANCIAL = "financial"
    PREFERENCES = "preferences"


class FactAction(Enum):
    """What create_with_dedup ended up doing."""
    CREATED = "created"
    SKIPPED = "skipped"
    UPDATED = "updated"        # Existing fact boosted instead of duplicated
    SUPERSEDED = "superseded"  # Old fact closed, new one created


class FusionAction(Enum):
    """Decision for a near-duplicate fact."""
    SKIP = "skip"
    CONFIRM = "confirm"        # Same info, bump confirmation count
    UPDATE = "update"          # Merge the new value into the existing fact
    SUPERSEDE = "supersede"    # Close the old fact, create a new one
    COEXIST = "coexist"        # Both are valid, keep both
    REVIEW = "review"          # Flag the existing fact for a human


class RelationType(Enum):
    EMPLOYMENT = "employment"
    REPORTING = "reporting"
    TEAM = "team"
    MARRIAGE = "marriage"
    PARENTHOOD = "parenthood"
    SIBLINGHOOD = "siblinghood"
    FRIENDSHIP = "friendship"
    ACQUAINTANCE = "acquaintance"
    MENTORSHIP = "mentorship"
    PARTNERSHIP = "partnership"
    CLIENT_VENDOR = "client_vendor"


class RelationSource(Enum):
    MANUAL = "manual"
    EXTRACTED = "extracted"
    IMPORTED = "imported"
    INFERRED = "inferred"


@dataclass
class Entity:
    """A person or organization.

    Attributes:
        id: Unique identifier (UUID by default)
        entity_type: PERSON or ORGANIZATION
        name: Display name
        is_bot: Whether the entity is an automated account
        is_owner: Whether this entity is the owner of the graph (singleton)
        organization_id: Optional back-reference to an organization entity
        notes: Free-form notes
        creation_source: How the entity was created (manual, telegram, ...)
        deleted_at: Soft-delete timestamp, None while active
    """
    id: str = field(default_factory=new_id)
    entity_type: EntityType = EntityType.PERSON
    name: str = ""
    is_bot: bool = False
    is_owner: bool = False
    organization_id: Optional[str] = None
    notes: Optional[str] = None
    creation_source: str = "manual"
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def state(self) -> EntityState:
        return EntityState.DELETED if self.deleted_at is not None else EntityState.ACTIVE

    @property
    def is_deleted(self) -> bool:
        return self.state is EntityState.DELETED

    def __repr__(self) -> str:
        return f"Entity(id={self.id[:8]}..., name='{self.name}', type={self.entity_type.value}, state={self.state.value})"


@dataclass
class EntityIdentifier:
    """An external identifier (phone, email, messenger id) of an entity."""
    entity_id: str
    identifier_type: str
    identifier_value: str
    metadata: dict = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EntityFact:
    """A time-bounded fact about an entity.

    Values are never edited in place by the dedup pipeline; a changed value
    produces a new fact and the old one is closed via ``valid_until``.
    """
    entity_id: str
    fact_type: str
    value: Optional[str] = None
    category: Optional[str] = None
    value_json: Optional[Any] = None
    source: FactSource = FactSource.EXTRACTED
    confidence: Optional[float] = None
    rank: FactRank = FactRank.NORMAL
    embedding: Optional[list[float]] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    needs_review: bool = False
    review_reason: Optional[str] = None
    confirmation_count: int = 1
    superseded_by: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.valid_until is None

    def __repr__(self) -> str:
        state = "active" if self.is_active else "closed"
        return f"EntityFact(id={self.id[:8]}..., {self.fact_type}='{self.value}', {state})"


@dataclass
class RelationMember:
    """Membership of an entity in a relation, with its role."""
    relation_id: str
    entity_id: str
    role: str
    label: Optional[str] = None
    properties: Optional[dict] = None
    valid_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.valid_until is None


@dataclass
class EntityRelation:
    """A typed n-ary relation between entities."""
    relation_type: RelationType
    members: list[RelationMember] = field(default_factory=list)
    source: RelationSource = RelationSource.MANUAL
    confidence: Optional[float] = None
    metadata: dict = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def active_members(self) -> list[RelationMember]:
        return [m for m in self.members if m.is_active]

    def __repr__(self) -> str:
        return (
            f"EntityRelation(id={self.id[:8]}..., type={self.relation_type.value}, "
            f"members={len(self.active_members)})"
        )


# =============================================================================
# Ingestion inputs
# =============================================================================

@dataclass
class FactDraft:
    """Candidate fact produced by ingestion or entered manually."""
    fact_type: str
    value: Optional[str] = None
    category: Optional[str] = None
    value_json: Optional[Any] = None
    source: FactSource = FactSource.EXTRACTED
    confidence: Optional[float] = None


@dataclass
class MemberDraft:
    entity_id: str
    role: str
    label: Optional[str] = None
    properties: Optional[dict] = None


@dataclass
class RelationDraft:
    """Candidate relation; members are validated against the type's rules."""
    relation_type: RelationType
    members: list[MemberDraft]
    source: RelationSource = RelationSource.MANUAL
    confidence: Optional[float] = None
    metadata: Optional[dict] = None


# =============================================================================
# Results
# =============================================================================

@dataclass
class CreateFactResult:
    """Result of creating a fact through the dedup pipeline.

    Attributes:
        fact: The created fact, or the existing one when nothing was created.
        action: What happened.
        reason: Human-readable explanation.
        existing_fact_id: The duplicate that was matched, if any.
        similarity: Similarity score of the match, if any.
        needs_review: True when the match was flagged for a human.
        pending_draft: The incoming draft held back for that review, so the
            caller can store it once the conflict is resolved.
    """
    fact: EntityFact
    action: FactAction
    reason: str
    existing_fact_id: Optional[str] = None
    similarity: Optional[float] = None
    needs_review: bool = False
    pending_draft: Optional[FactDraft] = None

    def __repr__(self) -> str:
        return f"CreateFactResult(action={self.action.value}, fact_id={self.fact.id[:8]}..., reason='{self.reason}')"


@dataclass
class DedupCheck:
    """Outcome of checking one draft against the stored facts."""
    action: FactAction
    reason: str
    existing_fact: Optional[EntityFact] = None
    similarity: Optional[float] = None


@dataclass
class BatchDedupResult:
    """Outcome of deduplicating a batch of drafts for one entity."""
    to_create: list[FactDraft] = field(default_factory=list)
    to_supersede: list[tuple[FactDraft, str]] = field(default_factory=list)
    skipped_count: int = 0


@dataclass
class BatchCreateResult:
    """Facts written by a batch create; duplicates are only counted."""
    results: list[CreateFactResult] = field(default_factory=list)
    skipped_count: int = 0


@dataclass
class SemanticMatch:
    fact: EntityFact
    similarity: float


@dataclass
class FusionDecision:
    """Advisory decision for a near-duplicate; the store applies it verbatim."""
    action: FusionAction
    confidence: float = 1.0
    merged_value: Optional[str] = None
    explanation: str = ""


@dataclass
class RelationContext:
    """A relation seen from one of its members.

    ``current_role`` is the first role the entity holds in the relation;
    additional roles of the same entity are not surfaced.
    """
    relation: EntityRelation
    other_members: list[RelationMember]
    current_role: str


@dataclass
class GraphNode:
    id: str
    name: str
    entity_type: EntityType


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    relation_type: RelationType
    source_role: str
    target_role: str


@dataclass
class EntityGraph:
    """One-hop view around a central entity. Nodes and edges hold ids only."""
    central_entity_id: str
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)


@dataclass
class InferenceResult:
    """Outcome of one inference run.

    Attributes:
        processed: Facts examined.
        created: Relations created (or that would be created in dry-run).
        skipped: Facts with no matching organization or an existing relation.
        errors: Per-fact failures as {"fact_id", "error"} dicts.
        details: Planned matches, filled in dry-run mode.
    """
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)
    details: list[dict] = field(default_factory=list)


@dataclass
class InferenceStats:
    """Backlog counters for the inference rule's fact type."""
    total_facts: int = 0
    unlinked_facts: int = 0
    organizations: int = 0
    inferred_relations: int = 0


# =============================================================================
# Collaborators
# =============================================================================

class IEmbeddingService(ABC):
    """Interface for embedding generation."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Generate embedding for text."""
        pass

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        pass

    @abstractmethod
    def similarity(self, a: list[float], b: list[float]) -> float:
        """Calculate cosine similarity between two embeddings."""
        pass


class IFusionDecisionProvider(ABC):
    """Decides what to do with a fact that nearly duplicates an existing one."""

    @abstractmethod
    async def decide(
        self,
        existing_fact: EntityFact,
        new_value: str,
        new_source: FactSource,
        context: Optional[str] = None,
    ) -> FusionDecision:
        """Return the action to apply to ``existing_fact``."""
        pass
