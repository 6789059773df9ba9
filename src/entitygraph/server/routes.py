"""API route handlers.

Store calls are synchronous, so handlers are plain ``def`` functions and
FastAPI runs them in its threadpool.
"""

from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ..exceptions import BadRequestError, EntityGraphError, ReferentialConflictError
from ..interfaces import (
    Entity,
    EntityFact,
    EntityRelation,
    RelationMember,
    RelationType,
)
from ..services import KnowledgeGraph
from .models import (
    EntityResponse,
    ErrorResponse,
    FactListResponse,
    FactResponse,
    GraphEdgeResponse,
    GraphNodeResponse,
    GraphResponse,
    HealthResponse,
    InferenceErrorResponse,
    InferenceRequest,
    InferenceResponse,
    PairResponse,
    RelationContextResponse,
    RelationListResponse,
    RelationMemberResponse,
    RelationResponse,
)

router = APIRouter(prefix="/v1", tags=["entity-graph"])


def get_knowledge_graph() -> KnowledgeGraph:
    """Dependency injection for the knowledge graph.

    This is set by the app during startup.
    """
    from .app import _knowledge_graph
    if _knowledge_graph is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _knowledge_graph


async def _entity_graph_error_handler(request: Request, exc: EntityGraphError) -> JSONResponse:
    body = ErrorResponse(detail=str(exc))
    if isinstance(exc, BadRequestError):
        body.valid_options = exc.valid_options
    if isinstance(exc, ReferentialConflictError):
        body.references = exc.references
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def add_error_handlers(app: FastAPI) -> None:
    """Map EntityGraphError subclasses to their HTTP status codes."""
    app.add_exception_handler(EntityGraphError, _entity_graph_error_handler)


# =============================================================================
# Converters
# =============================================================================

def _entity_to_response(entity: Entity) -> EntityResponse:
    return EntityResponse(
        id=entity.id,
        entity_type=entity.entity_type.value,
        name=entity.name,
        state=entity.state.value,
        is_bot=entity.is_bot,
        is_owner=entity.is_owner,
        organization_id=entity.organization_id,
        notes=entity.notes,
        creation_source=entity.creation_source,
        deleted_at=entity.deleted_at,
        created_at=entity.created_at,
        updated_at=entity.updated_at,
    )


def _fact_to_response(fact: EntityFact) -> FactResponse:
    return FactResponse(
        id=fact.id,
        entity_id=fact.entity_id,
        fact_type=fact.fact_type,
        category=fact.category,
        value=fact.value,
        value_json=fact.value_json,
        source=fact.source.value,
        confidence=fact.confidence,
        rank=fact.rank.value,
        valid_from=fact.valid_from,
        valid_until=fact.valid_until,
        needs_review=fact.needs_review,
        review_reason=fact.review_reason,
        confirmation_count=fact.confirmation_count,
        superseded_by=fact.superseded_by,
        created_at=fact.created_at,
    )


def _member_to_response(member: RelationMember) -> RelationMemberResponse:
    return RelationMemberResponse(
        entity_id=member.entity_id,
        role=member.role,
        label=member.label,
        properties=member.properties,
        valid_until=member.valid_until,
    )


def _relation_to_response(relation: EntityRelation) -> RelationResponse:
    return RelationResponse(
        id=relation.id,
        relation_type=relation.relation_type.value,
        source=relation.source.value,
        confidence=relation.confidence,
        metadata=relation.metadata,
        members=[_member_to_response(m) for m in relation.members],
        created_at=relation.created_at,
    )


# =============================================================================
# Routes
# =============================================================================

@router.get("/health", response_model=HealthResponse)
def health(kg: KnowledgeGraph = Depends(get_knowledge_graph)) -> HealthResponse:
    """Health check."""
    owner = kg.entities.find_me()
    return HealthResponse(
        status="ok",
        embeddings=type(kg.embedding_service).__name__ if kg.embedding_service else "none",
        owner_id=owner.id if owner else None,
    )


@router.get("/entities/{entity_id}", response_model=EntityResponse)
def get_entity(
    entity_id: str,
    include_deleted: bool = False,
    kg: KnowledgeGraph = Depends(get_knowledge_graph),
) -> EntityResponse:
    """Get an entity by id."""
    return _entity_to_response(kg.entities.find_one(entity_id, include_deleted=include_deleted))


@router.get("/entities/{entity_id}/facts", response_model=FactListResponse)
def list_facts(
    entity_id: str,
    include_history: bool = False,
    ranked: bool = False,
    include_deprecated: bool = False,
    kg: KnowledgeGraph = Depends(get_knowledge_graph),
) -> FactListResponse:
    """List facts of an entity, optionally ranked and with history."""
    kg.entities.find_one(entity_id, include_deleted=True)
    if ranked:
        facts = kg.fact_store.find_by_entity_with_ranking(
            entity_id, include_deprecated=include_deprecated, include_history=include_history
        )
    else:
        facts = kg.fact_store.find_by_entity(entity_id, include_history=include_history)
    return FactListResponse(
        entity_id=entity_id,
        facts=[_fact_to_response(f) for f in facts],
        count=len(facts),
    )


@router.get("/entities/{entity_id}/facts/history", response_model=FactListResponse)
def fact_history(
    entity_id: str,
    limit: int = Query(default=10, ge=1, le=200),
    kg: KnowledgeGraph = Depends(get_knowledge_graph),
) -> FactListResponse:
    """Closed facts of an entity, most recently closed first."""
    kg.entities.find_one(entity_id, include_deleted=True)
    facts = kg.fact_store.find_history(entity_id, limit=limit)
    return FactListResponse(
        entity_id=entity_id,
        facts=[_fact_to_response(f) for f in facts],
        count=len(facts),
    )


@router.get("/facts/review", response_model=list[FactResponse])
def pending_review(
    limit: int = Query(default=50, ge=1, le=500),
    kg: KnowledgeGraph = Depends(get_knowledge_graph),
) -> list[FactResponse]:
    """Facts flagged for human review."""
    return [_fact_to_response(f) for f in kg.fact_store.find_pending_review(limit=limit)]


@router.get("/entities/{entity_id}/relations", response_model=RelationListResponse)
def list_relations(
    entity_id: str,
    relation_type: Optional[RelationType] = None,
    kg: KnowledgeGraph = Depends(get_knowledge_graph),
) -> RelationListResponse:
    """Relations of an entity with the other members and its own role."""
    kg.entities.find_one(entity_id)
    contexts = kg.relations.find_by_entity_with_context(entity_id)
    if relation_type is not None:
        contexts = [c for c in contexts if c.relation.relation_type is relation_type]
    return RelationListResponse(
        entity_id=entity_id,
        relations=[
            RelationContextResponse(
                relation=_relation_to_response(c.relation),
                current_role=c.current_role,
                other_members=[_member_to_response(m) for m in c.other_members],
            )
            for c in contexts
        ],
        count=len(contexts),
    )


@router.get("/entities/{entity_id}/graph", response_model=GraphResponse)
def entity_graph(
    entity_id: str,
    depth: int = 1,
    kg: KnowledgeGraph = Depends(get_knowledge_graph),
) -> GraphResponse:
    """One-hop graph around an entity."""
    graph = kg.graph.get_graph(entity_id, depth=depth)
    return GraphResponse(
        central_entity_id=graph.central_entity_id,
        nodes=[
            GraphNodeResponse(id=n.id, name=n.name, type=n.entity_type.value)
            for n in graph.nodes
        ],
        edges=[
            GraphEdgeResponse(
                id=e.id,
                source=e.source,
                target=e.target,
                relation_type=e.relation_type.value,
                source_role=e.source_role,
                target_role=e.target_role,
            )
            for e in graph.edges
        ],
    )


@router.get("/relations/pair", response_model=PairResponse)
def relation_pair(
    a: str,
    b: str,
    relation_type: Optional[RelationType] = None,
    kg: KnowledgeGraph = Depends(get_knowledge_graph),
) -> PairResponse:
    """Relation shared by two entities (argument order does not matter)."""
    relation = kg.relations.find_by_pair(a, b, relation_type)
    return PairResponse(relation=_relation_to_response(relation) if relation else None)


@router.post("/inference/run", response_model=InferenceResponse)
def run_inference(
    request: InferenceRequest,
    kg: KnowledgeGraph = Depends(get_knowledge_graph),
) -> InferenceResponse:
    """Infer relations from unlinked facts."""
    result = kg.inference.infer_relations(
        since=request.since, dry_run=request.dry_run, limit=request.limit
    )
    return InferenceResponse(
        processed=result.processed,
        created=result.created,
        skipped=result.skipped,
        dry_run=request.dry_run,
        errors=[InferenceErrorResponse(**e) for e in result.errors],
        details=result.details,
    )
