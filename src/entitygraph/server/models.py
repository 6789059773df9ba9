"""Pydantic models for HTTP API request/response."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Request Models
# =============================================================================

class InferenceRequest(BaseModel):
    """Request to run relation inference."""
    dry_run: bool = Field(
        default=False,
        description="Report planned relations without creating them"
    )
    limit: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum number of facts to examine"
    )
    since: Optional[datetime] = Field(
        default=None,
        description="Only facts created at or after this time"
    )


# =============================================================================
# Response Models
# =============================================================================

class EntityResponse(BaseModel):
    """An entity."""
    id: str
    entity_type: str
    name: str
    state: str
    is_bot: bool = False
    is_owner: bool = False
    organization_id: Optional[str] = None
    notes: Optional[str] = None
    creation_source: str = "manual"
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class FactResponse(BaseModel):
    """A fact about an entity."""
    id: str
    entity_id: str
    fact_type: str
    category: Optional[str] = None
    value: Optional[str] = None
    value_json: Optional[Any] = None
    source: str
    confidence: Optional[float] = None
    rank: str
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    needs_review: bool = False
    review_reason: Optional[str] = None
    confirmation_count: int = 1
    superseded_by: Optional[str] = None
    created_at: datetime


class FactListResponse(BaseModel):
    """Facts of one entity."""
    entity_id: str
    facts: list[FactResponse]
    count: int


class RelationMemberResponse(BaseModel):
    entity_id: str
    role: str
    label: Optional[str] = None
    properties: Optional[dict] = None
    valid_until: Optional[datetime] = None


class RelationResponse(BaseModel):
    """A relation with its members."""
    id: str
    relation_type: str
    source: str
    confidence: Optional[float] = None
    metadata: dict = Field(default_factory=dict)
    members: list[RelationMemberResponse]
    created_at: datetime


class RelationContextResponse(BaseModel):
    """A relation seen from one member."""
    relation: RelationResponse
    current_role: str
    other_members: list[RelationMemberResponse]


class RelationListResponse(BaseModel):
    entity_id: str
    relations: list[RelationContextResponse]
    count: int


class PairResponse(BaseModel):
    """Relation shared by two entities, if any."""
    relation: Optional[RelationResponse] = None


class GraphNodeResponse(BaseModel):
    id: str
    name: str
    type: str


class GraphEdgeResponse(BaseModel):
    id: str
    source: str
    target: str
    relation_type: str
    source_role: str
    target_role: str


class GraphResponse(BaseModel):
    """One-hop graph around an entity."""
    central_entity_id: str
    nodes: list[GraphNodeResponse]
    edges: list[GraphEdgeResponse]


class InferenceErrorResponse(BaseModel):
    fact_id: str
    error: str


class InferenceResponse(BaseModel):
    """Result of an inference run."""
    processed: int
    created: int
    skipped: int
    dry_run: bool
    errors: list[InferenceErrorResponse] = Field(default_factory=list)
    details: list[dict] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    embeddings: str
    owner_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error body for 4xx/5xx responses."""
    detail: str
    valid_options: list[str] = Field(default_factory=list)
    references: dict[str, int] = Field(default_factory=dict)
