"""Entity graph service implementations."""

from .database import Database
from .entity_store import EntityStore
from .fact_store import FactStore
from .deduplication import FactDeduplicationService
from .fact_service import FactService
from .relation_store import RelationStore
from .inference import InferenceRule, RelationInferenceEngine
from .graph import GraphProjector
from .knowledge_graph import KnowledgeGraph, create_knowledge_graph

__all__ = [
    "Database",
    "EntityStore",
    "FactStore",
    "FactDeduplicationService",
    "FactService",
    "RelationStore",
    "InferenceRule",
    "RelationInferenceEngine",
    "GraphProjector",
    "KnowledgeGraph",
    "create_knowledge_graph",
]
