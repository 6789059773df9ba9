"""One-hop graph projection around an entity."""

import logging
from typing import Optional

from ..exceptions import BadRequestError, ServiceUnavailableError
from ..interfaces import EntityGraph, GraphEdge, GraphNode
from ..relation_types import is_binary
from .entity_store import EntityStore
from .relation_store import RelationStore

logger = logging.getLogger(__name__)

MAX_SUPPORTED_DEPTH = 1


class GraphProjector:
    """Builds node/edge views of an entity's relations.

    Nodes carry ids, names and types only; edges reference nodes by id.
    Members whose entity is missing or soft-deleted are left out, as are
    removed memberships.

    Args:
        entity_store: Entity lookups.
        relation_store: Optional. Without it ``get_graph`` raises
            ServiceUnavailableError.
    """

    def __init__(self, entity_store: EntityStore, relation_store: Optional[RelationStore] = None):
        self.entity_store = entity_store
        self.relation_store = relation_store

    def get_graph(self, entity_id: str, depth: int = 1) -> EntityGraph:
        """Graph of the entity and everyone it shares an active relation with.

        Binary relations give one edge whose id is the relation id. N-ary
        relations give one edge per other member, with id
        ``{relation_id}-{other_entity_id}-{other_role}``.

        Raises:
            ServiceUnavailableError: No relation store configured.
            BadRequestError: depth other than 1.
            NotFoundError: Unknown entity.
        """
        if self.relation_store is None:
            raise ServiceUnavailableError("Entity graph is temporarily unavailable")
        if depth > MAX_SUPPORTED_DEPTH:
            raise BadRequestError("depth > 1 is not yet supported")
        if depth < 1:
            raise BadRequestError("depth must be at least 1")

        central = self.entity_store.find_one(entity_id)
        relations = self.relation_store.find_by_entity(entity_id)

        member_ids = {m.entity_id for r in relations for m in r.members}
        entities = self.entity_store.find_many(list(member_ids))

        nodes: dict[str, GraphNode] = {
            central.id: GraphNode(id=central.id, name=central.name, entity_type=central.entity_type)
        }
        edges: list[GraphEdge] = []

        for relation in relations:
            own = next((m for m in relation.members if m.entity_id == entity_id), None)
            if own is None:
                continue
            others = [m for m in relation.members if m.entity_id != entity_id]
            binary = is_binary(relation.relation_type)

            for other in others:
                entity = entities.get(other.entity_id)
                if entity is None:
                    logger.debug(
                        "Skipping orphaned member %s of relation %s", other.entity_id, relation.id
                    )
                    continue
                if entity.id not in nodes:
                    nodes[entity.id] = GraphNode(
                        id=entity.id, name=entity.name, entity_type=entity.entity_type
                    )
                edge_id = relation.id if binary else f"{relation.id}-{other.entity_id}-{other.role}"
                edges.append(GraphEdge(
                    id=edge_id,
                    source=entity_id,
                    target=other.entity_id,
                    relation_type=relation.relation_type,
                    source_role=own.role,
                    target_role=other.role,
                ))

        return EntityGraph(central_entity_id=entity_id, nodes=list(nodes.values()), edges=edges)
