"""Typed, role-constrained n-ary relations between entities.

Schema:
- entity_relations: (id, relation_type, source, confidence, metadata_json, ...)
- entity_relation_members: (relation_id, entity_id, role, label,
  properties_json, valid_until) keyed by (relation_id, entity_id, role)

A membership is soft-removed by setting ``valid_until``. A relation with no
active members stays in place; it simply no longer shows up for anyone.
"""

import json
import logging
import sqlite3
from typing import Optional

from ..exceptions import NotFoundError
from ..interfaces import (
    EntityRelation,
    MemberDraft,
    RelationContext,
    RelationDraft,
    RelationMember,
    RelationSource,
    RelationType,
)
from ..relation_types import validate_cardinality, validate_members, validate_role
from ..utils import from_iso, to_iso, utcnow
from .database import Database
from .entity_store import EntityStore

logger = logging.getLogger(__name__)


def _row_to_member(row: sqlite3.Row) -> RelationMember:
    return RelationMember(
        relation_id=row["relation_id"],
        entity_id=row["entity_id"],
        role=row["role"],
        label=row["label"],
        properties=json.loads(row["properties_json"]) if row["properties_json"] else None,
        valid_until=from_iso(row["valid_until"]),
        created_at=from_iso(row["created_at"]),
    )


def _row_to_relation(row: sqlite3.Row, members: list[RelationMember]) -> EntityRelation:
    return EntityRelation(
        id=row["id"],
        relation_type=RelationType(row["relation_type"]),
        source=RelationSource(row["source"]),
        confidence=row["confidence"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        members=members,
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def _member_key_set(members) -> set[tuple[str, str]]:
    return {(m.entity_id, m.role) for m in members}


class RelationStore:
    """SQLite-backed relation storage.

    Args:
        db: Shared database.
        entity_store: Used to check that member entities exist.
    """

    def __init__(self, db: Database, entity_store: EntityStore):
        self._db = db
        self.entity_store = entity_store

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, draft: RelationDraft) -> EntityRelation:
        """Create a relation, or return the existing one with the same members.

        Raises:
            BadRequestError: Invalid role, duplicate member or wrong member count.
            NotFoundError: A member entity does not exist.
        """
        validate_members(draft.relation_type, draft.members)
        for member in draft.members:
            self.entity_store.find_one(member.entity_id)

        existing = self.find_duplicate(draft.relation_type, draft.members)
        if existing is not None:
            logger.debug(
                "Relation %s already exists for %s, returning it",
                existing.id, draft.relation_type.value,
            )
            return existing

        relation = EntityRelation(
            relation_type=draft.relation_type,
            source=draft.source,
            confidence=draft.confidence,
            metadata=dict(draft.metadata or {}),
        )
        relation.members = [
            RelationMember(
                relation_id=relation.id,
                entity_id=m.entity_id,
                role=m.role,
                label=m.label,
                properties=m.properties,
                created_at=relation.created_at,
            )
            for m in draft.members
        ]

        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO entity_relations
                    (id, relation_type, source, confidence, metadata_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    relation.id, relation.relation_type.value, relation.source.value,
                    relation.confidence, json.dumps(relation.metadata),
                    to_iso(relation.created_at), to_iso(relation.updated_at),
                ),
            )
            conn.executemany(
                """
                INSERT INTO entity_relation_members
                    (relation_id, entity_id, role, label, properties_json, valid_until, created_at)
                VALUES (?, ?, ?, ?, ?, NULL, ?)
                """,
                [
                    (
                        relation.id, m.entity_id, m.role, m.label,
                        json.dumps(m.properties) if m.properties else None,
                        to_iso(m.created_at),
                    )
                    for m in relation.members
                ],
            )

        logger.info(
            "Created %s relation %s with %d members (source: %s)",
            relation.relation_type.value, relation.id, len(relation.members), relation.source.value,
        )
        return relation

    def find_duplicate(
        self, relation_type: RelationType, members: list[MemberDraft]
    ) -> Optional[EntityRelation]:
        """Existing relation of the same type whose active (entity, role) set
        equals the requested one."""
        if not members:
            return None
        wanted = _member_key_set(members)
        rows = self._db.fetchall(
            """
            SELECT DISTINCT r.id FROM entity_relations r
            JOIN entity_relation_members m ON m.relation_id = r.id
            WHERE r.relation_type = ? AND m.entity_id = ? AND m.valid_until IS NULL
            """,
            (relation_type.value, members[0].entity_id),
        )
        for row in rows:
            candidate = self.find_by_id(row["id"])
            if candidate is not None and _member_key_set(candidate.active_members) == wanted:
                return candidate
        return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load_members(self, relation_ids: list[str], active_only: bool) -> dict[str, list[RelationMember]]:
        if not relation_ids:
            return {}
        placeholders = ",".join("?" for _ in relation_ids)
        sql = f"SELECT * FROM entity_relation_members WHERE relation_id IN ({placeholders})"
        if active_only:
            sql += " AND valid_until IS NULL"
        sql += " ORDER BY created_at, rowid"
        members: dict[str, list[RelationMember]] = {rid: [] for rid in relation_ids}
        for row in self._db.fetchall(sql, relation_ids):
            members[row["relation_id"]].append(_row_to_member(row))
        return members

    def _hydrate(self, rows: list[sqlite3.Row], active_only: bool = True) -> list[EntityRelation]:
        members = self._load_members([r["id"] for r in rows], active_only)
        return [_row_to_relation(r, members[r["id"]]) for r in rows]

    def find_by_id(self, relation_id: str) -> Optional[EntityRelation]:
        """Relation with all of its members, removed ones included."""
        row = self._db.fetchone("SELECT * FROM entity_relations WHERE id = ?", (relation_id,))
        if row is None:
            return None
        return self._hydrate([row], active_only=False)[0]

    def find_one(self, relation_id: str) -> EntityRelation:
        """Relation by id.

        Raises:
            NotFoundError: Unknown relation id.
        """
        relation = self.find_by_id(relation_id)
        if relation is None:
            raise NotFoundError(f"Relation with id '{relation_id}' not found")
        return relation

    def find_by_entity(self, entity_id: str) -> list[EntityRelation]:
        """Relations in which the entity is an active member, newest first.

        Only active members are loaded.
        """
        rows = self._db.fetchall(
            """
            SELECT DISTINCT r.* FROM entity_relations r
            JOIN entity_relation_members m ON m.relation_id = r.id
            WHERE m.entity_id = ? AND m.valid_until IS NULL
            ORDER BY r.created_at DESC, r.id
            """,
            (entity_id,),
        )
        return self._hydrate(rows)

    def find_by_entity_with_context(self, entity_id: str) -> list[RelationContext]:
        """Relations of an entity with the other members and the entity's role.

        When the entity holds several roles in one relation only the first
        is reported.
        """
        contexts = []
        for relation in self.find_by_entity(entity_id):
            own = [m for m in relation.members if m.entity_id == entity_id]
            contexts.append(RelationContext(
                relation=relation,
                other_members=[m for m in relation.members if m.entity_id != entity_id],
                current_role=own[0].role if own else "unknown",
            ))
        return contexts

    def find_by_type(self, entity_id: str, relation_type: RelationType) -> list[EntityRelation]:
        """Relations of one type in which the entity is an active member."""
        rows = self._db.fetchall(
            """
            SELECT DISTINCT r.* FROM entity_relations r
            JOIN entity_relation_members m ON m.relation_id = r.id
            WHERE m.entity_id = ? AND m.valid_until IS NULL AND r.relation_type = ?
            ORDER BY r.created_at DESC, r.id
            """,
            (entity_id, relation_type.value),
        )
        return self._hydrate(rows)

    def find_by_pair(
        self,
        entity_a: str,
        entity_b: str,
        relation_type: Optional[RelationType] = None,
    ) -> Optional[EntityRelation]:
        """First relation where both entities are active members.

        Each entity is matched by its own existence predicate, so the result
        does not depend on argument order.
        """
        sql = """
            SELECT r.* FROM entity_relations r
            WHERE EXISTS (
                SELECT 1 FROM entity_relation_members m1
                WHERE m1.relation_id = r.id AND m1.entity_id = ? AND m1.valid_until IS NULL
            )
            AND EXISTS (
                SELECT 1 FROM entity_relation_members m2
                WHERE m2.relation_id = r.id AND m2.entity_id = ? AND m2.valid_until IS NULL
            )
        """
        params: list = [entity_a, entity_b]
        if relation_type is not None:
            sql += " AND r.relation_type = ?"
            params.append(relation_type.value)
        sql += " ORDER BY r.created_at ASC, r.id LIMIT 1"

        row = self._db.fetchone(sql, params)
        if row is None:
            return None
        return self._hydrate([row])[0]

    def count_by_source(self, source: RelationSource) -> int:
        row = self._db.fetchone(
            "SELECT COUNT(*) FROM entity_relations WHERE source = ?", (source.value,)
        )
        return row[0]

    # ------------------------------------------------------------------
    # Membership changes
    # ------------------------------------------------------------------

    def add_member(self, relation_id: str, member: MemberDraft) -> RelationMember:
        """Add a member to an existing relation.

        Returns the existing membership unchanged when the same
        (entity, role) is already active. A previously removed membership
        is revived.

        Raises:
            NotFoundError: Unknown relation or entity.
            BadRequestError: Invalid role or the relation is full.
        """
        relation = self.find_one(relation_id)
        validate_role(relation.relation_type, member.role)
        self.entity_store.find_one(member.entity_id)

        active = relation.active_members
        for current in active:
            if current.entity_id == member.entity_id and current.role == member.role:
                return current

        validate_cardinality(relation.relation_type, len(active) + 1)

        now = utcnow()
        new_member = RelationMember(
            relation_id=relation_id,
            entity_id=member.entity_id,
            role=member.role,
            label=member.label,
            properties=member.properties,
            created_at=now,
        )
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO entity_relation_members
                    (relation_id, entity_id, role, label, properties_json, valid_until, created_at)
                VALUES (?, ?, ?, ?, ?, NULL, ?)
                ON CONFLICT(relation_id, entity_id, role) DO UPDATE SET
                    valid_until = NULL,
                    label = excluded.label,
                    properties_json = excluded.properties_json
                """,
                (
                    relation_id, member.entity_id, member.role, member.label,
                    json.dumps(member.properties) if member.properties else None,
                    to_iso(now),
                ),
            )
            conn.execute(
                "UPDATE entity_relations SET updated_at = ? WHERE id = ?",
                (to_iso(now), relation_id),
            )

        logger.info("Added %s (%s) to relation %s", member.entity_id, member.role, relation_id)
        return new_member

    def remove_member(self, relation_id: str, entity_id: str, role: str) -> bool:
        """Soft-remove an active membership. Returns True if one was removed."""
        now = to_iso(utcnow())
        removed = self._db.write(
            """
            UPDATE entity_relation_members SET valid_until = ?
            WHERE relation_id = ? AND entity_id = ? AND role = ? AND valid_until IS NULL
            """,
            (now, relation_id, entity_id, role),
        )
        if removed:
            self._db.write(
                "UPDATE entity_relations SET updated_at = ? WHERE id = ?", (now, relation_id)
            )
            logger.info("Removed %s (%s) from relation %s", entity_id, role, relation_id)
        return removed > 0
