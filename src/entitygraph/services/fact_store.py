"""Persistence and read paths for entity facts.

Facts are never physically deleted by the dedup pipeline. A fact is closed
by setting ``valid_until``; ``superseded_by`` points at its replacement.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Optional

from ..exceptions import NotFoundError
from ..interfaces import EntityFact, FactRank, FactSource, SemanticMatch
from ..utils import cosine_similarity, from_iso, to_iso, utcnow
from .database import Database

logger = logging.getLogger(__name__)

# Confidence used when boosting a fact that never had one
DEFAULT_BOOSTED_CONFIDENCE = 0.85

_RANK_ORDER = """
    CASE rank WHEN 'preferred' THEN 0 WHEN 'normal' THEN 1 ELSE 2 END
"""


def _row_to_fact(row: sqlite3.Row) -> EntityFact:
    return EntityFact(
        id=row["id"],
        entity_id=row["entity_id"],
        fact_type=row["fact_type"],
        category=row["category"],
        value=row["value"],
        value_json=json.loads(row["value_json"]) if row["value_json"] is not None else None,
        source=FactSource(row["source"]),
        confidence=row["confidence"],
        rank=FactRank(row["rank"]),
        embedding=json.loads(row["embedding_json"]) if row["embedding_json"] else None,
        valid_from=from_iso(row["valid_from"]),
        valid_until=from_iso(row["valid_until"]),
        needs_review=bool(row["needs_review"]),
        review_reason=row["review_reason"],
        confirmation_count=row["confirmation_count"],
        superseded_by=row["superseded_by"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def _boost(confidence: Optional[float], amount: float) -> float:
    if confidence is None:
        return DEFAULT_BOOSTED_CONFIDENCE
    return min(1.0, confidence + amount)


class FactStore:
    """SQLite-backed fact storage."""

    def __init__(self, db: Database):
        self._db = db

    def insert(self, fact: EntityFact) -> EntityFact:
        """Persist a new fact as-is."""
        self._db.write(
            """
            INSERT INTO entity_facts (
                id, entity_id, fact_type, category, value, value_json, source,
                confidence, rank, embedding_json, valid_from, valid_until,
                needs_review, review_reason, confirmation_count, superseded_by,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fact.id, fact.entity_id, fact.fact_type, fact.category, fact.value,
                json.dumps(fact.value_json) if fact.value_json is not None else None,
                fact.source.value, fact.confidence, fact.rank.value,
                json.dumps(fact.embedding) if fact.embedding else None,
                to_iso(fact.valid_from), to_iso(fact.valid_until),
                int(fact.needs_review), fact.review_reason, fact.confirmation_count,
                fact.superseded_by, to_iso(fact.created_at), to_iso(fact.updated_at),
            ),
        )
        return fact

    def get(self, fact_id: str) -> Optional[EntityFact]:
        row = self._db.fetchone("SELECT * FROM entity_facts WHERE id = ?", (fact_id,))
        return _row_to_fact(row) if row else None

    def find_one(self, fact_id: str) -> EntityFact:
        """Fact by id.

        Raises:
            NotFoundError: Unknown fact id.
        """
        fact = self.get(fact_id)
        if fact is None:
            raise NotFoundError(f"Fact with id '{fact_id}' not found")
        return fact

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_entity(self, entity_id: str, include_history: bool = False) -> list[EntityFact]:
        """Facts of an entity, newest first. Closed facts only with ``include_history``."""
        sql = "SELECT * FROM entity_facts WHERE entity_id = ?"
        if not include_history:
            sql += " AND valid_until IS NULL"
        sql += " ORDER BY created_at DESC, rowid DESC"
        return [_row_to_fact(r) for r in self._db.fetchall(sql, (entity_id,))]

    def find_active(self, entity_id: str, fact_type: Optional[str] = None) -> list[EntityFact]:
        """Active facts of an entity, optionally of one type, newest first."""
        if fact_type is None:
            return self.find_by_entity(entity_id)
        rows = self._db.fetchall(
            """
            SELECT * FROM entity_facts
            WHERE entity_id = ? AND fact_type = ? AND valid_until IS NULL
            ORDER BY created_at DESC, rowid DESC
            """,
            (entity_id, fact_type),
        )
        return [_row_to_fact(r) for r in rows]

    def find_by_entity_with_ranking(
        self,
        entity_id: str,
        include_deprecated: bool = False,
        include_history: bool = False,
    ) -> list[EntityFact]:
        """Facts ordered preferred > normal > deprecated, then by type, then newest.

        Args:
            entity_id: Owning entity.
            include_deprecated: Keep facts ranked deprecated.
            include_history: Keep closed facts.
        """
        sql = "SELECT * FROM entity_facts WHERE entity_id = ?"
        if not include_deprecated:
            sql += " AND rank != 'deprecated'"
        if not include_history:
            sql += " AND valid_until IS NULL"
        sql += f" ORDER BY {_RANK_ORDER}, fact_type ASC, created_at DESC, rowid DESC"
        return [_row_to_fact(r) for r in self._db.fetchall(sql, (entity_id,))]

    def find_history(self, entity_id: str, limit: int = 10) -> list[EntityFact]:
        """Closed facts of an entity, most recently closed first."""
        rows = self._db.fetchall(
            """
            SELECT * FROM entity_facts
            WHERE entity_id = ? AND valid_until IS NOT NULL
            ORDER BY valid_until DESC, rowid DESC
            LIMIT ?
            """,
            (entity_id, limit),
        )
        return [_row_to_fact(r) for r in rows]

    def find_pending_review(self, limit: int = 50) -> list[EntityFact]:
        """Active facts flagged for human review, newest first."""
        rows = self._db.fetchall(
            """
            SELECT * FROM entity_facts
            WHERE needs_review = 1 AND valid_until IS NULL
            ORDER BY updated_at DESC, rowid DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [_row_to_fact(r) for r in rows]

    def find_most_similar(
        self,
        entity_id: str,
        embedding: list[float],
        threshold: float,
        fact_type: Optional[str] = None,
    ) -> Optional[SemanticMatch]:
        """Nearest active fact of an entity by cosine similarity.

        Only facts with a stored embedding take part. Returns the best match
        strictly above ``threshold``, or None.
        """
        sql = """
            SELECT * FROM entity_facts
            WHERE entity_id = ? AND valid_until IS NULL AND embedding_json IS NOT NULL
        """
        params: list = [entity_id]
        if fact_type is not None:
            sql += " AND fact_type = ?"
            params.append(fact_type)

        best: Optional[SemanticMatch] = None
        for row in self._db.fetchall(sql, params):
            fact = _row_to_fact(row)
            if not fact.embedding or len(fact.embedding) != len(embedding):
                continue
            score = cosine_similarity(embedding, fact.embedding)
            if score > threshold and (best is None or score > best.similarity):
                best = SemanticMatch(fact=fact, similarity=score)
        return best

    def find_unlinked(
        self,
        fact_type: str,
        relation_type: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[EntityFact]:
        """Active facts whose entity has no active membership in a relation type.

        Used by relation inference to find facts not yet turned into relations.
        """
        sql = """
            SELECT f.* FROM entity_facts f
            JOIN entities e ON e.id = f.entity_id
            WHERE f.fact_type = ?
              AND f.valid_until IS NULL
              AND e.deleted_at IS NULL
              AND NOT EXISTS (
                SELECT 1 FROM entity_relation_members m
                JOIN entity_relations r ON r.id = m.relation_id
                WHERE m.entity_id = f.entity_id
                  AND m.valid_until IS NULL
                  AND r.relation_type = ?
              )
        """
        params: list = [fact_type, relation_type]
        if since is not None:
            sql += " AND f.created_at >= ?"
            params.append(to_iso(since))
        sql += " ORDER BY f.created_at DESC, f.rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_fact(r) for r in self._db.fetchall(sql, params)]

    def count_active(self, fact_type: Optional[str] = None) -> int:
        if fact_type is None:
            row = self._db.fetchone("SELECT COUNT(*) FROM entity_facts WHERE valid_until IS NULL")
        else:
            row = self._db.fetchone(
                "SELECT COUNT(*) FROM entity_facts WHERE fact_type = ? AND valid_until IS NULL",
                (fact_type,),
            )
        return row[0]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def invalidate(self, fact_id: str) -> EntityFact:
        """Close a fact (``valid_until = now``). Closing a closed fact is a no-op.

        Raises:
            NotFoundError: Unknown fact id.
        """
        fact = self.find_one(fact_id)
        if not fact.is_active:
            return fact
        now = utcnow()
        self._db.write(
            "UPDATE entity_facts SET valid_until = ?, updated_at = ? WHERE id = ?",
            (to_iso(now), to_iso(now), fact_id),
        )
        fact.valid_until = now
        fact.updated_at = now
        return fact

    def supersede(self, fact_id: str, new_fact_id: str) -> bool:
        """Close a fact in favour of ``new_fact_id`` and rank it deprecated.

        Returns False when the fact was already closed.
        """
        now = to_iso(utcnow())
        changed = self._db.write(
            """
            UPDATE entity_facts
            SET valid_until = ?, superseded_by = ?, rank = ?, updated_at = ?
            WHERE id = ? AND valid_until IS NULL
            """,
            (now, new_fact_id, FactRank.DEPRECATED.value, now, fact_id),
        )
        return changed > 0

    def confirm(self, fact_id: str, confidence_boost: float = 0.05) -> EntityFact:
        """Count another sighting of the same information."""
        fact = self.find_one(fact_id)
        fact.confirmation_count += 1
        fact.confidence = _boost(fact.confidence, confidence_boost)
        fact.updated_at = utcnow()
        self._db.write(
            """
            UPDATE entity_facts
            SET confirmation_count = ?, confidence = ?, updated_at = ?
            WHERE id = ?
            """,
            (fact.confirmation_count, fact.confidence, to_iso(fact.updated_at), fact_id),
        )
        return fact

    def enrich(self, fact_id: str, value: str, confidence_boost: float = 0.1) -> EntityFact:
        """Replace the value with a merged one and count the confirmation.

        The stored embedding no longer matches the value and is dropped.
        """
        fact = self.find_one(fact_id)
        fact.value = value
        fact.embedding = None
        fact.confirmation_count += 1
        fact.confidence = _boost(fact.confidence, confidence_boost)
        fact.updated_at = utcnow()
        self._db.write(
            """
            UPDATE entity_facts
            SET value = ?, embedding_json = NULL, confirmation_count = ?,
                confidence = ?, updated_at = ?
            WHERE id = ?
            """,
            (value, fact.confirmation_count, fact.confidence, to_iso(fact.updated_at), fact_id),
        )
        return fact

    def flag_for_review(self, fact_id: str, reason: str) -> EntityFact:
        fact = self.find_one(fact_id)
        fact.needs_review = True
        fact.review_reason = reason
        fact.updated_at = utcnow()
        self._db.write(
            "UPDATE entity_facts SET needs_review = 1, review_reason = ?, updated_at = ? WHERE id = ?",
            (reason, to_iso(fact.updated_at), fact_id),
        )
        return fact

    def resolve_review(self, fact_id: str) -> EntityFact:
        """Clear the review flag after a human looked at the fact."""
        fact = self.find_one(fact_id)
        fact.needs_review = False
        fact.review_reason = None
        fact.updated_at = utcnow()
        self._db.write(
            "UPDATE entity_facts SET needs_review = 0, review_reason = NULL, updated_at = ? WHERE id = ?",
            (to_iso(fact.updated_at), fact_id),
        )
        return fact

    def set_embedding(self, fact_id: str, embedding: list[float]) -> None:
        self._db.write(
            "UPDATE entity_facts SET embedding_json = ? WHERE id = ?",
            (json.dumps(embedding), fact_id),
        )

    def move_to_entity(self, from_entity_id: str, to_entity_id: str) -> int:
        """Reassign every fact of one entity to another. Returns the count."""
        moved = self._db.write(
            "UPDATE entity_facts SET entity_id = ?, updated_at = ? WHERE entity_id = ?",
            (to_entity_id, to_iso(utcnow()), from_entity_id),
        )
        if moved:
            logger.info("Moved %d facts from %s to %s", moved, from_entity_id, to_entity_id)
        return moved
