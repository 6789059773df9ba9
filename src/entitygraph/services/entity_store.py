"""Entity storage: identity, the single-owner rule, soft delete and merge."""

import json
import logging
import sqlite3
from typing import Optional

from ..exceptions import BadRequestError, ConflictError, NotFoundError, ReferentialConflictError
from ..interfaces import Entity, EntityIdentifier, EntityType, new_id
from ..utils import escape_like, from_iso, to_iso, utcnow
from .database import Database

logger = logging.getLogger(__name__)

# Fields update() accepts
UPDATABLE_FIELDS = {"name", "is_bot", "organization_id", "notes", "entity_type"}


def _coerce_entity_type(value) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        raise BadRequestError(
            f"Invalid entity type: {value}",
            valid_options=[t.value for t in EntityType],
        ) from None


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        id=row["id"],
        entity_type=EntityType(row["entity_type"]),
        name=row["name"],
        is_bot=bool(row["is_bot"]),
        is_owner=bool(row["is_owner"]),
        organization_id=row["organization_id"],
        notes=row["notes"],
        creation_source=row["creation_source"],
        deleted_at=from_iso(row["deleted_at"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def _row_to_identifier(row: sqlite3.Row) -> EntityIdentifier:
    return EntityIdentifier(
        id=row["id"],
        entity_id=row["entity_id"],
        identifier_type=row["identifier_type"],
        identifier_value=row["identifier_value"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        created_at=from_iso(row["created_at"]),
    )


class EntityStore:
    """SQLite-backed store of people and organizations.

    Soft-deleted entities are hidden from every read unless the caller
    passes ``include_deleted=True``. ``set_owner``, ``restore`` and
    ``hard_delete`` run inside an immediate write transaction; everything
    else commits statement by statement.

    Args:
        db: Shared database.
        fact_store: Optional FactStore, used by ``merge`` to move facts.
            Without it, merge moves identifiers only.
    """

    def __init__(self, db: Database, fact_store=None):
        self._db = db
        self.fact_store = fact_store

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(
        self,
        entity_type: EntityType,
        name: str,
        *,
        is_bot: bool = False,
        organization_id: Optional[str] = None,
        notes: Optional[str] = None,
        creation_source: str = "manual",
    ) -> Entity:
        """Create an entity.

        Raises:
            BadRequestError: If the name is empty.
        """
        name = (name or "").strip()
        if not name:
            raise BadRequestError("Entity name must not be empty")

        entity = Entity(
            entity_type=entity_type,
            name=name,
            is_bot=is_bot,
            organization_id=organization_id,
            notes=notes,
            creation_source=creation_source,
        )
        self._db.write(
            """
            INSERT INTO entities (
                id, entity_type, name, search_name, is_bot, is_owner,
                organization_id, notes, creation_source, deleted_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, NULL, ?, ?)
            """,
            (
                entity.id, entity.entity_type.value, entity.name, entity.name.casefold(),
                int(entity.is_bot), entity.organization_id, entity.notes,
                entity.creation_source, to_iso(entity.created_at), to_iso(entity.updated_at),
            ),
        )
        logger.debug("Created %s entity %s (%s)", entity_type.value, entity.id, name)
        return entity

    def get(self, entity_id: str, include_deleted: bool = False) -> Optional[Entity]:
        """Entity by id, or None."""
        row = self._db.fetchone("SELECT * FROM entities WHERE id = ?", (entity_id,))
        if row is None:
            return None
        entity = _row_to_entity(row)
        if entity.is_deleted and not include_deleted:
            return None
        return entity

    def find_one(self, entity_id: str, include_deleted: bool = False) -> Entity:
        """Entity by id.

        Raises:
            NotFoundError: If the id is unknown (or soft-deleted, unless
                ``include_deleted``).
        """
        entity = self.get(entity_id, include_deleted=include_deleted)
        if entity is None:
            raise NotFoundError(f"Entity with id '{entity_id}' not found")
        return entity

    def exists(self, entity_id: str) -> bool:
        return self.get(entity_id) is not None

    def find_many(self, entity_ids: list[str], include_deleted: bool = False) -> dict[str, Entity]:
        """Look up several entities at once.

        Returns:
            Mapping of id -> Entity for the ids that were found.
        """
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self._db.fetchall(
            f"SELECT * FROM entities WHERE id IN ({placeholders})", ids
        )
        result = {}
        for row in rows:
            entity = _row_to_entity(row)
            if entity.is_deleted and not include_deleted:
                continue
            result[entity.id] = entity
        return result

    def find_all(
        self,
        entity_type: Optional[EntityType] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> dict:
        """Paginated listing with optional type filter and name search.

        Args:
            entity_type: Only entities of this type.
            search: Case-insensitive substring of the name.
            limit: Page size.
            offset: Rows to skip.
            include_deleted: Include soft-deleted entities.

        Returns:
            Dict with ``items`` (list of Entity), ``total``, ``limit`` and ``offset``.
        """
        where = []
        params: list = []
        if not include_deleted:
            where.append("deleted_at IS NULL")
        if entity_type is not None:
            where.append("entity_type = ?")
            params.append(entity_type.value)
        if search:
            where.append("search_name LIKE ? ESCAPE '\\'")
            params.append(f"%{escape_like(search.casefold())}%")
        clause = f"WHERE {' AND '.join(where)}" if where else ""

        total = self._db.fetchone(f"SELECT COUNT(*) FROM entities {clause}", params)[0]
        rows = self._db.fetchall(
            f"SELECT * FROM entities {clause} ORDER BY updated_at DESC, rowid DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return {
            "items": [_row_to_entity(r) for r in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    def find_me(self) -> Optional[Entity]:
        """The current owner entity, or None if no owner is set."""
        row = self._db.fetchone(
            "SELECT * FROM entities WHERE is_owner = 1 AND deleted_at IS NULL"
        )
        return _row_to_entity(row) if row else None

    # ------------------------------------------------------------------
    # Update / ownership
    # ------------------------------------------------------------------

    def update(self, entity_id: str, **patch) -> Entity:
        """Apply a partial update.

        Ownership and deletion have dedicated operations and cannot be
        patched here.

        Raises:
            NotFoundError: Unknown entity.
            BadRequestError: Unknown field, empty name, unknown entity type,
                or an organization_id that is not an organization.
        """
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise BadRequestError(
                f"Cannot update fields: {', '.join(sorted(unknown))}",
                valid_options=sorted(UPDATABLE_FIELDS),
            )

        if "entity_type" in patch:
            patch["entity_type"] = _coerce_entity_type(patch["entity_type"])
        if "is_bot" in patch:
            patch["is_bot"] = bool(patch["is_bot"])

        entity = self.find_one(entity_id)
        if patch.get("organization_id") is not None:
            self._check_organization(patch["organization_id"], entity_id)
        for key, value in patch.items():
            setattr(entity, key, value)
        entity.name = (entity.name or "").strip()
        if not entity.name:
            raise BadRequestError("Entity name must not be empty")
        entity.updated_at = utcnow()

        self._db.write(
            """
            UPDATE entities SET entity_type = ?, name = ?, search_name = ?, is_bot = ?,
                organization_id = ?, notes = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                entity.entity_type.value, entity.name, entity.name.casefold(),
                int(entity.is_bot), entity.organization_id, entity.notes,
                to_iso(entity.updated_at), entity.id,
            ),
        )
        return entity

    def _check_organization(self, organization_id: str, entity_id: str) -> None:
        if organization_id == entity_id:
            raise BadRequestError("An entity cannot be its own organization")
        organization = self.get(organization_id)
        if organization is None or organization.entity_type is not EntityType.ORGANIZATION:
            raise BadRequestError(
                f"organization_id '{organization_id}' does not refer to an organization"
            )

    def set_owner(self, entity_id: str) -> Entity:
        """Make ``entity_id`` the single owner.

        Runs in one immediate transaction: the previous owner (if any and
        different) is cleared first, then the target is flagged. Calling it
        for the current owner changes nothing.

        Raises:
            NotFoundError: Unknown or soft-deleted entity.
        """
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE id = ? AND deleted_at IS NULL", (entity_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Entity with id '{entity_id}' not found")
            target = _row_to_entity(row)
            if target.is_owner:
                return target

            now = to_iso(utcnow())
            current = conn.execute(
                "SELECT id FROM entities WHERE is_owner = 1"
            ).fetchone()
            if current is not None:
                conn.execute(
                    "UPDATE entities SET is_owner = 0, updated_at = ? WHERE id = ?",
                    (now, current["id"]),
                )
                logger.info("Owner cleared from entity %s", current["id"])

            conn.execute(
                "UPDATE entities SET is_owner = 1, updated_at = ? WHERE id = ?",
                (now, entity_id),
            )

        logger.info("Owner set to entity %s", entity_id)
        return self.find_one(entity_id)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def soft_delete(self, entity_id: str) -> Entity:
        """Mark an entity deleted. Facts and relations are left untouched.

        Raises:
            NotFoundError: Unknown or already deleted entity.
            BadRequestError: The entity is the owner.
        """
        entity = self.find_one(entity_id)
        if entity.is_owner:
            raise BadRequestError("Cannot delete the owner entity")

        now = utcnow()
        self._db.write(
            "UPDATE entities SET deleted_at = ?, updated_at = ? WHERE id = ?",
            (to_iso(now), to_iso(now), entity_id),
        )
        entity.deleted_at = now
        entity.updated_at = now
        logger.info("Soft-deleted entity %s", entity_id)
        return entity

    def restore(self, entity_id: str) -> Entity:
        """Undo a soft delete.

        Holds the write lock while checking and updating the row, so a
        concurrent hard delete cannot interleave.

        Raises:
            NotFoundError: Unknown entity.
            BadRequestError: The entity is not soft-deleted.
        """
        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Entity with id '{entity_id}' not found")
            if row["deleted_at"] is None:
                raise BadRequestError(f"Entity '{entity_id}' is not deleted")
            conn.execute(
                "UPDATE entities SET deleted_at = NULL, updated_at = ? WHERE id = ?",
                (to_iso(utcnow()), entity_id),
            )

        logger.info("Restored entity %s", entity_id)
        return self.find_one(entity_id)

    def hard_delete(self, entity_id: str, confirm: bool = False) -> None:
        """Physically remove an entity with its facts, identifiers and memberships.

        Raises:
            BadRequestError: ``confirm`` is not True, or the entity is the owner.
            NotFoundError: Unknown entity (soft-deleted ones can be hard-deleted).
            ReferentialConflictError: Dependent records still reference the entity.
        """
        if confirm is not True:
            raise BadRequestError("Hard delete requires confirm=true")

        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Entity with id '{entity_id}' not found")
            if row["is_owner"]:
                raise BadRequestError("Cannot delete the owner entity")

            references = self._db.count_references(entity_id)
            if references:
                details = ", ".join(f"{table} ({count})" for table, count in references.items())
                raise ReferentialConflictError(
                    f"Entity '{entity_id}' is referenced by {sum(references.values())} "
                    f"dependent records: {details}",
                    references=references,
                )

            conn.execute("DELETE FROM entity_facts WHERE entity_id = ?", (entity_id,))
            conn.execute("DELETE FROM entity_identifiers WHERE entity_id = ?", (entity_id,))
            conn.execute("DELETE FROM entity_relation_members WHERE entity_id = ?", (entity_id,))
            conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,))

        logger.info("Hard-deleted entity %s", entity_id)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(self, source_id: str, target_id: str) -> Entity:
        """Move identifiers and facts of ``source_id`` to ``target_id``, then
        soft-delete the source.

        The steps commit one by one. A failure part way leaves data on both
        entities; calling merge again finishes the job because every step
        only moves what is still attached to the source.

        Raises:
            ConflictError: ``source_id == target_id``.
            NotFoundError: Either entity is unknown.
            BadRequestError: The source is the owner.

        Returns:
            The target entity.
        """
        if source_id == target_id:
            raise ConflictError("Cannot merge entity with itself")

        source = self.find_one(source_id, include_deleted=True)
        target = self.find_one(target_id)
        if source.is_owner:
            raise BadRequestError("Cannot merge the owner entity into another entity")

        moved_identifiers = self.move_identifiers(source_id, target_id)
        moved_facts = 0
        if self.fact_store is not None:
            moved_facts = self.fact_store.move_to_entity(source_id, target_id)
        else:
            logger.warning("Merge %s -> %s without fact store: facts not moved", source_id, target_id)

        if not source.is_deleted:
            self.soft_delete(source_id)

        logger.info(
            "Merged entity %s into %s (%d identifiers, %d facts)",
            source_id, target_id, moved_identifiers, moved_facts,
        )
        return target

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def add_identifier(
        self,
        entity_id: str,
        identifier_type: str,
        identifier_value: str,
        metadata: Optional[dict] = None,
    ) -> EntityIdentifier:
        """Attach an external identifier to an entity.

        Raises:
            NotFoundError: Unknown entity.
            ConflictError: The identifier already belongs to another entity.
        """
        self.find_one(entity_id)
        existing = self.find_by_identifier(identifier_type, identifier_value)
        if existing is not None:
            if existing.entity_id == entity_id:
                return existing
            raise ConflictError(
                f"Identifier {identifier_type}:{identifier_value} already belongs "
                f"to entity '{existing.entity_id}'"
            )

        identifier = EntityIdentifier(
            id=new_id(),
            entity_id=entity_id,
            identifier_type=identifier_type,
            identifier_value=identifier_value,
            metadata=metadata or {},
        )
        self._db.write(
            """
            INSERT INTO entity_identifiers
                (id, entity_id, identifier_type, identifier_value, metadata_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                identifier.id, entity_id, identifier_type, identifier_value,
                json.dumps(identifier.metadata), to_iso(identifier.created_at),
            ),
        )
        return identifier

    def find_by_identifier(
        self, identifier_type: str, identifier_value: str
    ) -> Optional[EntityIdentifier]:
        row = self._db.fetchone(
            """
            SELECT * FROM entity_identifiers
            WHERE identifier_type = ? AND identifier_value = ?
            """,
            (identifier_type, identifier_value),
        )
        return _row_to_identifier(row) if row else None

    def list_identifiers(self, entity_id: str) -> list[EntityIdentifier]:
        rows = self._db.fetchall(
            "SELECT * FROM entity_identifiers WHERE entity_id = ? ORDER BY created_at",
            (entity_id,),
        )
        return [_row_to_identifier(r) for r in rows]

    def find_or_create_by_identifier(
        self,
        identifier_type: str,
        identifier_value: str,
        name: str,
        entity_type: EntityType = EntityType.PERSON,
        creation_source: str = "extracted",
        is_bot: bool = False,
    ) -> tuple[Entity, bool]:
        """Resolve an external identifier to an entity, creating one if needed.

        Used by ingestion for implicitly created entities (e.g. a chat
        participant seen for the first time).

        Returns:
            (entity, created) where ``created`` is True for a new entity.
        """
        with self._db.lock:
            identifier = self.find_by_identifier(identifier_type, identifier_value)
            if identifier is not None:
                entity = self.get(identifier.entity_id)
                if entity is not None:
                    return entity, False

            entity = self.create(
                entity_type, name, is_bot=is_bot, creation_source=creation_source
            )
            if identifier is not None:
                # Identifier pointed at a deleted entity; re-home it
                self._db.write(
                    "UPDATE entity_identifiers SET entity_id = ? WHERE id = ?",
                    (entity.id, identifier.id),
                )
            else:
                self.add_identifier(entity.id, identifier_type, identifier_value)
            return entity, True

    def move_identifiers(self, from_entity_id: str, to_entity_id: str) -> int:
        """Reassign all identifiers of one entity to another. Returns the count."""
        return self._db.write(
            "UPDATE entity_identifiers SET entity_id = ? WHERE entity_id = ?",
            (to_entity_id, from_entity_id),
        )
