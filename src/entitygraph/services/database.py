"""SQLite database shared by the entity, fact and relation stores.

Connection management:
    One persistent connection in WAL mode, shared by every store and
    guarded by a re-entrant lock. Single statements commit right away;
    the few operations that must serialize against other writers
    (owner change, restore, hard delete) use ``transaction()``, which opens
    a ``BEGIN IMMEDIATE`` transaction and so holds SQLite's write lock
    until it commits.

    Lifecycle:
        with Database(db_path) as db:
            entities = EntityStore(db)
            ...
"""

import logging
import sqlite3
import threading
import warnings
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

# Tables owned by the surrounding system that reference entities.
# (table, column) pairs; a hard delete is refused while any row matches.
DEPENDENT_REFERENCES: list[tuple[str, str]] = [
    ("activities", "owner_entity_id"),
    ("activities", "client_entity_id"),
    ("activity_members", "entity_id"),
    ("commitments", "from_entity_id"),
    ("commitments", "to_entity_id"),
    ("interaction_participants", "entity_id"),
]

SCHEMA = """
    CREATE TABLE IF NOT EXISTS entities (
        id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        name TEXT NOT NULL,
        search_name TEXT NOT NULL,
        is_bot INTEGER NOT NULL DEFAULT 0,
        is_owner INTEGER NOT NULL DEFAULT 0,
        organization_id TEXT,
        notes TEXT,
        creation_source TEXT NOT NULL DEFAULT 'manual',
        deleted_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS entity_identifiers (
        id TEXT PRIMARY KEY,
        entity_id TEXT NOT NULL,
        identifier_type TEXT NOT NULL,
        identifier_value TEXT NOT NULL,
        metadata_json TEXT DEFAULT '{}',
        created_at TEXT NOT NULL,
        FOREIGN KEY (entity_id) REFERENCES entities(id),
        UNIQUE(identifier_type, identifier_value)
    );

    CREATE TABLE IF NOT EXISTS entity_facts (
        id TEXT PRIMARY KEY,
        entity_id TEXT NOT NULL,
        fact_type TEXT NOT NULL,
        category TEXT,
        value TEXT,
        value_json TEXT,
        source TEXT NOT NULL,
        confidence REAL,
        rank TEXT NOT NULL DEFAULT 'normal',
        embedding_json TEXT,
        valid_from TEXT,
        valid_until TEXT,
        needs_review INTEGER NOT NULL DEFAULT 0,
        review_reason TEXT,
        confirmation_count INTEGER NOT NULL DEFAULT 1,
        superseded_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (entity_id) REFERENCES entities(id)
    );

    CREATE TABLE IF NOT EXISTS entity_relations (
        id TEXT PRIMARY KEY,
        relation_type TEXT NOT NULL,
        source TEXT NOT NULL,
        confidence REAL,
        metadata_json TEXT DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS entity_relation_members (
        relation_id TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        role TEXT NOT NULL,
        label TEXT,
        properties_json TEXT,
        valid_until TEXT,
        created_at TEXT NOT NULL,
        PRIMARY KEY (relation_id, entity_id, role),
        FOREIGN KEY (relation_id) REFERENCES entity_relations(id),
        FOREIGN KEY (entity_id) REFERENCES entities(id)
    );

    CREATE TABLE IF NOT EXISTS commitments (
        id TEXT PRIMARY KEY,
        from_entity_id TEXT,
        to_entity_id TEXT,
        title TEXT,
        created_at TEXT
    );

    CREATE TABLE IF NOT EXISTS activities (
        id TEXT PRIMARY KEY,
        owner_entity_id TEXT,
        client_entity_id TEXT,
        name TEXT,
        created_at TEXT
    );

    CREATE TABLE IF NOT EXISTS activity_members (
        activity_id TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        role TEXT
    );

    CREATE TABLE IF NOT EXISTS interaction_participants (
        interaction_id TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        role TEXT
    );

    -- Second line of defence for the single-owner rule
    CREATE UNIQUE INDEX IF NOT EXISTS idx_entities_single_owner
        ON entities(is_owner) WHERE is_owner = 1;
    CREATE INDEX IF NOT EXISTS idx_entities_type_name ON entities(entity_type, search_name);
    CREATE INDEX IF NOT EXISTS idx_identifiers_entity ON entity_identifiers(entity_id);
    CREATE INDEX IF NOT EXISTS idx_facts_entity_type_valid
        ON entity_facts(entity_id, fact_type, valid_until);
    CREATE INDEX IF NOT EXISTS idx_facts_review ON entity_facts(needs_review);
    CREATE INDEX IF NOT EXISTS idx_relations_type ON entity_relations(relation_type);
    CREATE INDEX IF NOT EXISTS idx_members_relation ON entity_relation_members(relation_id);
    CREATE INDEX IF NOT EXISTS idx_members_entity_valid
        ON entity_relation_members(entity_id, valid_until);
"""


class Database:
    """Persistent SQLite connection plus schema for the entity graph."""

    def __init__(self, db_path: str | Path = MEMORY_PATH):
        """Open (and create if needed) the database.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
        """
        self.db_path = str(db_path)
        if self.db_path != MEMORY_PATH:
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(Path(self.db_path).expanduser())

        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        # True while a transaction() block is open
        self._explicit = False

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA)

    def execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        """Execute one statement under the lock without committing."""
        with self._lock:
            return self._conn.execute(sql, params)

    def fetchone(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def write(self, sql: str, params: tuple | list = ()) -> int:
        """Execute and commit one statement. Returns the affected row count."""
        with self._lock:
            cursor = self._conn.execute(sql, params)
            if not self._explicit:
                self._conn.commit()
            return cursor.rowcount

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

        The write lock is taken up front, so a concurrent writer cannot
        observe or change the rows read inside the block until it commits.
        Rolls back on any exception. Nested calls join the outer transaction.
        """
        with self._lock:
            if self._explicit:
                yield self._conn
                return

            if self._conn.in_transaction:
                self._conn.commit()
            self._conn.execute("BEGIN IMMEDIATE")
            self._explicit = True
            try:
                yield self._conn
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()
            finally:
                self._explicit = False

    def count_references(self, entity_id: str) -> dict[str, int]:
        """Count rows in dependent tables that reference an entity.

        Returns:
            Table name -> number of referencing rows, only for tables with
            at least one reference.
        """
        counts: dict[str, int] = {}
        with self._lock:
            for table, column in DEPENDENT_REFERENCES:
                row = self._conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE {column} = ?",
                    (entity_id,),
                ).fetchone()
                if row[0]:
                    counts[table] = counts.get(table, 0) + row[0]
        return counts

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
        return None

    def __del__(self) -> None:
        self.close()

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if hasattr(self, "_conn") and self._conn:
            try:
                self._conn.close()
            except sqlite3.ProgrammingError:
                pass
            except Exception as e:
                warnings.warn(
                    f"Unexpected error closing Database: {e}",
                    RuntimeWarning,
                    stacklevel=2,
                )
