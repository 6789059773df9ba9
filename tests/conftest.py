"""Pytest fixtures for Entity Graph tests."""

import pytest

from entitygraph.interfaces import EntityType
from entitygraph.services import Database, KnowledgeGraph
from entitygraph.testing import MockEmbeddingService


@pytest.fixture
def db(tmp_path):
    """Provide a fresh SQLite database."""
    database = Database(tmp_path / "graph.db")
    yield database
    database.close()


@pytest.fixture
def kg(db):
    """Knowledge graph without embeddings (text-only dedup)."""
    return KnowledgeGraph(db)


@pytest.fixture
def embedding_service():
    """Provide a mock embedding service."""
    return MockEmbeddingService()


@pytest.fixture
def semantic_kg(db, embedding_service):
    """Knowledge graph with deterministic mock embeddings."""
    return KnowledgeGraph(db, embedding_service=embedding_service)


@pytest.fixture
def person(kg):
    return kg.entities.create(EntityType.PERSON, "Ann Lee")


@pytest.fixture
def organization(kg):
    return kg.entities.create(EntityType.ORGANIZATION, "Acme Inc.")
