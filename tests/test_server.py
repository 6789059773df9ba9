"""Tests for the HTTP server."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from entitygraph.interfaces import (
    EntityFact,
    EntityType,
    FactRank,
    MemberDraft,
    RelationDraft,
    RelationType,
)
from entitygraph.server import app as app_module
from entitygraph.server.app import create_app
from entitygraph.server.config import DatabaseConfig, EntityGraphConfig
from entitygraph.server.routes import add_error_handlers, router
from entitygraph.services import KnowledgeGraph
from entitygraph.services.database import Database
from entitygraph.utils import utcnow


@pytest.fixture
def graph(tmp_path):
    kg = KnowledgeGraph(Database(tmp_path / "server.db"))
    yield kg
    kg.close()


@pytest.fixture
def client(graph):
    """Create test client around a real graph on a temporary database."""
    # Directly set the module-level variable
    app_module._knowledge_graph = graph

    # Create app without lifespan (we manage the graph manually)
    app = FastAPI()
    add_error_handlers(app)
    app.include_router(router)

    yield TestClient(app)

    # Cleanup
    app_module._knowledge_graph = None


@pytest.fixture
def employment(graph):
    person = graph.entities.create(EntityType.PERSON, "Ann Lee")
    org = graph.entities.create(EntityType.ORGANIZATION, "Acme Inc.")
    relation = graph.relations.create(RelationDraft(
        relation_type=RelationType.EMPLOYMENT,
        members=[MemberDraft(person.id, "employee"), MemberDraft(org.id, "employer")],
    ))
    return person, org, relation


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/v1/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["embeddings"] == "none"
        assert data["owner_id"] is None

    def test_not_initialized(self):
        app = FastAPI()
        app.include_router(router)
        response = TestClient(app).get("/v1/health")
        assert response.status_code == 503


class TestEntityEndpoints:
    def test_get_entity(self, client, graph):
        person = graph.entities.create(EntityType.PERSON, "Ann Lee")

        response = client.get(f"/v1/entities/{person.id}")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Ann Lee"
        assert data["entity_type"] == "person"

    def test_unknown_entity_is_404(self, client):
        response = client.get("/v1/entities/missing")
        assert response.status_code == 404
        assert "missing" in response.json()["detail"]

    def test_deleted_entity_needs_flag(self, client, graph):
        person = graph.entities.create(EntityType.PERSON, "Ann Lee")
        graph.entities.soft_delete(person.id)

        assert client.get(f"/v1/entities/{person.id}").status_code == 404
        response = client.get(f"/v1/entities/{person.id}", params={"include_deleted": True})
        assert response.status_code == 200
        assert response.json()["deleted_at"] is not None


class TestFactEndpoints:
    @pytest.fixture
    def person(self, graph):
        person = graph.entities.create(EntityType.PERSON, "Ann Lee")
        graph.fact_store.insert(EntityFact(
            entity_id=person.id, fact_type="position", value="Engineer",
            rank=FactRank.DEPRECATED, valid_until=utcnow(),
        ))
        graph.fact_store.insert(EntityFact(
            entity_id=person.id, fact_type="position", value="Senior Engineer",
            rank=FactRank.PREFERRED,
        ))
        graph.fact_store.insert(EntityFact(
            entity_id=person.id, fact_type="hobby", value="Chess",
        ))
        return person

    def test_list_active_facts(self, client, person):
        response = client.get(f"/v1/entities/{person.id}/facts")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert {f["value"] for f in data["facts"]} == {"Senior Engineer", "Chess"}

    def test_list_ranked_facts(self, client, person):
        response = client.get(f"/v1/entities/{person.id}/facts", params={"ranked": True})
        values = [f["value"] for f in response.json()["facts"]]
        assert values == ["Senior Engineer", "Chess"]

    def test_list_with_history(self, client, person):
        response = client.get(
            f"/v1/entities/{person.id}/facts",
            params={"ranked": True, "include_history": True, "include_deprecated": True},
        )
        values = [f["value"] for f in response.json()["facts"]]
        assert values == ["Senior Engineer", "Chess", "Engineer"]

    def test_history(self, client, person):
        response = client.get(f"/v1/entities/{person.id}/facts/history")
        data = response.json()
        assert data["count"] == 1
        assert data["facts"][0]["value"] == "Engineer"
        assert data["facts"][0]["rank"] == "deprecated"

    def test_history_limit_is_validated(self, client, person):
        response = client.get(f"/v1/entities/{person.id}/facts/history", params={"limit": 0})
        assert response.status_code == 422

    def test_facts_of_unknown_entity(self, client):
        assert client.get("/v1/entities/missing/facts").status_code == 404

    def test_review_queue(self, client, graph, person):
        graph.fact_store.insert(EntityFact(
            entity_id=person.id, fact_type="position", value="Developer",
            needs_review=True, review_reason="possible duplicate",
        ))

        response = client.get("/v1/facts/review")
        assert response.status_code == 200
        data = response.json()
        assert [f["value"] for f in data] == ["Developer"]
        assert data[0]["review_reason"] == "possible duplicate"


class TestRelationEndpoints:
    def test_relations_with_context(self, client, employment):
        person, org, relation = employment

        response = client.get(f"/v1/entities/{person.id}/relations")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        context = data["relations"][0]
        assert context["relation"]["id"] == relation.id
        assert context["current_role"] == "employee"
        assert [m["entity_id"] for m in context["other_members"]] == [org.id]

    def test_relations_type_filter(self, client, employment):
        person, *_ = employment
        response = client.get(
            f"/v1/entities/{person.id}/relations", params={"relation_type": "friendship"}
        )
        assert response.json()["count"] == 0

    def test_invalid_relation_type(self, client, employment):
        person, *_ = employment
        response = client.get(
            f"/v1/entities/{person.id}/relations", params={"relation_type": "rivalry"}
        )
        assert response.status_code == 422

    def test_pair_is_symmetric(self, client, employment):
        person, org, relation = employment

        forward = client.get("/v1/relations/pair", params={"a": person.id, "b": org.id})
        backward = client.get("/v1/relations/pair", params={"a": org.id, "b": person.id})
        assert forward.json()["relation"]["id"] == relation.id
        assert backward.json()["relation"]["id"] == relation.id

    def test_pair_without_relation(self, client, employment):
        person, org, _ = employment
        response = client.get(
            "/v1/relations/pair",
            params={"a": person.id, "b": org.id, "relation_type": "partnership"},
        )
        assert response.status_code == 200
        assert response.json()["relation"] is None


class TestGraphEndpoint:
    def test_graph(self, client, employment):
        person, org, relation = employment

        response = client.get(f"/v1/entities/{person.id}/graph")
        assert response.status_code == 200
        data = response.json()
        assert data["central_entity_id"] == person.id
        assert {(n["id"], n["type"]) for n in data["nodes"]} == {
            (person.id, "person"),
            (org.id, "organization"),
        }
        assert data["edges"] == [{
            "id": relation.id,
            "source": person.id,
            "target": org.id,
            "relation_type": "employment",
            "source_role": "employee",
            "target_role": "employer",
        }]

    def test_depth_two_is_rejected(self, client, employment):
        person, *_ = employment
        response = client.get(f"/v1/entities/{person.id}/graph", params={"depth": 2})
        assert response.status_code == 400
        assert "depth" in response.json()["detail"]


class TestInferenceEndpoint:
    @pytest.fixture
    def unlinked(self, graph):
        person = graph.entities.create(EntityType.PERSON, "Bob")
        graph.entities.create(EntityType.ORGANIZATION, "Initech LLC")
        graph.fact_store.insert(EntityFact(entity_id=person.id, fact_type="company", value="Initech"))
        return person

    def test_dry_run(self, client, graph, unlinked):
        response = client.post("/v1/inference/run", json={"dry_run": True})
        assert response.status_code == 200
        data = response.json()
        assert data["dry_run"] is True
        assert data["processed"] == 1
        assert data["created"] == 1
        assert data["details"][0]["entity_id"] == unlinked.id
        assert graph.relations.find_by_entity(unlinked.id) == []

    def test_run(self, client, graph, unlinked):
        response = client.post("/v1/inference/run", json={})
        data = response.json()
        assert data["created"] == 1
        assert data["errors"] == []
        assert len(graph.relations.find_by_entity(unlinked.id)) == 1

    def test_invalid_limit(self, client, unlinked):
        response = client.post("/v1/inference/run", json={"limit": 0})
        assert response.status_code == 422


class TestCreateApp:
    def test_lifespan_builds_graph(self):
        config = EntityGraphConfig(db=DatabaseConfig(path=":memory:"))
        app = create_app(config)

        with TestClient(app) as client:
            assert client.get("/").json()["service"] == "entity-graph"
            assert client.get("/v1/health").json()["status"] == "ok"
            assert app_module._knowledge_graph is not None

        assert app_module._knowledge_graph is None
