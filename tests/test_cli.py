"""Tests for the entitygraph CLI (init, infer, graph, stats commands)."""

import json

import pytest

from entitygraph import cli
from entitygraph.cli import build_parser, main
from entitygraph.interfaces import EntityFact, EntityType
from entitygraph.services import KnowledgeGraph
from entitygraph.services.database import Database


def run(*argv):
    with pytest.raises(SystemExit) as exc:
        main(list(argv))
    return exc.value.code


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    """Isolated config location; ~/.entity-graph is never touched."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr(cli, "CONFIG_FILE", tmp_path / "home" / "config.yaml")
    return tmp_path / "config.yaml"


@pytest.fixture
def seeded(config_path):
    """Config plus a database with one person whose company is known."""
    assert run("init", "-c", str(config_path)) == 0
    with KnowledgeGraph(Database(config_path.parent / "graph.db")) as kg:
        person = kg.entities.create(EntityType.PERSON, "Ann Lee")
        org = kg.entities.create(EntityType.ORGANIZATION, "Acme Inc.")
        kg.fact_store.insert(EntityFact(entity_id=person.id, fact_type="company", value="ACME"))
    return person, org


class TestInitCommand:
    def test_init_creates_config_file(self, config_path, capsys):
        assert run("init", "-c", str(config_path)) == 0

        content = config_path.read_text()
        assert "provider: none" in content
        assert str(config_path.parent / "graph.db") in content
        assert "Config written" in capsys.readouterr().out

    def test_init_default_location(self, config_path):
        assert run("init") == 0
        assert cli.CONFIG_FILE.exists()

    def test_init_fastembed(self, config_path):
        run("init", "-c", str(config_path), "--fastembed")
        content = config_path.read_text()
        assert "provider: fastembed" in content
        assert "paraphrase-multilingual-MiniLM-L12-v2" in content

    def test_init_ollama(self, config_path):
        run("init", "-c", str(config_path), "--ollama")
        content = config_path.read_text()
        assert "localhost:11434" in content
        assert "nomic-embed-text" in content

    def test_init_refuses_overwrite_without_force(self, config_path, capsys):
        run("init", "-c", str(config_path))
        config_path.write_text("# custom\n")

        assert run("init", "-c", str(config_path)) == 1
        assert config_path.read_text() == "# custom\n"
        assert "already exists" in capsys.readouterr().out

    def test_init_force_overwrites(self, config_path):
        run("init", "-c", str(config_path))
        config_path.write_text("# custom\n")

        assert run("init", "-c", str(config_path), "--force") == 0
        assert "provider: none" in config_path.read_text()

    def test_generated_config_loads(self, config_path):
        from entitygraph.server.config import EntityGraphConfig

        run("init", "-c", str(config_path), "--ollama")
        config = EntityGraphConfig.from_file(config_path)
        assert config.embedding.api_base == "http://localhost:11434/v1"
        assert config.validate() == []


class TestInferCommand:
    def test_dry_run(self, seeded, config_path, capsys):
        person, org = seeded

        assert run("infer", "-c", str(config_path), "--dry-run") == 0

        out = capsys.readouterr().out
        assert "Processed: 1" in out
        assert "Would create: 1" in out
        assert org.id in out

    def test_run_then_stats(self, seeded, config_path, capsys):
        assert run("infer", "-c", str(config_path)) == 0
        assert "Created: 1" in capsys.readouterr().out

        assert run("stats", "-c", str(config_path)) == 0
        out = capsys.readouterr().out
        assert "Facts (company): 1" in out
        assert "Unlinked facts: 0" in out
        assert "Organizations: 1" in out
        assert "Inferred relations: 1" in out


class TestGraphCommand:
    def test_graph_json(self, seeded, config_path, capsys):
        person, org = seeded
        run("infer", "-c", str(config_path))
        capsys.readouterr()

        assert run("graph", "-c", str(config_path), person.id) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["central_entity_id"] == person.id
        assert {n["id"] for n in data["nodes"]} == {person.id, org.id}
        assert data["edges"][0]["relation_type"] == "employment"

    def test_unknown_entity(self, seeded, config_path, capsys):
        assert run("graph", "-c", str(config_path), "missing") == 1
        assert "Error:" in capsys.readouterr().err


class TestMain:
    def test_no_command_shows_help(self, capsys):
        assert run() == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_serve_options(self):
        args = build_parser().parse_args(["serve", "--port", "9000", "--log-level", "debug"])
        assert args.port == 9000
        assert args.log_level == "debug"
        assert args.config is None
