"""Service configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from ..services.database import MEMORY_PATH
from ..services.embeddings import is_local_api_base

EMBEDDING_PROVIDERS = ("none", "fastembed", "openai")
FUSION_STRATEGIES = ("none", "skip", "supersede", "review", "source_priority")


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0 and 1, got {value}")


@dataclass
class DatabaseConfig:
    """SQLite database location."""
    path: str = "~/.entity-graph/graph.db"

    def __post_init__(self):
        if self.path != MEMORY_PATH:
            self.path = str(Path(self.path).expanduser())


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration.

    Default: none (text-only dedup).

    For local embeddings:
        provider: fastembed
        model: sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2

    For OpenAI (or Ollama with api_base):
        provider: openai
        model: text-embedding-3-small
        dimensions: 1536
    """
    provider: str = "none"
    model: Optional[str] = None
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    dimensions: Optional[int] = None

    def __post_init__(self):
        if self.provider not in EMBEDDING_PROVIDERS:
            raise ValueError(
                f"Invalid embedding provider: {self.provider}. "
                f"Valid options: {', '.join(EMBEDDING_PROVIDERS)}"
            )
        if self.api_key is None:
            self.api_key = os.environ.get("OPENAI_API_KEY")
        if self.api_base is None:
            self.api_base = os.environ.get("ENTITY_GRAPH_EMBEDDING_API_BASE")


@dataclass
class DedupConfig:
    """Fact deduplication thresholds."""
    semantic_threshold: float = 0.83
    fuzzy_threshold: float = 0.8
    temporal_min: float = 0.3
    temporal_max: float = 0.95
    temporal_fact_types: list[str] = field(
        default_factory=lambda: ["position", "company", "department", "location", "status"]
    )
    fusion: str = "none"
    fusion_confidence_threshold: float = 0.7

    def __post_init__(self):
        _check_unit_interval("semantic_threshold", self.semantic_threshold)
        _check_unit_interval("fuzzy_threshold", self.fuzzy_threshold)
        _check_unit_interval("temporal_min", self.temporal_min)
        _check_unit_interval("temporal_max", self.temporal_max)
        _check_unit_interval("fusion_confidence_threshold", self.fusion_confidence_threshold)
        if self.temporal_min >= self.temporal_max:
            raise ValueError("temporal_min must be lower than temporal_max")
        if self.fusion not in FUSION_STRATEGIES:
            raise ValueError(
                f"Invalid fusion strategy: {self.fusion}. "
                f"Valid options: {', '.join(FUSION_STRATEGIES)}"
            )


@dataclass
class InferenceConfig:
    """Relation inference settings."""
    fact_type: str = "company"
    org_match_threshold: float = 0.7
    default_confidence: float = 0.7

    def __post_init__(self):
        _check_unit_interval("org_match_threshold", self.org_match_threshold)
        _check_unit_interval("default_confidence", self.default_confidence)


@dataclass
class ServerConfig:
    """HTTP server configuration."""
    host: str = "127.0.0.1"
    port: int = 18791


@dataclass
class EntityGraphConfig:
    """Full service configuration."""
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "EntityGraphConfig":
        """Load configuration from YAML file. A missing file gives defaults."""
        path = Path(path).expanduser()
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "EntityGraphConfig":
        """Create configuration from dictionary."""
        return cls(
            db=DatabaseConfig(**data.get("db", {})),
            embedding=EmbeddingConfig(**data.get("embedding", {})),
            dedup=DedupConfig(**data.get("dedup", {})),
            inference=InferenceConfig(**data.get("inference", {})),
            server=ServerConfig(**data.get("server", {})),
        )

    @classmethod
    def from_env(cls) -> "EntityGraphConfig":
        """Load the file named by ENTITY_GRAPH_CONFIG (default ~/.entity-graph/config.yaml)."""
        config_path = os.environ.get("ENTITY_GRAPH_CONFIG", "~/.entity-graph/config.yaml")
        return cls.from_file(config_path)

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.embedding.provider == "openai":
            if not self.embedding.api_key and not is_local_api_base(self.embedding.api_base):
                errors.append("embedding.api_key is required (or set OPENAI_API_KEY)")

        if not self.db.path:
            errors.append("db.path is required")

        if not self.inference.fact_type:
            errors.append("inference.fact_type is required")

        return errors
