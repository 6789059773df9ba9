"""FastAPI application for the entity-graph service."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..services import KnowledgeGraph, create_knowledge_graph
from ..services.database import MEMORY_PATH
from .config import EntityGraphConfig
from .routes import add_error_handlers, router

# Global service instance (set during lifespan)
_knowledge_graph: Optional[KnowledgeGraph] = None

logger = logging.getLogger("entitygraph.server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global _knowledge_graph

    config: EntityGraphConfig = app.state.config

    errors = config.validate()
    if errors:
        raise ValueError(f"Configuration errors: {errors}")

    logger.info("Starting entity-graph service (db: %s)", config.db.path)
    _knowledge_graph = create_knowledge_graph(config)

    yield

    logger.info("Shutting down entity-graph service")
    await _knowledge_graph.aclose()
    _knowledge_graph = None


def create_app(config: Optional[EntityGraphConfig] = None) -> FastAPI:
    """Create FastAPI application.

    Args:
        config: Service configuration. If None, loads from environment.

    Returns:
        Configured FastAPI application.
    """
    if config is None:
        config = EntityGraphConfig.from_env()

    app = FastAPI(
        title="Entity Graph",
        description="Entity knowledge graph with temporal facts and n-ary relations",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.config = config

    # CORS middleware (localhost only). The server binds to 127.0.0.1.
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"http://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    add_error_handlers(app)
    app.include_router(router)

    @app.get("/")
    async def root():
        return {
            "service": "entity-graph",
            "version": __version__,
            "docs": "/docs",
        }

    return app


def run_server(
    config: Optional[EntityGraphConfig] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    log_level: str = "info",
):
    """Run the HTTP server.

    Args:
        config: Service configuration. If None, loads from environment.
        host: Override host from config.
        port: Override port from config.
        log_level: Logging level.
    """
    if config is None:
        config = EntityGraphConfig.from_env()

    if config.db.path != MEMORY_PATH:
        Path(config.db.path).parent.mkdir(parents=True, exist_ok=True)

    app = create_app(config)

    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=log_level,
    )
