"""Entity graph HTTP server.

FastAPI read-path interface over the knowledge graph, plus an endpoint to
trigger relation inference.
"""

from .app import create_app, run_server

__all__ = ["create_app", "run_server"]
