"""Entity Graph CLI.

Usage:
    entitygraph init                # text-only dedup (no embeddings)
    entitygraph init --fastembed    # local FastEmbed embeddings
    entitygraph init --ollama       # Ollama embeddings via OpenAI-compatible API
    entitygraph serve               # Start the HTTP server
    entitygraph infer --dry-run     # Preview relations inferred from facts
    entitygraph graph ENTITY_ID     # Print the one-hop graph of an entity
    entitygraph stats               # Inference backlog counters
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .exceptions import EntityGraphError
from .utils import from_iso

ENTITY_GRAPH_DIR = Path.home() / ".entity-graph"
CONFIG_FILE = ENTITY_GRAPH_DIR / "config.yaml"

CONFIG_TEMPLATE = """\
# Entity Graph Configuration
# Provider "none" keeps dedup text-only (exact, temporal and fuzzy matching).

db:
  path: {db_path}

embedding:
{embedding_block}
dedup:
  semantic_threshold: 0.83
  fuzzy_threshold: 0.8
  temporal_min: 0.3
  temporal_max: 0.95
  fusion: none

inference:
  fact_type: company
  org_match_threshold: 0.7
  default_confidence: 0.7

server:
  host: 127.0.0.1
  port: 18791
"""

EMBEDDING_BLOCKS = {
    "none": "  provider: none\n",
    "fastembed": (
        "  provider: fastembed\n"
        "  model: sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2\n"
        "  dimensions: 384\n"
    ),
    "openai": (
        "  provider: openai\n"
        "  model: text-embedding-3-small\n"
        "  dimensions: 1536\n"
    ),
    "ollama": (
        "  provider: openai          # Uses OpenAI-compatible API\n"
        "  model: nomic-embed-text   # Run: ollama pull nomic-embed-text\n"
        "  api_base: http://localhost:11434/v1\n"
        "  dimensions: 768\n"
    ),
}


def _detect_provider(args: argparse.Namespace) -> str:
    for provider in ("fastembed", "openai", "ollama"):
        if getattr(args, provider, False):
            return provider
    return "none"


def _load_config(args: argparse.Namespace):
    from .server.config import EntityGraphConfig

    if getattr(args, "config", None):
        return EntityGraphConfig.from_file(args.config)
    return EntityGraphConfig.from_env()


def _open_graph(args: argparse.Namespace):
    from .services import create_knowledge_graph

    return create_knowledge_graph(_load_config(args))


def cmd_init(args: argparse.Namespace) -> int:
    """Write a starter config file."""
    config_file = Path(args.config).expanduser() if args.config else CONFIG_FILE
    provider = _detect_provider(args)

    if config_file.exists() and not args.force:
        print(f"Config already exists: {config_file}")
        print("   Use --force to overwrite.")
        return 1

    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(CONFIG_TEMPLATE.format(
        db_path=config_file.parent / "graph.db",
        embedding_block=EMBEDDING_BLOCKS[provider],
    ))
    print(f"Config written: {config_file}")
    if provider == "openai":
        print("   Set OPENAI_API_KEY before starting the server.")
    print()
    print("Start the server:")
    print("   entitygraph serve")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the HTTP server."""
    from .server.app import run_server

    run_server(
        config=_load_config(args),
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )
    return 0


def cmd_infer(args: argparse.Namespace) -> int:
    """Run relation inference once (the hook for a periodic job)."""
    since = from_iso(args.since) if args.since else None
    with _open_graph(args) as kg:
        result = kg.inference.infer_relations(since=since, dry_run=args.dry_run, limit=args.limit)

    label = "Would create" if args.dry_run else "Created"
    print(f"Processed: {result.processed}")
    print(f"{label}: {result.created}")
    print(f"Skipped: {result.skipped}")
    if result.errors:
        print(f"Errors: {len(result.errors)}")
        for error in result.errors:
            print(f"   {error['fact_id']}: {error['error']}")
    if args.dry_run and result.details:
        print(json.dumps(result.details, indent=2, ensure_ascii=False))
    return 1 if result.errors else 0


def cmd_graph(args: argparse.Namespace) -> int:
    """Print the one-hop graph around an entity as JSON."""
    with _open_graph(args) as kg:
        try:
            graph = kg.graph.get_graph(args.entity_id)
        except EntityGraphError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print(json.dumps({
        "central_entity_id": graph.central_entity_id,
        "nodes": [
            {"id": n.id, "name": n.name, "type": n.entity_type.value}
            for n in graph.nodes
        ],
        "edges": [
            {
                "id": e.id,
                "source": e.source,
                "target": e.target,
                "relation_type": e.relation_type.value,
                "source_role": e.source_role,
                "target_role": e.target_role,
            }
            for e in graph.edges
        ],
    }, indent=2, ensure_ascii=False))
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Print inference backlog counters."""
    with _open_graph(args) as kg:
        stats = kg.inference.get_inference_stats()

    print(f"Facts ({kg.inference.rule.fact_type}): {stats.total_facts}")
    print(f"Unlinked facts: {stats.unlinked_facts}")
    print(f"Organizations: {stats.organizations}")
    print(f"Inferred relations: {stats.inferred_relations}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", "-c", type=str, default=None,
                        help="Path to config file (default: ~/.entity-graph/config.yaml)")
    common.add_argument("--log-level", type=str, default="info",
                        choices=["debug", "info", "warning", "error"])

    parser = argparse.ArgumentParser(
        prog="entitygraph",
        description="Entity Graph - entities, temporal facts and relations",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init
    init_parser = subparsers.add_parser("init", parents=[common], help="Write a starter config")
    provider_group = init_parser.add_mutually_exclusive_group()
    provider_group.add_argument("--fastembed", action="store_true",
                                help="Use FastEmbed local embeddings")
    provider_group.add_argument("--openai", action="store_true",
                                help="Use OpenAI embeddings (reads OPENAI_API_KEY)")
    provider_group.add_argument("--ollama", action="store_true",
                                help="Use Ollama local embeddings")
    init_parser.add_argument("--force", action="store_true",
                             help="Overwrite existing config")

    # serve
    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the HTTP server")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", "-p", type=int, default=None)

    # infer
    infer_parser = subparsers.add_parser("infer", parents=[common],
                                         help="Infer relations from unlinked facts")
    infer_parser.add_argument("--dry-run", action="store_true",
                              help="Report planned relations without creating them")
    infer_parser.add_argument("--limit", type=int, default=None,
                              help="Maximum number of facts to examine")
    infer_parser.add_argument("--since", type=str, default=None,
                              help="Only facts created at or after this ISO timestamp")

    # graph
    graph_parser = subparsers.add_parser("graph", parents=[common],
                                         help="Print the one-hop graph of an entity")
    graph_parser.add_argument("entity_id")

    # stats
    subparsers.add_parser("stats", parents=[common], help="Show inference counters")

    return parser


COMMANDS = {
    "init": cmd_init,
    "serve": cmd_serve,
    "infer": cmd_infer,
    "graph": cmd_graph,
    "stats": cmd_stats,
}


def main(argv: Optional[list[str]] = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(COMMANDS[args.command](args))


if __name__ == "__main__":
    main()
