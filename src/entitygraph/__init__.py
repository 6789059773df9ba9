"""Entity knowledge-graph store: entities, time-bounded facts and typed relations."""

__version__ = "0.1.0"
