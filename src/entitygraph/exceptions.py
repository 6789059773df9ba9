"""Error taxonomy for the entity graph.

Every error raised by the stores derives from ``EntityGraphError`` so the
HTTP layer can map them to status codes in one place.
"""

from typing import Optional


class EntityGraphError(Exception):
    """Base class for entity graph errors."""
    status_code = 500


class NotFoundError(EntityGraphError):
    """An entity, fact or relation id is unknown."""
    status_code = 404


class ConflictError(EntityGraphError):
    """The operation conflicts with current state (e.g. self-merge)."""
    status_code = 409


class BadRequestError(EntityGraphError):
    """Invalid input: bad role, bad cardinality, depth > 1, ...

    Attributes:
        valid_options: Accepted values, when the error is about a choice
            (e.g. the valid roles of a relation type).
    """
    status_code = 400

    def __init__(self, message: str, valid_options: Optional[list[str]] = None):
        super().__init__(message)
        self.valid_options = list(valid_options) if valid_options else []


class ReferentialConflictError(ConflictError):
    """Hard delete blocked by dependent records.

    Attributes:
        references: Blocking table name -> number of referencing rows.
    """

    def __init__(self, message: str, references: dict[str, int]):
        super().__init__(message)
        self.references = dict(references)

    @property
    def count(self) -> int:
        """Total number of blocking references."""
        return sum(self.references.values())


class ServiceUnavailableError(EntityGraphError):
    """An optional collaborator is not configured."""
    status_code = 503
