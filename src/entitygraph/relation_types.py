"""Role vocabulary and cardinality rules per relation type."""

from dataclasses import dataclass

from .exceptions import BadRequestError
from .interfaces import MemberDraft, RelationType


@dataclass(frozen=True)
class Cardinality:
    """Allowed number of active members."""
    min: int
    max: int


RELATION_ROLES: dict[RelationType, tuple[str, ...]] = {
    RelationType.EMPLOYMENT: ("employee", "employer"),
    RelationType.REPORTING: ("subordinate", "manager"),
    RelationType.TEAM: ("member", "lead", "sponsor"),
    RelationType.MARRIAGE: ("spouse",),
    RelationType.PARENTHOOD: ("parent", "child"),
    RelationType.SIBLINGHOOD: ("sibling",),
    RelationType.FRIENDSHIP: ("friend",),
    RelationType.ACQUAINTANCE: ("acquaintance",),
    RelationType.MENTORSHIP: ("mentor", "mentee"),
    RelationType.PARTNERSHIP: ("partner",),
    RelationType.CLIENT_VENDOR: ("client", "vendor"),
}

RELATION_CARDINALITY: dict[RelationType, Cardinality] = {
    RelationType.EMPLOYMENT: Cardinality(2, 2),
    RelationType.REPORTING: Cardinality(2, 2),
    RelationType.TEAM: Cardinality(2, 100),
    RelationType.MARRIAGE: Cardinality(2, 2),
    RelationType.PARENTHOOD: Cardinality(2, 2),
    RelationType.SIBLINGHOOD: Cardinality(2, 20),
    RelationType.FRIENDSHIP: Cardinality(2, 2),
    RelationType.ACQUAINTANCE: Cardinality(2, 2),
    RelationType.MENTORSHIP: Cardinality(2, 2),
    RelationType.PARTNERSHIP: Cardinality(2, 10),
    RelationType.CLIENT_VENDOR: Cardinality(2, 2),
}


def valid_roles(relation_type: RelationType) -> list[str]:
    return list(RELATION_ROLES[relation_type])


def is_binary(relation_type: RelationType) -> bool:
    """True for types whose relations always have exactly two members."""
    cardinality = RELATION_CARDINALITY[relation_type]
    return cardinality.min == cardinality.max == 2


def validate_role(relation_type: RelationType, role: str) -> None:
    """Raise BadRequestError if ``role`` is not registered for the type."""
    roles = valid_roles(relation_type)
    if role not in roles:
        raise BadRequestError(
            f'Invalid role "{role}" for relation type {relation_type.value}. '
            f"Valid roles: {', '.join(roles)}",
            valid_options=roles,
        )


def validate_cardinality(relation_type: RelationType, member_count: int) -> None:
    """Raise BadRequestError if the active member count breaks the type's rule."""
    cardinality = RELATION_CARDINALITY[relation_type]
    if member_count < cardinality.min:
        raise BadRequestError(
            f"Relation type {relation_type.value} requires at least "
            f"{cardinality.min} members, got {member_count}"
        )
    if member_count > cardinality.max:
        raise BadRequestError(
            f"Relation type {relation_type.value} allows at most "
            f"{cardinality.max} members, got {member_count}"
        )


def validate_members(relation_type: RelationType, members: list[MemberDraft]) -> None:
    """Validate roles, duplicates and cardinality of a new relation."""
    for member in members:
        validate_role(relation_type, member.role)

    seen: set[tuple[str, str]] = set()
    for member in members:
        key = (member.entity_id, member.role)
        if key in seen:
            raise BadRequestError(
                f"Duplicate member {member.entity_id} with role {member.role}"
            )
        seen.add(key)

    validate_cardinality(relation_type, len(members))
