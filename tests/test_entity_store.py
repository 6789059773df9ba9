"""Tests for EntityStore: owner rule, soft/hard delete, merge and identifiers."""

import pytest

from entitygraph.exceptions import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    ReferentialConflictError,
)
from entitygraph.interfaces import EntityState, EntityType, FactDraft, MemberDraft, RelationDraft, RelationType
from entitygraph.utils import to_iso, utcnow


class TestCreateAndRead:
    def test_create_and_get(self, kg):
        entity = kg.entities.create(EntityType.PERSON, "  Ann Lee ", notes="met at conf")
        loaded = kg.entities.get(entity.id)
        assert loaded.name == "Ann Lee"
        assert loaded.entity_type is EntityType.PERSON
        assert loaded.notes == "met at conf"
        assert loaded.state is EntityState.ACTIVE
        assert loaded.is_owner is False

    def test_empty_name_rejected(self, kg):
        with pytest.raises(BadRequestError):
            kg.entities.create(EntityType.PERSON, "   ")

    def test_find_one_unknown(self, kg):
        with pytest.raises(NotFoundError):
            kg.entities.find_one("missing")

    def test_find_many_skips_unknown_and_deleted(self, kg):
        a = kg.entities.create(EntityType.PERSON, "A")
        b = kg.entities.create(EntityType.PERSON, "B")
        kg.entities.soft_delete(b.id)

        found = kg.entities.find_many([a.id, b.id, "missing"])
        assert set(found) == {a.id}
        assert set(kg.entities.find_many([a.id, b.id], include_deleted=True)) == {a.id, b.id}

    def test_find_all_filters_and_paginates(self, kg):
        for name in ("Acme Inc.", "Acme Labs", "Globex"):
            kg.entities.create(EntityType.ORGANIZATION, name)
        kg.entities.create(EntityType.PERSON, "Acme Fan")

        page = kg.entities.find_all(entity_type=EntityType.ORGANIZATION, search="ACME", limit=1)
        assert page["total"] == 2
        assert len(page["items"]) == 1
        assert page["limit"] == 1
        assert page["offset"] == 0

    def test_find_all_search_is_literal(self, kg):
        kg.entities.create(EntityType.ORGANIZATION, "100% Juice")
        kg.entities.create(EntityType.ORGANIZATION, "100 Juice")

        page = kg.entities.find_all(search="100%")
        assert [e.name for e in page["items"]] == ["100% Juice"]

    def test_update(self, kg, person):
        updated = kg.entities.update(person.id, name="Ann Smith", is_bot=True)
        assert updated.name == "Ann Smith"
        assert kg.entities.get(person.id).is_bot is True

    def test_update_rejects_owner_flag(self, kg, person):
        with pytest.raises(BadRequestError) as exc:
            kg.entities.update(person.id, is_owner=True)
        assert "name" in exc.value.valid_options

    def test_update_entity_type_from_string(self, kg, person):
        updated = kg.entities.update(person.id, entity_type="organization")

        assert updated.entity_type is EntityType.ORGANIZATION
        assert kg.entities.get(person.id).entity_type is EntityType.ORGANIZATION

    def test_update_rejects_unknown_entity_type(self, kg, person):
        with pytest.raises(BadRequestError) as exc:
            kg.entities.update(person.id, entity_type="robot")
        assert exc.value.valid_options == [t.value for t in EntityType]
        assert kg.entities.get(person.id).entity_type is EntityType.PERSON

    def test_update_organization_link(self, kg, person, organization):
        updated = kg.entities.update(person.id, organization_id=organization.id)
        assert kg.entities.get(person.id).organization_id == organization.id
        assert updated.organization_id == organization.id

    def test_update_rejects_non_organization_link(self, kg, person):
        other = kg.entities.create(EntityType.PERSON, "Bob")
        for organization_id in (other.id, "missing", person.id):
            with pytest.raises(BadRequestError):
                kg.entities.update(person.id, organization_id=organization_id)
        assert kg.entities.get(person.id).organization_id is None


class TestOwner:
    def test_no_owner_initially(self, kg):
        assert kg.entities.find_me() is None

    def test_set_owner(self, kg, person):
        owner = kg.entities.set_owner(person.id)
        assert owner.is_owner is True
        assert kg.entities.find_me().id == person.id

    def test_owner_is_unique(self, kg):
        first = kg.entities.create(EntityType.PERSON, "First")
        second = kg.entities.create(EntityType.PERSON, "Second")

        kg.entities.set_owner(first.id)
        kg.entities.set_owner(second.id)

        assert kg.entities.find_me().id == second.id
        assert kg.entities.get(first.id).is_owner is False
        rows = kg.db.fetchall("SELECT id FROM entities WHERE is_owner = 1")
        assert [r["id"] for r in rows] == [second.id]

    def test_set_owner_twice_is_noop(self, kg, person):
        kg.entities.set_owner(person.id)
        again = kg.entities.set_owner(person.id)
        assert again.is_owner is True

    def test_set_owner_unknown_entity(self, kg):
        with pytest.raises(NotFoundError):
            kg.entities.set_owner("missing")

    def test_owner_cannot_be_soft_deleted(self, kg, person):
        kg.entities.set_owner(person.id)
        with pytest.raises(BadRequestError):
            kg.entities.soft_delete(person.id)


class TestSoftDelete:
    def test_soft_delete_hides_entity(self, kg, person):
        kg.entities.soft_delete(person.id)

        assert kg.entities.get(person.id) is None
        assert kg.entities.exists(person.id) is False
        deleted = kg.entities.get(person.id, include_deleted=True)
        assert deleted.state is EntityState.DELETED

    async def test_soft_delete_keeps_facts(self, kg, person):
        await kg.facts.create(person.id, FactDraft("position", "Engineer"))
        kg.entities.soft_delete(person.id)
        assert [f.value for f in kg.fact_store.find_by_entity(person.id)] == ["Engineer"]

    def test_restore(self, kg, person):
        kg.entities.soft_delete(person.id)
        restored = kg.entities.restore(person.id)
        assert restored.state is EntityState.ACTIVE
        assert kg.entities.get(person.id) is not None

    def test_restore_active_entity_rejected(self, kg, person):
        with pytest.raises(BadRequestError):
            kg.entities.restore(person.id)

    def test_restore_unknown(self, kg):
        with pytest.raises(NotFoundError):
            kg.entities.restore("missing")


class TestHardDelete:
    def test_requires_confirmation(self, kg, person):
        with pytest.raises(BadRequestError):
            kg.entities.hard_delete(person.id)
        assert kg.entities.get(person.id) is not None

    def test_unknown_entity(self, kg):
        with pytest.raises(NotFoundError):
            kg.entities.hard_delete("missing", confirm=True)

    def test_owner_cannot_be_hard_deleted(self, kg, person):
        kg.entities.set_owner(person.id)
        with pytest.raises(BadRequestError):
            kg.entities.hard_delete(person.id, confirm=True)

    def test_blocked_by_dependent_records(self, kg, person):
        other = kg.entities.create(EntityType.PERSON, "Bob")
        kg.db.write(
            "INSERT INTO commitments (id, from_entity_id, to_entity_id, title, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            ("c1", person.id, other.id, "Send the deck", to_iso(utcnow())),
        )

        with pytest.raises(ReferentialConflictError) as exc:
            kg.entities.hard_delete(person.id, confirm=True)

        assert exc.value.references == {"commitments": 1}
        assert exc.value.count == 1
        assert "commitments (1)" in str(exc.value)
        assert exc.value.status_code == 409
        assert kg.entities.get(person.id) is not None

    def test_succeeds_once_dependent_records_are_gone(self, kg, person):
        other = kg.entities.create(EntityType.PERSON, "Bob")
        kg.db.write(
            "INSERT INTO commitments (id, from_entity_id, to_entity_id, title, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            ("c1", other.id, person.id, "Review the draft", to_iso(utcnow())),
        )
        with pytest.raises(ReferentialConflictError):
            kg.entities.hard_delete(person.id, confirm=True)

        kg.db.write("DELETE FROM commitments WHERE id = ?", ("c1",))
        kg.entities.hard_delete(person.id, confirm=True)

        assert kg.entities.get(person.id, include_deleted=True) is None
        assert kg.db.fetchone("SELECT COUNT(*) FROM entities WHERE id = ?", (person.id,))[0] == 0

    async def test_removes_entity_with_its_data(self, kg, person, organization):
        kg.entities.add_identifier(person.id, "email", "ann@example.com")
        await kg.facts.create(person.id, FactDraft("position", "Engineer"))
        kg.relations.create(RelationDraft(
            relation_type=RelationType.EMPLOYMENT,
            members=[
                MemberDraft(person.id, "employee"),
                MemberDraft(organization.id, "employer"),
            ],
        ))

        kg.entities.hard_delete(person.id, confirm=True)

        assert kg.entities.get(person.id, include_deleted=True) is None
        assert kg.fact_store.find_by_entity(person.id, include_history=True) == []
        assert kg.entities.find_by_identifier("email", "ann@example.com") is None
        assert kg.relations.find_by_entity(person.id) == []

    def test_soft_deleted_entity_can_be_hard_deleted(self, kg, person):
        kg.entities.soft_delete(person.id)
        kg.entities.hard_delete(person.id, confirm=True)
        assert kg.entities.get(person.id, include_deleted=True) is None


class TestMerge:
    async def test_merge_moves_identifiers_and_facts(self, kg):
        source = kg.entities.create(EntityType.PERSON, "Ann L.")
        target = kg.entities.create(EntityType.PERSON, "Ann Lee")
        kg.entities.add_identifier(source.id, "telegram", "12345")
        await kg.facts.create(source.id, FactDraft("email", "ann@example.com"))

        result = kg.entities.merge(source.id, target.id)

        assert result.id == target.id
        assert kg.entities.find_by_identifier("telegram", "12345").entity_id == target.id
        assert [f.value for f in kg.fact_store.find_by_entity(target.id)] == ["ann@example.com"]
        assert kg.entities.get(source.id) is None
        assert kg.entities.get(source.id, include_deleted=True).is_deleted

    def test_merge_with_itself(self, kg, person):
        with pytest.raises(ConflictError, match="itself"):
            kg.entities.merge(person.id, person.id)

    def test_merge_unknown_target(self, kg, person):
        with pytest.raises(NotFoundError):
            kg.entities.merge(person.id, "missing")

    def test_owner_cannot_be_merged_away(self, kg, person):
        other = kg.entities.create(EntityType.PERSON, "Other")
        kg.entities.set_owner(person.id)
        with pytest.raises(BadRequestError):
            kg.entities.merge(person.id, other.id)


class TestIdentifiers:
    def test_add_and_find(self, kg, person):
        kg.entities.add_identifier(person.id, "email", "ann@example.com", {"primary": True})

        identifier = kg.entities.find_by_identifier("email", "ann@example.com")
        assert identifier.entity_id == person.id
        assert identifier.metadata == {"primary": True}
        assert len(kg.entities.list_identifiers(person.id)) == 1

    def test_same_entity_is_idempotent(self, kg, person):
        first = kg.entities.add_identifier(person.id, "email", "ann@example.com")
        second = kg.entities.add_identifier(person.id, "email", "ann@example.com")
        assert first.id == second.id

    def test_identifier_of_other_entity_conflicts(self, kg, person):
        other = kg.entities.create(EntityType.PERSON, "Bob")
        kg.entities.add_identifier(person.id, "email", "ann@example.com")
        with pytest.raises(ConflictError):
            kg.entities.add_identifier(other.id, "email", "ann@example.com")

    def test_find_or_create(self, kg):
        entity, created = kg.entities.find_or_create_by_identifier("telegram", "777", "New Person")
        assert created is True
        assert entity.creation_source == "extracted"

        again, created = kg.entities.find_or_create_by_identifier("telegram", "777", "Other Name")
        assert created is False
        assert again.id == entity.id

    def test_find_or_create_rehomes_identifier_of_deleted_entity(self, kg):
        entity, _ = kg.entities.find_or_create_by_identifier("telegram", "888", "Gone")
        kg.entities.soft_delete(entity.id)

        fresh, created = kg.entities.find_or_create_by_identifier("telegram", "888", "Back")
        assert created is True
        assert fresh.id != entity.id
        assert kg.entities.find_by_identifier("telegram", "888").entity_id == fresh.id
