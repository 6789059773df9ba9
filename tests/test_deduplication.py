"""Tests for the text-based dedup checks and batch dedup."""

import pytest

from entitygraph.interfaces import EntityFact, FactAction, FactDraft
from entitygraph.services import FactDeduplicationService, FactStore


@pytest.fixture
def fact_store(db):
    return FactStore(db)


@pytest.fixture
def dedup(fact_store):
    return FactDeduplicationService(fact_store)


@pytest.fixture
def entity_id(kg, person):
    return person.id


def _store(fact_store, entity_id, fact_type, value, **kwargs):
    return fact_store.insert(EntityFact(entity_id=entity_id, fact_type=fact_type, value=value, **kwargs))


class TestCheckDuplicate:
    def test_no_existing_facts(self, dedup, entity_id):
        check = dedup.check_duplicate(entity_id, FactDraft("position", "Engineer"))
        assert check.action is FactAction.CREATED
        assert check.existing_fact is None

    def test_exact_duplicate_after_normalization(self, dedup, fact_store, entity_id):
        existing = _store(fact_store, entity_id, "position", "Engineer")

        check = dedup.check_duplicate(entity_id, FactDraft("position", "  ENGINEER "))
        assert check.action is FactAction.SKIPPED
        assert check.reason == "Exact duplicate"
        assert check.existing_fact.id == existing.id
        assert check.similarity == 1.0

    def test_temporal_update(self, dedup, fact_store, entity_id):
        existing = _store(fact_store, entity_id, "position", "Engineer")

        check = dedup.check_duplicate(entity_id, FactDraft("position", "Senior Engineer"))
        assert check.action is FactAction.SUPERSEDED
        assert check.reason == "Temporal update of position"
        assert check.existing_fact.id == existing.id
        assert check.similarity == pytest.approx(1 - 7 / 15)

    def test_near_identical_temporal_value_is_fuzzy_duplicate(self, dedup, fact_store, entity_id):
        _store(fact_store, entity_id, "position", "Chief Technology Officer")

        check = dedup.check_duplicate(entity_id, FactDraft("position", "Chief Technology Officers"))
        assert check.action is FactAction.UPDATED
        assert check.similarity >= 0.95

    def test_fuzzy_duplicate_for_non_temporal_type(self, dedup, fact_store, entity_id):
        existing = _store(fact_store, entity_id, "phone", "+1 555 123 4567")

        check = dedup.check_duplicate(entity_id, FactDraft("phone", "+1 555 123 4568"))
        assert check.action is FactAction.UPDATED
        assert check.existing_fact.id == existing.id

    def test_non_temporal_type_is_never_superseded(self, dedup, fact_store, entity_id):
        _store(fact_store, entity_id, "hobby", "Engineer")

        check = dedup.check_duplicate(entity_id, FactDraft("hobby", "Senior Engineer"))
        assert check.action is FactAction.CREATED

    def test_unrelated_value_is_created(self, dedup, fact_store, entity_id):
        _store(fact_store, entity_id, "position", "CEO")

        check = dedup.check_duplicate(
            entity_id, FactDraft("position", "Head of Global Marketing Operations")
        )
        assert check.action is FactAction.CREATED

    def test_other_fact_types_are_ignored(self, dedup, fact_store, entity_id):
        _store(fact_store, entity_id, "position", "Engineer")

        check = dedup.check_duplicate(entity_id, FactDraft("department", "Engineer"))
        assert check.action is FactAction.CREATED

    def test_closed_facts_are_ignored(self, dedup, fact_store, entity_id):
        old = _store(fact_store, entity_id, "position", "Engineer")
        fact_store.invalidate(old.id)

        check = dedup.check_duplicate(entity_id, FactDraft("position", "Engineer"))
        assert check.action is FactAction.CREATED

    def test_structured_only_draft_is_created(self, dedup, entity_id):
        check = dedup.check_duplicate(
            entity_id, FactDraft("address", value_json={"city": "Berlin"})
        )
        assert check.action is FactAction.CREATED

    def test_custom_temporal_types(self, fact_store, entity_id):
        dedup = FactDeduplicationService(fact_store, temporal_fact_types=frozenset({"hobby"}))
        _store(fact_store, entity_id, "hobby", "Tennis")

        assert dedup.is_temporal("hobby")
        assert not dedup.is_temporal("position")
        check = dedup.check_duplicate(entity_id, FactDraft("hobby", "Table Tennis"))
        assert check.action is FactAction.SUPERSEDED


class TestSemanticCheck:
    async def test_requires_embedding_service(self, dedup, entity_id):
        with pytest.raises(RuntimeError):
            await dedup.semantic_check(entity_id, "Engineer", "position")

    async def test_finds_identical_value(self, fact_store, entity_id, embedding_service):
        dedup = FactDeduplicationService(fact_store, embedding_service=embedding_service)
        vector = await embedding_service.embed("Engineer")
        existing = _store(fact_store, entity_id, "position", "Engineer", embedding=vector)

        match, embedding = await dedup.semantic_check(entity_id, "Engineer", "position")
        assert match.fact.id == existing.id
        assert match.similarity == pytest.approx(1.0)
        assert embedding == vector

    async def test_below_threshold_is_no_match(self, fact_store, entity_id):
        from entitygraph.testing import MockEmbeddingService

        service = MockEmbeddingService(vectors={"a": [1.0, 0.0], "b": [0.8, 0.6]})
        dedup = FactDeduplicationService(fact_store, embedding_service=service)
        _store(fact_store, entity_id, "position", "a", embedding=await service.embed("a"))

        match, _ = await dedup.semantic_check(entity_id, "b", "position")
        assert match is None


class TestProcessBatch:
    def test_collapses_in_batch_duplicates_keeping_higher_confidence(self, dedup, entity_id):
        drafts = [
            FactDraft("email", "ann@example.com", confidence=0.6),
            FactDraft("email", "ANN@example.com", confidence=0.9),
            FactDraft("phone", "+1 555 0100"),
        ]

        result = dedup.process_batch(entity_id, drafts)
        assert result.skipped_count == 1
        assert [d.value for d in result.to_create] == ["ANN@example.com", "+1 555 0100"]

    def test_splits_against_stored_facts(self, dedup, fact_store, entity_id):
        _store(fact_store, entity_id, "email", "ann@example.com")
        position = _store(fact_store, entity_id, "position", "Engineer")

        result = dedup.process_batch(entity_id, [
            FactDraft("email", "ann@example.com"),
            FactDraft("position", "Senior Engineer"),
            FactDraft("location", "Berlin"),
        ])

        assert result.skipped_count == 1
        assert [d.value for d in result.to_create] == ["Berlin"]
        assert [(d.value, fid) for d, fid in result.to_supersede] == [("Senior Engineer", position.id)]

    def test_one_replacement_per_stored_fact(self, dedup, fact_store, entity_id):
        position = _store(fact_store, entity_id, "position", "Engineer")

        result = dedup.process_batch(entity_id, [
            FactDraft("position", "Senior Engineer", confidence=0.6),
            FactDraft("position", "Lead Engineer", confidence=0.6),
            FactDraft("position", "Staff Engineer", confidence=0.4),
        ])

        assert result.skipped_count == 2
        assert [(d.value, fid) for d, fid in result.to_supersede] == [("Lead Engineer", position.id)]
