"""Tests for text and vector helpers."""

import pytest

from entitygraph.utils import (
    cosine_similarity,
    escape_like,
    name_similarity,
    normalize_company_name,
    normalize_embedding,
    normalize_value,
    text_similarity,
)


class TestNormalizeValue:
    def test_lowercases_and_collapses_whitespace(self):
        assert normalize_value("  Senior   Engineer ") == "senior engineer"

    def test_keeps_contact_symbols(self):
        assert normalize_value("Ann.Lee+work@Example.com") == "ann.lee+work@example.com"
        assert normalize_value("+1-555-0100") == "+1-555-0100"

    def test_strips_other_punctuation(self):
        assert normalize_value('"Acme", (main)!') == "acme main"

    def test_empty(self):
        assert normalize_value(None) == ""
        assert normalize_value("") == ""


class TestTextSimilarity:
    def test_equal_strings(self):
        assert text_similarity("engineer", "engineer") == 1.0

    def test_empty_string_never_matches(self):
        assert text_similarity("", "engineer") == 0.0

    def test_large_length_difference_short_circuits(self):
        assert text_similarity("ceo", "head of global marketing") == 0.0

    def test_title_promotion_is_in_temporal_window(self):
        score = text_similarity("engineer", "senior engineer")
        assert score == pytest.approx(1 - 7 / 15)
        assert 0.3 <= score < 0.95

    def test_typo_is_highly_similar(self):
        assert text_similarity("+1 555 123 4567", "+1 555 123 4568") == pytest.approx(1 - 1 / 15)


class TestCompanyNames:
    def test_strips_international_legal_forms(self):
        assert normalize_company_name("Acme Inc.") == "acme"
        assert normalize_company_name("Acme Corp") == "acme"
        assert normalize_company_name("Globex GmbH") == "globex"

    def test_strips_russian_legal_forms_and_quotes(self):
        assert normalize_company_name('ООО "Ромашка"') == "ромашка"
        assert normalize_company_name("АО «Вектор»") == "вектор"

    def test_does_not_strip_inside_words(self):
        assert normalize_company_name("Corporation X") == "corporation x"

    def test_name_similarity(self):
        assert name_similarity("acme", "acme") == 1.0
        assert name_similarity("acme", "acne") == pytest.approx(0.75)
        assert name_similarity("", "") == 0.0


class TestVectors:
    def test_normalize_embedding_unit_length(self):
        normalized = normalize_embedding([3.0, 4.0])
        assert normalized == pytest.approx([0.6, 0.8])

    def test_zero_vector_unchanged(self):
        assert normalize_embedding([0.0, 0.0]) == [0.0, 0.0]

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_zero_vector_matches_nothing(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError, match="dimensions"):
            cosine_similarity([1.0], [1.0, 0.0])


def test_escape_like():
    assert escape_like("50%_off\\") == "50\\%\\_off\\\\"
