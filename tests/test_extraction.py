"""Tests for storyloom.extraction."""

import json

import pytest

from storyloom.errors import ExtractionError, ExtractionErrorKind
from storyloom.extraction import content_hash, extract, locate_json
from storyloom.models import ExtractionSchema


def _kind(text: str, schema: ExtractionSchema | None = None) -> ExtractionErrorKind:
    with pytest.raises(ExtractionError) as exc:
        extract(text, schema)
    return exc.value.kind


class TestLocate:
    def test_whole_text_object(self) -> None:
        assert extract('{"x": 1}') == [{"x": 1}]

    def test_whole_text_array(self) -> None:
        assert extract(' [{"a": 1}, {"a": 2}] \n') == [{"a": 1}, {"a": 2}]

    def test_fenced_block(self) -> None:
        text = "Here you go:\n```json\n[{\"name\": \"Ada\"}]\n```\nAnything else?"
        assert extract(text) == [{"name": "Ada"}]

    def test_bare_fence(self) -> None:
        assert extract("```\n{\"k\": true}\n```") == [{"k": True}]

    def test_object_inside_prose(self) -> None:
        text = 'The result is {"title": "A {curly} title", "n": 2} as requested.'
        assert extract(text) == [{"title": "A {curly} title", "n": 2}]

    def test_skips_unparseable_span_for_later_one(self) -> None:
        text = 'Options [a, b] then {"pick": "a"}'
        assert locate_json(text) == {"pick": "a"}

    def test_empty_array_is_zero_rows(self) -> None:
        assert extract("[]") == []

    def test_citation_before_payload(self) -> None:
        assert extract('See the notes [1]. Result: {"x": 1}') == [{"x": 1}]

    def test_first_candidate_matching_schema_wins(self) -> None:
        schema = ExtractionSchema(required=["title"])
        text = 'Draft {"note": "scratch"} and final {"title": "Dawn"}'
        assert extract(text, schema) == [{"title": "Dawn"}]

    def test_mismatch_reported_when_no_candidate_fits(self) -> None:
        schema = ExtractionSchema(required=["title"])
        assert _kind('See [1] and {"note": 1}', schema) == ExtractionErrorKind.SCHEMA_MISMATCH


class TestErrors:
    def test_not_found(self) -> None:
        assert _kind("Just some prose without any structure.") == ExtractionErrorKind.NOT_FOUND

    def test_malformed(self) -> None:
        assert _kind('{"x": 1,}') == ExtractionErrorKind.MALFORMED

    def test_truncated_is_malformed_not_guessed(self) -> None:
        assert _kind('{"x": 1, "y": [1, 2') == ExtractionErrorKind.MALFORMED

    def test_scalar_is_schema_mismatch(self) -> None:
        assert _kind("```json\n42\n```") == ExtractionErrorKind.SCHEMA_MISMATCH

    def test_non_object_items(self) -> None:
        assert _kind("[1, 2, 3]") == ExtractionErrorKind.SCHEMA_MISMATCH


class TestSchema:
    SCHEMA = ExtractionSchema(
        field_types={"title": "string", "score": "number", "tags": "array"},
        required=["title"],
    )

    def test_valid_rows(self) -> None:
        rows = extract('[{"title": "a", "score": 1}, {"title": "b", "score": 2.5, "tags": []}]',
                       self.SCHEMA)
        assert len(rows) == 2

    def test_missing_required(self) -> None:
        with pytest.raises(ExtractionError, match="title") as exc:
            extract('[{"score": 1}]', self.SCHEMA)
        assert exc.value.kind == ExtractionErrorKind.SCHEMA_MISMATCH

    def test_wrong_type(self) -> None:
        assert _kind('{"title": 5}', self.SCHEMA) == ExtractionErrorKind.SCHEMA_MISMATCH

    def test_bool_is_not_a_number(self) -> None:
        assert _kind('{"title": "a", "score": true}', self.SCHEMA) == ExtractionErrorKind.SCHEMA_MISMATCH

    def test_empty_allowed_by_default(self) -> None:
        assert extract("[]", self.SCHEMA) == []

    def test_empty_rejected_when_not_allowed(self) -> None:
        schema = ExtractionSchema(allow_empty=False)
        assert _kind("[]", schema) == ExtractionErrorKind.SCHEMA_MISMATCH


class TestContentHash:
    def test_key_order_irrelevant(self) -> None:
        assert content_hash({"a": 1, "b": 2}) == content_hash(json.loads('{"b": 2, "a": 1}'))

    def test_different_values_differ(self) -> None:
        assert content_hash({"a": 1}) != content_hash({"a": 2})
