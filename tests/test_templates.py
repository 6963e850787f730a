"""Tests for storyloom.templates: reference checks and raw rendering."""

import pytest

from storyloom.errors import UnresolvedReferenceError
from storyloom.templates import format_value, has_references, render, render_value


def _no_state(key: str):
    raise UnresolvedReferenceError(f"state:{key}")


def _state(values: dict):
    def lookup(key: str):
        if key not in values:
            raise UnresolvedReferenceError(f"state:{key}")
        return values[key]
    return lookup


CTX = {"draft": {"response": "Fish & Chips <b>", "count": 3, "rows": [{"n": 1}]}}


class TestRender:
    def test_plain_text_unchanged(self) -> None:
        text = "No templates here, just {braces} and a \\ backslash."
        assert render(text, {}, _no_state) == text

    def test_act_reference_rendered_raw(self) -> None:
        assert render("Say: {{draft.response}}", CTX, _no_state) == "Say: Fish & Chips <b>"

    def test_non_string_values_as_json(self) -> None:
        assert render("{{draft.count}} / {{draft.rows}}", CTX, _no_state) == '3 / [{"n": 1}]'

    def test_state_reference(self) -> None:
        out = render("Hello {state:user_name}!", {}, _state({"user_name": "Ada"}))
        assert out == "Hello Ada!"

    def test_state_value_not_reparsed(self) -> None:
        out = render("{state:raw}", {}, _state({"raw": "{{draft.response}}"}))
        assert out == "{{draft.response}}"

    def test_each_block_passed_to_handlebars(self) -> None:
        out = render("{{#each draft.rows}}[{{n}}]{{/each}}", CTX, _no_state)
        assert out == "[1]"


class TestFailFast:
    def test_missing_act(self) -> None:
        with pytest.raises(UnresolvedReferenceError) as exc:
            render("{{ghost.response}}", CTX, _no_state)
        assert exc.value.reference == "ghost.response"

    def test_missing_field(self) -> None:
        with pytest.raises(UnresolvedReferenceError, match="draft.title"):
            render("{{draft.title}}", CTX, _no_state)

    def test_missing_state_key(self) -> None:
        with pytest.raises(UnresolvedReferenceError, match="state:nope"):
            render("{state:nope}", {}, _state({}))

    def test_render_value_recurses(self) -> None:
        value = {"q": ["{{draft.count}}", 7], "plain": "x"}
        assert render_value(value, CTX, _no_state) == {"q": ["3", 7], "plain": "x"}


class TestHelpers:
    def test_has_references(self) -> None:
        assert has_references("{{a.b}}")
        assert has_references("{state:k}")
        assert not has_references("{not_state}")

    def test_format_value(self) -> None:
        assert format_value(None) == ""
        assert format_value(True) == "true"
        assert format_value("s") == "s"
