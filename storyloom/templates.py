"""Template substitution for act inputs.

Two reference forms are supported inside text inputs, table filter values and
platform command arguments:

    {{act_name.field}}   a value produced by an earlier act of the same
                         execution (rendered through Handlebars)
    {state:key}          a value from the State Store, execution scope first
                         and then the actor scope

Rendering is fail-fast. Every top-level reference is checked before anything is
rendered, and a reference with nothing behind it raises UnresolvedReferenceError
naming it. Handlebars would otherwise render a missing value as an empty string.

Double-stash references are rendered raw: prompts are not HTML, so "&" stays "&".
Block helpers ({{#each act.rows}}...{{/each}}) are passed through to Handlebars
unchanged; references inside a block are resolved by Handlebars itself.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any

import pybars

from storyloom.errors import RenderError, UnresolvedReferenceError

logger = logging.getLogger(__name__)

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

_MUSTACHE = re.compile(r"\{\{(\{?)(.*?)\}?\}\}", re.S)
_SIMPLE_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z0-9_]+)*$")
_STATE_REF = re.compile(r"(?<!\{)\{state:([^{}\s]+)\}(?!\})")

_STATE_PREFIX = "_state_ref_"


def format_value(value: Any) -> str:
    """Text form of a referenced value: strings as-is, everything else as JSON."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _helper_raw(this, value):
    """{{{raw path}}}: render any value as text."""
    return format_value(value)


_HELPERS: dict[str, Callable] = {"raw": _helper_raw}


def has_references(source: str) -> bool:
    return "{{" in source or _STATE_REF.search(source) is not None


def _resolve_path(path: str, context: dict[str, Any]) -> Any:
    head, *rest = path.split(".")
    if head not in context:
        raise UnresolvedReferenceError(path, f"no act named {head!r} has produced output")
    value = context[head]
    for part in rest:
        if not isinstance(value, dict) or part not in value:
            raise UnresolvedReferenceError(path, f"field {part!r} is not set")
        value = value[part]
    return value


def _prepare(
    source: str,
    context: dict[str, Any],
    lookup_state: Callable[[str], Any],
) -> tuple[str, dict[str, Any]]:
    """Check every reference and rewrite the source into a raw-rendering template."""
    render_ctx = dict(context)
    state_values: dict[str, str] = {}

    def _state_sub(m: re.Match) -> str:
        name = f"{_STATE_PREFIX}{len(state_values)}"
        state_values[name] = format_value(lookup_state(m.group(1)))
        return "{{{" + name + "}}}"

    # State values are bound by name, never spliced into the source, so their
    # content is not itself parsed as a template.
    source = _STATE_REF.sub(_state_sub, source)
    render_ctx.update(state_values)

    out: list[str] = []
    pos = 0
    depth = 0
    for m in _MUSTACHE.finditer(source):
        out.append(source[pos:m.start()])
        pos = m.end()
        body = m.group(2).strip()
        token = m.group(0)
        if body.startswith(("#", "^")):
            depth += 1
        elif body.startswith("/"):
            depth = max(depth - 1, 0)
        elif depth == 0 and _SIMPLE_PATH.match(body) and not body.startswith(_STATE_PREFIX):
            _resolve_path(body, context)
            token = "{{{raw " + body + "}}}"
        out.append(token)
    out.append(source[pos:])
    return "".join(out), render_ctx


def render(
    source: str,
    context: dict[str, Any],
    lookup_state: Callable[[str], Any],
) -> str:
    """Substitute every reference in `source`.

    `context` is the nested {act: {field: value}} mapping of the current
    execution; `lookup_state(key)` returns a state value or raises
    UnresolvedReferenceError.
    """
    if not has_references(source):
        return source
    template_str, render_ctx = _prepare(source, context, lookup_state)
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        rendered = str(compiled(render_ctx, helpers=_HELPERS))
    except Exception as e:
        raise RenderError(f"Template error: {e}") from e
    logger.debug("rendered template len=%d -> %d", len(source), len(rendered))
    return rendered


def render_value(
    value: Any,
    context: dict[str, Any],
    lookup_state: Callable[[str], Any],
) -> Any:
    """Render templates inside strings, recursing through lists and dicts."""
    if isinstance(value, str):
        return render(value, context, lookup_state)
    if isinstance(value, list):
        return [render_value(v, context, lookup_state) for v in value]
    if isinstance(value, dict):
        return {k: render_value(v, context, lookup_state) for k, v in value.items()}
    return value
