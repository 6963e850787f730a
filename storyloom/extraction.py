"""Structured-row extraction from raw act responses.

The response text is never modified; extraction reads it and produces rows.
Candidates are tried in order:

    1. the whole response (after trimming whitespace)
    2. each fenced code block (```json ... ``` or ``` ... ```)
    3. each balanced {...} / [...] span, scanning left to right

The first candidate that parses as JSON and passes the row checks wins, so a
stray "[1]" citation ahead of the real payload is passed over. An object
becomes one row, an array becomes one row per item. Nothing is repaired or
guessed: a candidate that does not parse is skipped. If none parses the result
is an error, and if every parsed candidate fails the row checks the last
mismatch is reported.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Iterator
from typing import Any

from storyloom.errors import ExtractionError, ExtractionErrorKind
from storyloom.models import ExtractionSchema

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n(.*?)```", re.S)
_CLOSERS = {"{": "}", "[": "]"}


def _balanced_spans(text: str) -> Iterator[str]:
    """Yield every top-level balanced bracket span, skipping string contents."""
    i = 0
    n = len(text)
    while i < n:
        if text[i] not in _CLOSERS:
            i += 1
            continue
        stack = [_CLOSERS[text[i]]]
        in_string = False
        escaped = False
        j = i + 1
        while j < n and stack:
            ch = text[j]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch in _CLOSERS:
                stack.append(_CLOSERS[ch])
            elif ch in "}]":
                if ch != stack[-1]:
                    break
                stack.pop()
            j += 1
        if not stack:
            yield text[i:j]
            i = j
        else:
            i += 1


def _candidates(text: str) -> Iterator[str]:
    stripped = text.strip()
    if stripped[:1] in _CLOSERS:
        yield stripped
    for m in _FENCE.finditer(text):
        block = m.group(1).strip()
        if block:
            yield block
    yield from _balanced_spans(text)


def _parsed(text: str) -> Iterator[Any]:
    """Yield every candidate that parses, in order. Raises if none does."""
    found_candidate = False
    parsed_any = False
    last_error = ""
    for candidate in _candidates(text):
        found_candidate = True
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = str(e)
            continue
        parsed_any = True
        yield value
    if parsed_any:
        return
    if not found_candidate:
        raise ExtractionError(ExtractionErrorKind.NOT_FOUND, "No JSON found in response")
    raise ExtractionError(
        ExtractionErrorKind.MALFORMED, f"Response JSON does not parse: {last_error}"
    )


def locate_json(text: str) -> Any:
    """Return the first JSON value found in `text`."""
    return next(_parsed(text))


# ---------------------------------------------------------------------------
# Schema checks
# ---------------------------------------------------------------------------

def _type_ok(value: Any, field_type: str) -> bool:
    if field_type == "any":
        return True
    if field_type == "string":
        return isinstance(value, str)
    if field_type == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if field_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if field_type == "boolean":
        return isinstance(value, bool)
    if field_type == "array":
        return isinstance(value, list)
    if field_type == "object":
        return isinstance(value, dict)
    return False


def _mismatch(message: str) -> ExtractionError:
    return ExtractionError(ExtractionErrorKind.SCHEMA_MISMATCH, message)


def validate_rows(rows: list[Any], schema: ExtractionSchema | None) -> list[dict[str, Any]]:
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            raise _mismatch(f"Row {i} is {type(row).__name__}, expected an object")
    if schema is None:
        return rows
    if not rows and not schema.allow_empty:
        raise _mismatch("Response contained no rows")
    for i, row in enumerate(rows):
        for name in schema.required:
            if name not in row:
                raise _mismatch(f"Row {i} is missing required field {name!r}")
        for name, field_type in schema.field_types.items():
            if name in row and not _type_ok(row[name], field_type):
                raise _mismatch(
                    f"Row {i} field {name!r} is {type(row[name]).__name__}, expected {field_type}"
                )
    return rows


def _to_rows(data: Any, schema: ExtractionSchema | None) -> list[dict[str, Any]]:
    rows = [data] if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise _mismatch(f"Response JSON is a {type(data).__name__}, expected object or array")
    return validate_rows(rows, schema)


def extract(raw_text: str, schema: ExtractionSchema | None = None) -> list[dict[str, Any]]:
    """Rows found in a response. Raises ExtractionError; never returns a partial result."""
    mismatch: ExtractionError | None = None
    for data in _parsed(raw_text):
        try:
            rows = _to_rows(data, schema)
        except ExtractionError as e:
            mismatch = e
            continue
        logger.debug("extracted rows=%d", len(rows))
        return rows
    raise mismatch


def content_hash(row: dict[str, Any]) -> str:
    """Stable digest of a row, independent of key order."""
    canonical = json.dumps(row, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode()).hexdigest()
