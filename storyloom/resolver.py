"""Input resolution: turns an act's declared inputs into backend-ready text.

    text              literal text or a file's contents, then templates
    table             rows from a content table, rendered in full as
                      markdown, json or csv
    platform_command  a command run through a platform after the security
                      gate allows it; its result lands in the State Store

Resolution is all-or-nothing. Any failure raises (InputError, its subclasses,
or SecurityDeniedError) and the act never reaches the backend.

After resolving an act, the budget guard compares the act's max_tokens with
the approximate size of its inputs (characters / 4). An act whose output
allowance is below min_output_ratio of that size is rejected with
BudgetTooSmallError rather than sent off to produce a truncated answer.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from storyloom import templates
from storyloom.errors import (
    BudgetTooSmallError,
    InputError,
    InputNotFoundError,
    PlatformCommandError,
    RenderError,
    SecurityDeniedError,
)
from storyloom.models import (
    Act,
    HistoryRetention,
    Input,
    PlatformCommandInput,
    TableFormat,
    TableInput,
    TextInput,
)
from storyloom.platforms import AllowAllGate, PlatformRegistry, SecurityGate
from storyloom.state import StateStore

logger = logging.getLogger(__name__)

class ResolverSettings(BaseModel):
    min_output_ratio: float = 0.1
    chars_per_token: int = 4
    text_root: Path | None = None  # relative text paths resolve against this
    summary_threshold_chars: int = 1024  # larger text is summarised in history


@dataclass
class ResolveContext:
    execution_id: str
    actor_name: str
    act_name: str


@dataclass
class ResolvedContent:
    text: str
    kind: str
    content_ref: str
    summary: str
    history_retention: HistoryRetention = HistoryRetention.FULL
    payload: dict[str, Any] = field(default_factory=dict)


def approx_tokens(text: str, chars_per_token: int = 4) -> int:
    return len(text) // chars_per_token


# ---------------------------------------------------------------------------
# Table rendering
# ---------------------------------------------------------------------------

def _cell(value: Any) -> str:
    return templates.format_value(value)


def _columns(rows: list[dict[str, Any]]) -> list[str]:
    cols: list[str] = []
    for row in rows:
        for k in row:
            if k not in cols:
                cols.append(k)
    return cols


def render_rows(rows: list[dict[str, Any]], fmt: TableFormat) -> str:
    """Render every row, or raise RenderError. Never returns partial output."""
    try:
        if fmt == TableFormat.JSON:
            return json.dumps(rows, indent=2, ensure_ascii=False)
        if not rows:
            return "(no rows)"
        cols = _columns(rows)
        if fmt == TableFormat.CSV:
            buf = io.StringIO()
            writer = csv.DictWriter(buf, fieldnames=cols, lineterminator="\n")
            writer.writeheader()
            for row in rows:
                writer.writerow({c: _cell(row.get(c)) for c in cols})
            return buf.getvalue().rstrip("\n")
        lines = [
            "| " + " | ".join(cols) + " |",
            "|" + "|".join("---" for _ in cols) + "|",
        ]
        for row in rows:
            cells = [_cell(row.get(c)).replace("|", "\\|").replace("\n", " ") for c in cols]
            lines.append("| " + " | ".join(cells) + " |")
        return "\n".join(lines)
    except (TypeError, ValueError, AttributeError) as e:
        raise RenderError(f"Cannot render rows as {fmt.value}: {e}") from e


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class InputResolver:
    def __init__(
        self,
        storage,
        state: StateStore,
        platforms: PlatformRegistry | None = None,
        security: SecurityGate | None = None,
        settings: ResolverSettings | None = None,
    ) -> None:
        self._storage = storage
        self._state = state
        self._platforms = platforms or PlatformRegistry()
        self._security = security or AllowAllGate()
        self._settings = settings or ResolverSettings()

    def _template(self, source: str, ctx: ResolveContext) -> str:
        return templates.render(
            source,
            self._state.template_context(ctx.execution_id),
            lambda key: self._state.lookup(ctx.execution_id, ctx.actor_name, key),
        )

    def _template_value(self, value: Any, ctx: ResolveContext) -> Any:
        return templates.render_value(
            value,
            self._state.template_context(ctx.execution_id),
            lambda key: self._state.lookup(ctx.execution_id, ctx.actor_name, key),
        )

    async def resolve(self, item: Input, ctx: ResolveContext) -> ResolvedContent:
        if isinstance(item, TextInput):
            return self._resolve_text(item, ctx)
        if isinstance(item, TableInput):
            return self._resolve_table(item, ctx)
        if isinstance(item, PlatformCommandInput):
            return await self._resolve_platform(item, ctx)
        raise InputError(f"Unsupported input kind: {type(item).__name__}")

    async def resolve_act(self, act: Act, ctx: ResolveContext) -> list[ResolvedContent]:
        """Resolve every input of an act, then apply the budget guard."""
        resolved = [await self.resolve(item, ctx) for item in act.inputs]
        self.check_budget(act, resolved)
        return resolved

    def check_budget(self, act: Act, resolved: list[ResolvedContent]) -> None:
        input_tokens = approx_tokens(
            "".join(r.text for r in resolved), self._settings.chars_per_token
        )
        ratio = self._settings.min_output_ratio
        if act.generation.max_tokens < round(ratio * input_tokens, 6):
            raise BudgetTooSmallError(act.name, act.generation.max_tokens, input_tokens, ratio)
        logger.debug(
            "budget ok act=%s max_tokens=%d input_tokens~%d",
            act.name, act.generation.max_tokens, input_tokens,
        )

    # ------------------------------------------------------------------
    # Per-kind resolution
    # ------------------------------------------------------------------

    def _resolve_text(self, item: TextInput, ctx: ResolveContext) -> ResolvedContent:
        if item.literal is not None:
            raw = item.literal
            ref = "text:literal"
        else:
            path = Path(item.path)
            if not path.is_absolute() and self._settings.text_root is not None:
                path = self._settings.text_root / path
            try:
                raw = path.read_text()
            except FileNotFoundError as e:
                raise InputNotFoundError(f"Text file not found: {item.path}") from e
            except OSError as e:
                raise InputNotFoundError(f"Cannot read text file {item.path}: {e}") from e
            ref = f"file:{item.path}"
        text = self._template(raw, ctx)
        if len(text) > self._settings.summary_threshold_chars:
            summary = f"[Text: ~{max(len(text) // 1024, 1)}KB]"
        else:
            summary = text
        return ResolvedContent(
            text=text, kind="text", content_ref=ref, summary=summary,
            history_retention=item.history_retention,
        )

    def _resolve_table(self, item: TableInput, ctx: ResolveContext) -> ResolvedContent:
        filter_ = self._template_value(item.filter, ctx)
        rows = self._storage.query(item.table_name, filter_, item.row_limit)
        text = render_rows(rows, item.render_format)
        logger.debug("table input table=%s rows=%d format=%s",
                     item.table_name, len(rows), item.render_format.value)
        return ResolvedContent(
            text=text,
            kind="table",
            content_ref=f"table:{item.table_name}",
            summary=f"[Table: {item.table_name}, {len(rows)} rows queried]",
            history_retention=item.history_retention,
            payload={"rows": rows},
        )

    async def _resolve_platform(
        self, item: PlatformCommandInput, ctx: ResolveContext
    ) -> ResolvedContent:
        action = f"{item.platform}.{item.command}"
        decision = self._security.authorize(ctx.actor_name, action)
        if not decision.allowed:
            raise SecurityDeniedError(ctx.actor_name, action, decision.reason)

        platform = self._platforms.get(item.platform)
        arguments = self._template_value(item.arguments, ctx)
        try:
            result = await platform.execute(item.command, arguments)
        except PlatformCommandError:
            raise
        except Exception as e:
            raise PlatformCommandError(
                f"Command {item.platform}.{item.command} failed: {e}"
            ) from e

        fields: dict[str, Any] = {"result": result.summary}
        fields.update(result.payload)
        self._state.record_act(ctx.execution_id, ctx.act_name, fields)
        logger.info("platform command %s.%s actor=%s", item.platform, item.command, ctx.actor_name)

        return ResolvedContent(
            text=result.summary,
            kind="platform_command",
            content_ref=f"platform:{item.platform}.{item.command}",
            summary=f"[Platform command: {item.platform}.{item.command}]",
            history_retention=item.history_retention,
            payload=result.payload,
        )
