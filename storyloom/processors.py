"""Act post-processors and their registry.

A processor runs against one act's captured response after it has been
persisted. Processors are opt-in: an act lists the names it wants, in order,
and nothing runs on an act that did not ask for it.

The registry is an explicit object built once at startup and handed to the
executor. Registering two processors under one name is an error, and so is an
act asking for a name that was never registered.

Built-in processors:

    extract_json   parse rows out of the response (see extraction.py)
    dedup          drop rows already present in the narrative's target table

Processors that write outside the narrative's own tables set
`external_write = True`; the executor asks the security gate before running
them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from storyloom.errors import RegistryError
from storyloom.extraction import content_hash, extract
from storyloom.models import Act, NarrativeDefinition

logger = logging.getLogger(__name__)


@dataclass
class ProcessorContext:
    execution_id: str
    actor_name: str
    narrative: NarrativeDefinition
    act: Act
    response: str
    storage: Any
    rows: list[dict[str, Any]] | None = None  # output of earlier processors on this act


@dataclass
class ProcessorOutcome:
    rows: list[dict[str, Any]] | None = None
    fields: dict[str, Any] = field(default_factory=dict)  # extra state to record under the act


class Processor(Protocol):
    name: str

    async def process(self, ctx: ProcessorContext) -> ProcessorOutcome: ...


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ProcessorRegistry:
    def __init__(self, processors: Iterable[Processor] = ()) -> None:
        self._processors: dict[str, Processor] = {}
        for p in processors:
            self.register(p)

    def register(self, processor: Processor) -> None:
        if processor.name in self._processors:
            raise RegistryError(f"Processor {processor.name!r} is already registered")
        self._processors[processor.name] = processor

    def get(self, name: str) -> Processor:
        try:
            return self._processors[name]
        except KeyError:
            raise RegistryError(f"Unknown processor {name!r}") from None

    def names(self) -> list[str]:
        return list(self._processors)

    def check(self, narrative: NarrativeDefinition) -> None:
        """Raise RegistryError if any act asks for an unregistered processor."""
        for act in narrative.acts:
            for name in act.processors:
                if name not in self._processors:
                    raise RegistryError(f"Act {act.name!r} uses unknown processor {name!r}")


# ---------------------------------------------------------------------------
# Built-ins
# ---------------------------------------------------------------------------

class ExtractionProcessor:
    name = "extract_json"

    async def process(self, ctx: ProcessorContext) -> ProcessorOutcome:
        rows = extract(ctx.response, ctx.act.output_schema)
        return ProcessorOutcome(rows=rows)


class DedupProcessor:
    """Drops rows whose content hash is already in the target table (or earlier in the batch)."""

    name = "dedup"

    async def process(self, ctx: ProcessorContext) -> ProcessorOutcome:
        rows = ctx.rows or []
        seen: set[str] = set()
        table = ctx.narrative.target_table
        if table and ctx.storage.table_exists(table):
            seen = {content_hash(r) for r in ctx.storage.query(table)}
        kept = []
        for row in rows:
            digest = content_hash(row)
            if digest in seen:
                continue
            seen.add(digest)
            kept.append(row)
        if len(kept) != len(rows):
            logger.info("dedup act=%s dropped=%d", ctx.act.name, len(rows) - len(kept))
        return ProcessorOutcome(rows=kept, fields={"duplicates_dropped": len(rows) - len(kept)})


def default_registry() -> ProcessorRegistry:
    return ProcessorRegistry([ExtractionProcessor(), DedupProcessor()])
