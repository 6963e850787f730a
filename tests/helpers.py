"""Deterministic stand-ins shared by the test modules."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from storyloom.errors import BackendError
from storyloom.llm import Generation, Message
from storyloom.models import (
    Act,
    ExecutionStatus,
    GenerationConfig,
    NarrativeDefinition,
    NarrativeExecution,
    TaskState,
    TextInput,
)
from storyloom.platforms import CommandResult
from storyloom.processors import ProcessorContext, ProcessorOutcome


# ---------------------------------------------------------------------------
# StubBackend: queued responses, in call order
# ---------------------------------------------------------------------------

class StubBackend:
    """Deterministic backend stand-in.

    Each queued item is returned (str / Generation) or raised (BackendError)
    in order. Raises AssertionError if called more times than items were queued.
    """

    def __init__(self, responses: list[str | Generation | BackendError]) -> None:
        self._queue = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def generate(
        self,
        messages: list[Message],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Generation:
        self.calls.append({
            "messages": list(messages),
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if not self._queue:
            raise AssertionError(f"StubBackend: no response queued for call {len(self.calls)}")
        item = self._queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, Generation):
            return item
        return Generation(text=item)

    def assert_exhausted(self) -> None:
        assert not self._queue, f"StubBackend: {len(self._queue)} response(s) never consumed"


class StubPlatform:
    def __init__(self, result: CommandResult | Exception) -> None:
        self._result = result
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(self, command: str, arguments: dict[str, Any]) -> CommandResult:
        self.calls.append((command, arguments))
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


class SpyProcessor:
    """Counts its invocations and returns fixed rows."""

    def __init__(self, name: str = "spy", rows: list[dict[str, Any]] | None = None) -> None:
        self.name = name
        self._rows = rows
        self.seen: list[str] = []

    async def process(self, ctx: ProcessorContext) -> ProcessorOutcome:
        self.seen.append(ctx.act.name)
        return ProcessorOutcome(rows=self._rows)

    @property
    def call_count(self) -> int:
        return len(self.seen)


class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now


class StubRunner:
    """Task runner that records runs and finishes with a preset status."""

    def __init__(
        self,
        status: ExecutionStatus = ExecutionStatus.SUCCEEDED,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.status = status
        self.delay = delay
        self.error = error
        self.runs: list[str] = []

    async def run(self, task: TaskState, cancel: asyncio.Event | None = None) -> NarrativeExecution:
        self.runs.append(task.task_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return NarrativeExecution(
            narrative_name="stub",
            actor_name=task.actor_name,
            task_id=task.task_id,
            started_at=datetime.now(timezone.utc),
            status=self.status,
            error=None if self.status == ExecutionStatus.SUCCEEDED else "stub failure",
        )


class GatedRunner(StubRunner):
    """StubRunner that holds every run until `proceed` is set."""

    def __init__(self, **kw) -> None:
        super().__init__(**kw)
        self.started = asyncio.Event()
        self.proceed = asyncio.Event()

    async def run(self, task: TaskState, cancel: asyncio.Event | None = None) -> NarrativeExecution:
        self.started.set()
        await self.proceed.wait()
        return await super().run(task, cancel)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def gen(max_tokens: int = 512) -> GenerationConfig:
    return GenerationConfig(model="test-model", temperature=0.0, max_tokens=max_tokens)


def text_act(name: str, literal: str, processors: list[str] | None = None, **kw) -> Act:
    return Act(
        name=name,
        inputs=[TextInput(literal=literal)],
        generation=kw.pop("generation", gen()),
        processors=processors or [],
        **kw,
    )


def narrative(*acts: Act, **kw) -> NarrativeDefinition:
    return NarrativeDefinition(name=kw.pop("name", "test_narrative"), acts=list(acts), **kw)
