"""Narrative executor: drives one narrative run from start to a terminal state.

    Pending → Running → Succeeded
                      ↘ Failed (inputs_unresolved | security_denied |
                                backend_unavailable | extraction_failed |
                                cancelled | persistence_failed)

Acts run strictly in declared order. For each act:

    1. check for cancellation (never mid-act)
    2. resolve inputs; any failure fails the run before the backend is called
    3. call the backend with the conversation so far plus this act's inputs,
       retrying recoverable errors with exponential backoff
    4. persist the ActExecution and its inputs in one write, response verbatim
    5. run the processors the act opted into, recording each outcome

A processor failure does not touch the persisted response and does not stop
later acts; the run finishes and is then marked Failed(extraction_failed).
When every act succeeds and the narrative has a target table (and does not
skip extraction), the final act's rows are written there and returned.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from storyloom.errors import (
    BackendError,
    InputError,
    PersistenceError,
    SecurityDeniedError,
    StoryloomError,
)
from storyloom.llm import Backend, Message
from storyloom.models import (
    Act,
    ActExecution,
    ActInput,
    CarouselConfig,
    ExecutionStatus,
    FailureReason,
    HistoryRetention,
    NarrativeDefinition,
    NarrativeExecution,
    ProcessorRun,
)
from storyloom.platforms import AllowAllGate, SecurityGate
from storyloom.processors import ProcessorContext, ProcessorRegistry
from storyloom.resolver import InputResolver, ResolveContext, ResolvedContent
from storyloom.schedule import Clock, SystemClock
from storyloom.state import StateStore

logger = logging.getLogger(__name__)


class RetrySettings(BaseModel):
    max_retries: int = 3
    initial_backoff: float = 0.1  # seconds
    max_backoff: float = 30.0
    multiplier: float = 2.0

    def delay(self, retry: int) -> float:
        return min(self.initial_backoff * self.multiplier ** retry, self.max_backoff)


@dataclass
class NarrativeResult:
    execution: NarrativeExecution
    acts: list[ActExecution] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    processor_runs: list[ProcessorRun] = field(default_factory=list)
    # failure reason charged if the step in progress raises unexpectedly
    stage: FailureReason = FailureReason.INPUTS_UNRESOLVED

    @property
    def succeeded(self) -> bool:
        return self.execution.status == ExecutionStatus.SUCCEEDED


@dataclass
class CarouselResult:
    iterations: int
    runs: list[NarrativeResult] = field(default_factory=list)
    tokens_used: int = 0
    budget_exhausted: bool = False

    @property
    def successful(self) -> int:
        return sum(r.succeeded for r in self.runs)

    @property
    def failed(self) -> int:
        return len(self.runs) - self.successful

    @property
    def completed(self) -> bool:
        return len(self.runs) == self.iterations

    @property
    def execution(self) -> NarrativeExecution:
        """The record that decides the outcome: the last failed pass, else the last pass."""
        failed = [r for r in self.runs if not r.succeeded]
        return (failed[-1] if failed else self.runs[-1]).execution


class _RunFailed(Exception):
    def __init__(self, reason: FailureReason, detail: str) -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(detail)


def _user_content(resolved: list[ResolvedContent]) -> str:
    return "\n\n".join(r.text for r in resolved)


def _history_content(resolved: list[ResolvedContent]) -> str:
    parts = []
    for r in resolved:
        if r.history_retention == HistoryRetention.FULL:
            parts.append(r.text)
        elif r.history_retention == HistoryRetention.SUMMARY:
            parts.append(r.summary)
    return "\n\n".join(parts)


class NarrativeExecutor:
    def __init__(
        self,
        storage,
        resolver: InputResolver,
        backend: Backend,
        processors: ProcessorRegistry,
        state: StateStore,
        retry: RetrySettings | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        security: SecurityGate | None = None,
    ) -> None:
        self._storage = storage
        self._resolver = resolver
        self._backend = backend
        self._processors = processors
        self._state = state
        self._retry = retry or RetrySettings()
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._security = security or AllowAllGate()

    async def run(
        self,
        narrative: NarrativeDefinition,
        *,
        actor_name: str,
        task_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> NarrativeResult:
        self._processors.check(narrative)

        execution = NarrativeExecution(
            narrative_name=narrative.name,
            actor_name=actor_name,
            task_id=task_id,
            started_at=self._clock.now(),
        )
        self._storage.save_execution(execution)
        execution = execution.model_copy(update={"status": ExecutionStatus.RUNNING})
        self._storage.save_execution(execution)
        logger.info(
            "narrative start name=%s actor=%s execution=%s",
            narrative.name, actor_name, execution.id,
        )

        result = NarrativeResult(execution=execution)
        try:
            failed_acts = await self._run_acts(narrative, execution, result, cancel)
            if failed_acts:
                raise _RunFailed(
                    FailureReason.EXTRACTION_FAILED,
                    "processors failed on act(s) " + ", ".join(failed_acts),
                )
            result.stage = FailureReason.PERSISTENCE_FAILED
            if narrative.target_table and not narrative.skip_extraction and result.rows:
                self._storage.insert_rows(narrative.target_table, result.rows)
        except _RunFailed as f:
            result.execution = self._finish(execution, ExecutionStatus.FAILED, f.reason, f.detail)
            return result
        except PersistenceError as e:
            logger.warning("narrative %s persistence failure: %s", execution.id, e)
            result.execution = self._finish(
                execution, ExecutionStatus.FAILED, FailureReason.PERSISTENCE_FAILED, str(e)
            )
            return result
        except Exception as e:
            logger.exception("narrative %s crashed during %s", execution.id, result.stage.value)
            result.execution = self._finish(
                execution, ExecutionStatus.FAILED, result.stage, f"{type(e).__name__}: {e}"
            )
            return result

        result.execution = self._finish(execution, ExecutionStatus.SUCCEEDED)
        return result

    async def run_carousel(
        self,
        narrative: NarrativeDefinition,
        *,
        actor_name: str,
        task_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CarouselResult:
        """Run the narrative up to `carousel.iterations` times.

        Stops early on the first failed pass unless continue_on_error is set,
        on cancellation, or when the token budget cannot cover another pass.
        """
        config = narrative.carousel or CarouselConfig(iterations=1)
        carousel = CarouselResult(iterations=config.iterations)

        for n in range(1, config.iterations + 1):
            if (
                config.token_budget is not None
                and carousel.tokens_used + config.estimated_tokens_per_iteration > config.token_budget
            ):
                carousel.budget_exhausted = True
                logger.warning("carousel %s budget exhausted after %d pass(es), %d tokens",
                               narrative.name, len(carousel.runs), carousel.tokens_used)
                break

            logger.info("carousel %s pass %d/%d", narrative.name, n, config.iterations)
            result = await self.run(narrative, actor_name=actor_name, task_id=task_id, cancel=cancel)
            carousel.runs.append(result)
            carousel.tokens_used += sum(
                a.token_usage.total_tokens or a.token_usage.input_tokens + a.token_usage.output_tokens
                for a in result.acts
            )
            if result.succeeded:
                continue
            if result.execution.failure_reason == FailureReason.CANCELLED or not config.continue_on_error:
                break

        logger.info("carousel %s finished ok=%d failed=%d budget_exhausted=%s",
                    narrative.name, carousel.successful, carousel.failed, carousel.budget_exhausted)
        return carousel

    def _finish(
        self,
        execution: NarrativeExecution,
        status: ExecutionStatus,
        reason: FailureReason | None = None,
        detail: str = "",
    ) -> NarrativeExecution:
        error = f"{reason.description}: {detail}" if reason is not None else None
        done = execution.model_copy(update={
            "status": status,
            "failure_reason": reason,
            "error": error,
            "completed_at": self._clock.now(),
        })
        self._storage.save_execution(done)
        if reason is None:
            logger.info("narrative succeeded execution=%s", execution.id)
        else:
            logger.warning("narrative failed execution=%s reason=%s: %s",
                           execution.id, reason.value, detail)
        return done

    # ------------------------------------------------------------------
    # Acts
    # ------------------------------------------------------------------

    async def _run_acts(
        self,
        narrative: NarrativeDefinition,
        execution: NarrativeExecution,
        result: NarrativeResult,
        cancel: asyncio.Event | None,
    ) -> list[str]:
        history: list[Message] = []
        failed_acts: list[str] = []
        last_index = len(narrative.acts) - 1

        for sequence, act in enumerate(narrative.acts):
            if cancel is not None and cancel.is_set():
                raise _RunFailed(FailureReason.CANCELLED, f"cancelled before act {act.name!r}")

            result.stage = FailureReason.INPUTS_UNRESOLVED
            ctx = ResolveContext(
                execution_id=execution.id, actor_name=execution.actor_name, act_name=act.name
            )
            try:
                resolved = await self._resolver.resolve_act(act, ctx)
            except SecurityDeniedError as e:
                raise _RunFailed(FailureReason.SECURITY_DENIED, str(e)) from e
            except InputError as e:
                raise _RunFailed(FailureReason.INPUTS_UNRESOLVED, f"act {act.name!r}: {e}") from e

            result.stage = FailureReason.BACKEND_UNAVAILABLE
            messages = history + [Message(role="user", content=_user_content(resolved))]
            try:
                generation = await self._generate(act, messages)
            except BackendError as e:
                raise _RunFailed(
                    FailureReason.BACKEND_UNAVAILABLE, f"act {act.name!r}: {e.kind.value}: {e}"
                ) from e

            result.stage = FailureReason.PERSISTENCE_FAILED
            act_exec = ActExecution(
                execution_id=execution.id,
                sequence=sequence,
                act_name=act.name,
                generation=act.generation,
                response=generation.text,
                token_usage=generation.token_usage,
                created_at=self._clock.now(),
                inputs=[
                    ActInput(order=i, kind=r.kind, content_ref=r.content_ref)
                    for i, r in enumerate(resolved)
                ],
            )
            self._storage.save_act(act_exec)
            result.acts.append(act_exec)
            self._state.record_act(execution.id, act.name, {"response": generation.text})
            logger.info("act done execution=%s act=%s seq=%d len=%d",
                        execution.id, act.name, sequence, len(generation.text))

            result.stage = FailureReason.EXTRACTION_FAILED
            rows = None
            if not narrative.skip_extraction and act.processors:
                rows, ok = await self._run_processors(narrative, execution, act, sequence,
                                                      generation.text, result)
                if not ok:
                    failed_acts.append(act.name)
            if sequence == last_index and rows is not None:
                result.rows = rows

            retained = _history_content(resolved)
            if retained:
                history.append(Message(role="user", content=retained))
            history.append(Message(role="assistant", content=generation.text))

        return failed_acts

    async def _generate(self, act: Act, messages: list[Message]):
        retry = 0
        while True:
            try:
                return await self._backend.generate(
                    messages,
                    model=act.generation.model,
                    temperature=act.generation.temperature,
                    max_tokens=act.generation.max_tokens,
                )
            except BackendError as e:
                if not e.recoverable or retry >= self._retry.max_retries:
                    raise
                delay = self._retry.delay(retry)
                retry += 1
                logger.warning(
                    "backend %s on act=%s, retry %d/%d in %.2fs",
                    e.kind.value, act.name, retry, self._retry.max_retries, delay,
                )
                await self._sleep(delay)

    async def _run_processors(
        self,
        narrative: NarrativeDefinition,
        execution: NarrativeExecution,
        act: Act,
        sequence: int,
        response: str,
        result: NarrativeResult,
    ) -> tuple[list[dict[str, Any]] | None, bool]:
        """Run the act's processors in order. Returns (rows, all_ok)."""
        rows: list[dict[str, Any]] | None = None
        fields: dict[str, Any] = {}
        ok = True

        for name in act.processors:
            processor = self._processors.get(name)
            if getattr(processor, "external_write", False):
                action = f"processor.{name}"
                decision = self._security.authorize(execution.actor_name, action)
                if not decision.allowed:
                    raise _RunFailed(
                        FailureReason.SECURITY_DENIED,
                        str(SecurityDeniedError(execution.actor_name, action, decision.reason)),
                    )

            ctx = ProcessorContext(
                execution_id=execution.id,
                actor_name=execution.actor_name,
                narrative=narrative,
                act=act,
                response=response,
                storage=self._storage,
                rows=rows,
            )
            try:
                outcome = await processor.process(ctx)
            except PersistenceError:
                raise
            except Exception as e:
                if not isinstance(e, StoryloomError):
                    logger.exception("processor %s crashed on act=%s", name, act.name)
                run = ProcessorRun(
                    execution_id=execution.id, sequence=sequence, act_name=act.name,
                    processor=name, ok=False,
                    error_kind=getattr(getattr(e, "kind", None), "value", type(e).__name__),
                    error=str(e),
                )
                self._storage.append_processor_run(run)
                result.processor_runs.append(run)
                logger.warning("processor %s failed on act=%s: %s", name, act.name, e)
                ok = False
                break

            if outcome.rows is not None:
                rows = outcome.rows
            fields.update(outcome.fields)
            run = ProcessorRun(
                execution_id=execution.id, sequence=sequence, act_name=act.name,
                processor=name, ok=True,
                row_count=len(rows) if rows is not None else None,
            )
            self._storage.append_processor_run(run)
            result.processor_runs.append(run)

        if rows is not None:
            fields.update({"rows": rows, "row_count": len(rows)})
        if fields:
            self._state.record_act(execution.id, act.name, fields)
        return (rows if ok else None), ok
