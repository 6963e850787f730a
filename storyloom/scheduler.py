"""Task store and scheduler.

The task store keeps one TaskState record per task id. Dispatch is a single
read-modify-write (`claim`): it refuses paused, not-yet-due and currently
leased tasks; otherwise it takes a lease and advances next_run from the
schedule policy right away, before the run starts. A run that outlasts its
interval therefore cannot be dispatched twice. Leases expire, so a task held
by a crashed process becomes claimable again after lease_seconds. A live run
renews its lease on a heartbeat, and the scheduler also refuses to claim a task
id it is already running, so one task never has two runs in flight.

The scheduler is one polling loop feeding a bounded queue, drained by a fixed
number of worker coroutines. Each worker runs one task to completion before
taking the next. Outcomes go to the execution tracker. Stopping the loop
cancels running narratives before their next act.

While the persistence breaker is open the scheduler is degraded: it logs a
warning and dispatches nothing until storage recovers.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

from pydantic import BaseModel, Field

from storyloom.breaker import PersistenceBreaker
from storyloom.errors import ConfigError, PersistenceError
from storyloom.executor import NarrativeExecutor
from storyloom.models import (
    ExecutionStatus,
    FailureReason,
    NarrativeDefinition,
    NarrativeExecution,
    TaskDefinition,
    TaskState,
)
from storyloom.schedule import NEVER, Clock, SystemClock, initial_run, next_run
from storyloom.tracker import ExecutionTracker

logger = logging.getLogger(__name__)


class SchedulerSettings(BaseModel):
    poll_interval: float = Field(default=5.0, gt=0)  # seconds
    concurrency: int = Field(default=4, ge=1)
    lease_seconds: float = Field(default=900.0, gt=0)


# ---------------------------------------------------------------------------
# Task store
# ---------------------------------------------------------------------------

class TaskStore:
    def __init__(self, storage, clock: Clock | None = None, rng: random.Random | None = None) -> None:
        self._storage = storage
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._definitions: dict[str, TaskDefinition] = {}

    def register(self, definition: TaskDefinition) -> TaskState:
        """Add a task. An existing record is kept as-is so restarts resume where they left off."""
        self._definitions[definition.task_id] = definition
        existing = self._storage.get_task(definition.task_id)
        if existing is not None:
            return existing
        task = TaskState(
            task_id=definition.task_id,
            actor_name=definition.actor_name,
            narrative=definition.narrative,
            next_run=initial_run(definition.schedule, self._clock.now()),
            is_paused=not definition.enabled,
        )
        self._storage.save_task(task)
        logger.info("task registered id=%s next_run=%s", task.task_id, task.next_run.isoformat())
        return task

    def definition(self, task_id: str) -> TaskDefinition | None:
        return self._definitions.get(task_id)

    def get(self, task_id: str) -> TaskState | None:
        return self._storage.get_task(task_id)

    def all(self) -> list[TaskState]:
        return self._storage.list_tasks()

    def due(self, now: datetime | None = None) -> list[TaskState]:
        now = now or self._clock.now()
        tasks = [
            t for t in self._storage.list_tasks()
            if t.next_run <= now and not t.is_paused and not t.is_leased(now)
        ]
        tasks.sort(key=lambda t: t.next_run)
        return tasks

    def claim(
        self,
        task_id: str,
        owner: str,
        lease_seconds: float,
        now: datetime | None = None,
        force: bool = False,
    ) -> TaskState | None:
        """Lease a task for one run. Returns None when it cannot be dispatched.

        `force` skips the due check (manual trigger) but never a pause or a live lease.
        """
        now = now or self._clock.now()
        definition = self._definitions.get(task_id)
        if definition is None:
            return None

        def apply(task: TaskState) -> TaskState | None:
            if task.is_paused or task.is_leased(now):
                return None
            if not force and task.next_run > now:
                return None
            task.lease_owner = owner
            task.lease_expires_at = now + timedelta(seconds=lease_seconds)
            upcoming = next_run(definition.schedule, now, self._rng)
            task.next_run = upcoming if upcoming is not None else NEVER
            return task

        task = self._storage.update_task(task_id, apply)
        if task is not None:
            logger.info("task claimed id=%s owner=%s next_run=%s",
                        task_id, owner, task.next_run.isoformat())
        return task

    def renew(
        self, task_id: str, owner: str, lease_seconds: float, now: datetime | None = None
    ) -> TaskState | None:
        """Extend a lease the owner still holds. Returns None if it is held by someone else."""
        now = now or self._clock.now()

        def apply(task: TaskState) -> TaskState | None:
            if task.lease_owner != owner:
                return None
            task.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return task

        return self._storage.update_task(task_id, apply)


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------

class TaskRunner(Protocol):
    async def run(self, task: TaskState, cancel: asyncio.Event | None = None) -> NarrativeExecution: ...


class NarrativeTaskRunner:
    """Runs the narrative a task points at, keyed by the task's narrative path."""

    def __init__(self, executor: NarrativeExecutor, narratives: Mapping[str, NarrativeDefinition]) -> None:
        self._executor = executor
        self._narratives = narratives

    async def run(self, task: TaskState, cancel: asyncio.Event | None = None) -> NarrativeExecution:
        narrative = self._narratives.get(task.narrative)
        if narrative is None:
            raise ConfigError(f"Task {task.task_id!r} references unknown narrative {task.narrative!r}")
        if narrative.carousel is not None:
            carousel = await self._executor.run_carousel(
                narrative, actor_name=task.actor_name, task_id=task.task_id, cancel=cancel
            )
            return carousel.execution
        result = await self._executor.run(
            narrative, actor_name=task.actor_name, task_id=task.task_id, cancel=cancel
        )
        return result.execution


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class Scheduler:
    def __init__(
        self,
        store: TaskStore,
        tracker: ExecutionTracker,
        runner: TaskRunner,
        breaker: PersistenceBreaker | None = None,
        settings: SchedulerSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._runner = runner
        self._breaker = breaker
        self._settings = settings or SchedulerSettings()
        self._clock = clock or SystemClock()
        self._owner = f"scheduler-{uuid4().hex[:8]}"
        self._queue: asyncio.Queue[TaskState] = asyncio.Queue(maxsize=self._settings.concurrency)
        self._cancel = asyncio.Event()
        self._in_flight: set[str] = set()  # claimed here and not yet reported
        self._was_degraded = False

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def degraded(self) -> bool:
        return self._breaker is not None and self._breaker.is_open

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def cancel_running(self) -> None:
        """Ask in-flight narratives to stop before their next act."""
        self._cancel.set()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _claim(
        self, task_id: str, now: datetime | None = None, force: bool = False
    ) -> TaskState | None:
        if task_id in self._in_flight:
            return None
        task = self._store.claim(
            task_id, self._owner, self._settings.lease_seconds, now=now, force=force
        )
        if task is not None:
            self._in_flight.add(task_id)
        return task

    def poll_once(self) -> list[str]:
        """Claim due tasks and queue them for the workers. Returns the queued ids."""
        if self.degraded:
            if not self._was_degraded:
                logger.warning("persistence circuit open; scheduler degraded, no new dispatches")
            self._was_degraded = True
            return []
        if self._was_degraded:
            logger.info("persistence recovered; scheduler dispatching again")
            self._was_degraded = False

        now = self._clock.now()
        queued = []
        try:
            self._tracker.release_due_cooldowns(now)
            for task in self._store.due(now):
                if self._queue.full():
                    break
                claimed = self._claim(task.task_id, now=now)
                if claimed is None:
                    continue
                self._queue.put_nowait(claimed)
                queued.append(claimed.task_id)
        except PersistenceError as e:
            logger.warning("poll aborted by storage failure: %s", e)
        return queued

    async def try_run(self, task_id: str, force: bool = False) -> NarrativeExecution | None:
        """Claim and run one task inline. Returns None if it could not be claimed."""
        if self.degraded:
            return None
        task = self._claim(task_id, force=force)
        if task is None:
            logger.debug("task %s not claimable, skipping", task_id)
            return None
        return await self._execute(task)

    async def _heartbeat(self, task_id: str) -> None:
        """Keep renewing the lease while the run lasts."""
        interval = self._settings.lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                if self._store.renew(task_id, self._owner, self._settings.lease_seconds) is None:
                    logger.warning("task %s lease lost to another owner", task_id)
                    return
            except PersistenceError as e:
                logger.warning("could not renew lease of task %s: %s", task_id, e)

    async def _execute(self, task: TaskState) -> NarrativeExecution | None:
        logger.info("dispatch task=%s actor=%s", task.task_id, task.actor_name)
        heartbeat = asyncio.create_task(self._heartbeat(task.task_id))
        try:
            try:
                execution = await self._runner.run(task, self._cancel)
            except Exception as e:
                logger.exception("task %s raised", task.task_id)
                self._report(task.task_id, None, str(e))
                return None
            self._report(task.task_id, execution, execution.error or "")
            return execution
        finally:
            heartbeat.cancel()
            self._in_flight.discard(task.task_id)

    def _report(self, task_id: str, execution: NarrativeExecution | None, error: str) -> None:
        try:
            if execution is not None and execution.status == ExecutionStatus.SUCCEEDED:
                self._tracker.record_success(task_id, owner=self._owner)
            elif execution is not None and execution.failure_reason == FailureReason.CANCELLED:
                self._tracker.release(task_id, owner=self._owner)
            else:
                self._tracker.record_failure(task_id, error, owner=self._owner)
        except PersistenceError as e:
            # The lease expires on its own; the task is picked up again after that.
            logger.error("could not record outcome of task %s: %s", task_id, e)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _worker(self, n: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._execute(task)
            finally:
                self._queue.task_done()

    def _drop_queued(self) -> None:
        """Hand back leases of tasks that were queued but never started."""
        while not self._queue.empty():
            task = self._queue.get_nowait()
            try:
                self._tracker.release(task.task_id, owner=self._owner)
            except PersistenceError as e:
                logger.error("could not release task %s: %s", task.task_id, e)
            finally:
                self._in_flight.discard(task.task_id)
                self._queue.task_done()

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until `stop` is set, then cancel running narratives between acts and wait for them."""
        workers = [
            asyncio.create_task(self._worker(n), name=f"storyloom-worker-{n}")
            for n in range(self._settings.concurrency)
        ]
        logger.info("scheduler %s started workers=%d", self._owner, len(workers))
        try:
            while not stop.is_set():
                self.poll_once()
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self._settings.poll_interval)
                except asyncio.TimeoutError:
                    pass
            logger.info("scheduler %s stopping, in flight: %s", self._owner, sorted(self._in_flight))
            self.cancel_running()
            self._drop_queued()
            await self._queue.join()
        finally:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("scheduler %s stopped", self._owner)
