"""Execution tracker: the per-task circuit breaker.

Every finished run is reported here. Failures increment the task's
consecutive_failures counter; reaching the threshold pauses the task. Success
resets the counter. A paused task stays out of scheduling until it is resumed
by hand, or, when auto-resume is configured, until the cooldown elapses. A
cooldown resume clears the counter and marks the next run as a probe: a probe
that fails pauses the task again straight away.

Each transition is written to storage before the method returns.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from storyloom.models import TaskState
from storyloom.schedule import Clock, SystemClock

logger = logging.getLogger(__name__)


class CircuitBreakerSettings(BaseModel):
    max_consecutive_failures: int = Field(default=5, ge=1)
    cooldown_seconds: float | None = 3600.0  # None: only a manual resume unpauses


def _drop_lease(task: TaskState, owner: str | None) -> None:
    # a lease taken over by another owner after expiry is not ours to clear
    if owner is None or task.lease_owner == owner:
        task.lease_owner = None
        task.lease_expires_at = None


class ExecutionTracker:
    def __init__(
        self,
        storage,
        settings: CircuitBreakerSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._storage = storage
        self._settings = settings or CircuitBreakerSettings()
        self._clock = clock or SystemClock()

    def record_success(self, task_id: str, owner: str | None = None) -> TaskState | None:
        now = self._clock.now()

        def apply(task: TaskState) -> TaskState:
            task.consecutive_failures = 0
            task.probe = False
            task.last_run = now
            _drop_lease(task, owner)
            return task

        return self._storage.update_task(task_id, apply)

    def record_failure(self, task_id: str, error: str = "", owner: str | None = None) -> bool:
        """Count a failed run. Returns True if the task is now paused."""
        now = self._clock.now()
        threshold = self._settings.max_consecutive_failures

        def apply(task: TaskState) -> TaskState:
            task.consecutive_failures += 1
            task.last_run = now
            _drop_lease(task, owner)
            if error:
                task.metadata["last_error"] = error
            if not task.is_paused and (task.probe or task.consecutive_failures >= threshold):
                task.is_paused = True
                task.paused_at = now
            task.probe = False
            return task

        task = self._storage.update_task(task_id, apply)
        if task is None:
            return False
        if task.is_paused:
            logger.warning(
                "task %s paused after %d consecutive failures",
                task_id, task.consecutive_failures,
            )
        return task.is_paused

    def release(self, task_id: str, owner: str | None = None) -> TaskState | None:
        """Drop the lease without counting the run either way (cancelled runs)."""

        def apply(task: TaskState) -> TaskState:
            _drop_lease(task, owner)
            return task

        return self._storage.update_task(task_id, apply)

    def pause(self, task_id: str) -> TaskState | None:
        now = self._clock.now()

        def apply(task: TaskState) -> TaskState:
            task.is_paused = True
            task.paused_at = now
            return task

        return self._storage.update_task(task_id, apply)

    def resume(self, task_id: str) -> TaskState | None:
        """Manual resume: counter reset, no probe."""

        def apply(task: TaskState) -> TaskState:
            task.is_paused = False
            task.paused_at = None
            task.consecutive_failures = 0
            task.probe = False
            return task

        task = self._storage.update_task(task_id, apply)
        if task is not None:
            logger.info("task %s resumed", task_id)
        return task

    def release_due_cooldowns(self, now: datetime | None = None) -> list[str]:
        """Unpause tasks whose cooldown has elapsed, allowing one probe run each."""
        if self._settings.cooldown_seconds is None:
            return []
        now = now or self._clock.now()
        cooldown = timedelta(seconds=self._settings.cooldown_seconds)
        released = []
        for task in self._storage.list_tasks():
            if not task.is_paused or task.paused_at is None:
                continue
            if task.paused_at + cooldown > now:
                continue

            def apply(t: TaskState) -> TaskState | None:
                if not t.is_paused:
                    return None
                t.is_paused = False
                t.paused_at = None
                t.consecutive_failures = 0
                t.probe = True
                return t

            if self._storage.update_task(task.task_id, apply) is not None:
                logger.info("task %s cooldown elapsed, probe run allowed", task.task_id)
                released.append(task.task_id)
        return released
