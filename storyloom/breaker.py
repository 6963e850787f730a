"""Persistence circuit breaker.

Storage calls go through a PersistenceBreaker. After `failure_threshold`
consecutive PersistenceErrors the breaker opens and every call fails fast with
CircuitOpenError without touching storage. Once `reset_after` has elapsed the
breaker is half-open: the next call is a trial, which closes the breaker on
success and re-opens it on failure.

    closed ──N failures──► open ──reset_after──► half_open
      ▲                     ▲                        │
      └──── trial ok ───────┼──── trial failed ──────┘

GuardedStorage wraps a Storage so every public method is routed through the
breaker. Errors that are not PersistenceErrors (a missing table, say) pass
through without counting.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from storyloom.errors import CircuitOpenError, PersistenceError
from storyloom.schedule import Clock, SystemClock
from storyloom.storage import Storage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class PersistenceBreaker:
    def __init__(
        self,
        failure_threshold: int = 3,
        reset_after: timedelta = timedelta(seconds=30),
        clock: Clock | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._threshold = failure_threshold
        self._reset_after = reset_after
        self._clock = clock or SystemClock()
        self._failures = 0
        self._opened_at: datetime | None = None

    @property
    def state(self) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.CLOSED
        if self._clock.now() - self._opened_at >= self._reset_after:
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    @property
    def is_open(self) -> bool:
        """True while calls are being refused outright."""
        return self.state is BreakerState.OPEN

    @property
    def failures(self) -> int:
        return self._failures

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        state = self.state
        if state is BreakerState.OPEN:
            raise CircuitOpenError("Persistence circuit is open; storage call refused")
        try:
            result = fn(*args, **kwargs)
        except PersistenceError:
            self._on_failure(state)
            raise
        self._on_success(state)
        return result

    def reset(self) -> None:
        self._failures = 0
        self._opened_at = None

    def _on_failure(self, state: BreakerState) -> None:
        self._failures += 1
        if state is BreakerState.HALF_OPEN:
            logger.warning("persistence trial call failed, circuit re-opened")
            self._opened_at = self._clock.now()
        elif self._failures >= self._threshold:
            logger.warning(
                "persistence circuit opened after %d consecutive failures", self._failures
            )
            self._opened_at = self._clock.now()

    def _on_success(self, state: BreakerState) -> None:
        if state is BreakerState.HALF_OPEN:
            logger.info("persistence trial call succeeded, circuit closed")
        self.reset()


class GuardedStorage:
    """A Storage whose every public method goes through a PersistenceBreaker."""

    def __init__(self, storage: Storage, breaker: PersistenceBreaker) -> None:
        self._storage = storage
        self.breaker = breaker

    @property
    def base_path(self):
        return self._storage.base_path

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._storage, name)
        if name.startswith("_") or not callable(attr):
            return attr

        def guarded(*args: Any, **kwargs: Any) -> Any:
            return self.breaker.call(attr, *args, **kwargs)

        guarded.__name__ = name
        return guarded
