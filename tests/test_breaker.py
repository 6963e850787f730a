"""Tests for storyloom.breaker: persistence circuit breaker and guarded storage."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from helpers import ManualClock
from storyloom.breaker import BreakerState, GuardedStorage, PersistenceBreaker
from storyloom.errors import CircuitOpenError, InputNotFoundError, PersistenceError


def _failing_storage() -> MagicMock:
    inner = MagicMock()
    inner.get_task.side_effect = PersistenceError("disk full")
    return inner


class TestPersistenceBreaker:
    def test_opens_after_threshold(self) -> None:
        clock = ManualClock()
        breaker = PersistenceBreaker(failure_threshold=3, clock=clock)
        guarded = GuardedStorage(_failing_storage(), breaker)

        for _ in range(3):
            with pytest.raises(PersistenceError):
                guarded.get_task("t1")
        assert breaker.state is BreakerState.OPEN
        assert breaker.is_open

    def test_open_breaker_does_not_touch_storage(self) -> None:
        inner = _failing_storage()
        breaker = PersistenceBreaker(failure_threshold=1, clock=ManualClock())
        guarded = GuardedStorage(inner, breaker)
        with pytest.raises(PersistenceError):
            guarded.get_task("t1")

        with pytest.raises(CircuitOpenError):
            guarded.get_task("t1")
        assert inner.get_task.call_count == 1

    def test_half_open_trial_success_closes(self) -> None:
        clock = ManualClock()
        inner = _failing_storage()
        breaker = PersistenceBreaker(failure_threshold=1, reset_after=timedelta(seconds=30), clock=clock)
        guarded = GuardedStorage(inner, breaker)
        with pytest.raises(PersistenceError):
            guarded.get_task("t1")

        clock.advance(30)
        assert breaker.state is BreakerState.HALF_OPEN
        assert not breaker.is_open
        inner.get_task.side_effect = None
        inner.get_task.return_value = None
        assert guarded.get_task("t1") is None
        assert breaker.state is BreakerState.CLOSED
        assert breaker.failures == 0

    def test_half_open_trial_failure_reopens(self) -> None:
        clock = ManualClock()
        breaker = PersistenceBreaker(failure_threshold=2, reset_after=timedelta(seconds=10), clock=clock)
        guarded = GuardedStorage(_failing_storage(), breaker)
        for _ in range(2):
            with pytest.raises(PersistenceError):
                guarded.get_task("t1")
        clock.advance(10)
        with pytest.raises(PersistenceError):
            guarded.get_task("t1")
        assert breaker.state is BreakerState.OPEN

    def test_success_resets_count(self) -> None:
        inner = MagicMock()
        inner.get_task.side_effect = [PersistenceError("x"), None, PersistenceError("y")]
        breaker = PersistenceBreaker(failure_threshold=2, clock=ManualClock())
        guarded = GuardedStorage(inner, breaker)
        for _ in range(3):
            try:
                guarded.get_task("t1")
            except PersistenceError:
                pass
        assert breaker.state is BreakerState.CLOSED

    def test_other_errors_not_counted(self) -> None:
        inner = MagicMock()
        inner.query.side_effect = InputNotFoundError("no table")
        breaker = PersistenceBreaker(failure_threshold=1, clock=ManualClock())
        with pytest.raises(InputNotFoundError):
            GuardedStorage(inner, breaker).query("ghost")
        assert breaker.state is BreakerState.CLOSED


def test_guarded_storage_passes_through(storage) -> None:
    guarded = GuardedStorage(storage, PersistenceBreaker())
    guarded.insert_rows("t", [{"a": 1}])
    assert guarded.query("t") == [{"a": 1}]
    assert guarded.base_path == storage.base_path
