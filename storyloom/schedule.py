"""Schedule policies and next-run computation.

A task's schedule is declared as one of:

    {"type": "interval", "seconds": 3600, "jitter_seconds": 60,
     "window": {"start": "09:00", "end": "17:00"}}
    {"type": "once", "at": "2026-01-01T09:00:00Z"}
    {"type": "immediate"}

next_run(policy, after) is a pure function: the wall clock never enters it.
Callers pass `after` (normally the dispatch time) and, for jitter, a seeded
random.Random. All times are UTC; windows are UTC times of day and may cross
midnight (start > end).
"""

from __future__ import annotations

import random
from datetime import datetime, time, timedelta, timezone
from typing import Annotated, Literal, Protocol, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """UTC wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def _assume_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


# Naive datetimes from config or older records are read as UTC.
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

class TimeWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: time
    end: time

    def contains(self, moment: datetime) -> bool:
        t = moment.timetz().replace(tzinfo=None)
        if self.start <= self.end:
            return self.start <= t < self.end
        return t >= self.start or t < self.end

    def next_opening(self, moment: datetime) -> datetime:
        """First window start at or after `moment`."""
        candidate = moment.replace(
            hour=self.start.hour, minute=self.start.minute,
            second=self.start.second, microsecond=0,
        )
        if candidate < moment:
            candidate += timedelta(days=1)
        return candidate


class IntervalSchedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["interval"] = "interval"
    seconds: int = Field(gt=0)
    jitter_seconds: int = Field(default=0, ge=0)
    window: TimeWindow | None = None


class OnceSchedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["once"] = "once"
    at: UtcDatetime


class ImmediateSchedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["immediate"] = "immediate"


SchedulePolicy = Annotated[
    Union[IntervalSchedule, OnceSchedule, ImmediateSchedule],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Next-run computation
# ---------------------------------------------------------------------------

def _fit_window(moment: datetime, window: TimeWindow | None) -> datetime:
    if window is None or window.contains(moment):
        return moment
    return window.next_opening(moment)


def next_run(
    policy: IntervalSchedule | OnceSchedule | ImmediateSchedule,
    after: datetime,
    rng: random.Random | None = None,
) -> datetime | None:
    """Return the next due time strictly after a run at `after`, or None when exhausted."""
    if isinstance(policy, IntervalSchedule):
        delay = float(policy.seconds)
        if policy.jitter_seconds:
            delay += (rng or random.Random()).uniform(0, policy.jitter_seconds)
        return _fit_window(after + timedelta(seconds=delay), policy.window)

    if isinstance(policy, OnceSchedule):
        return policy.at if after < policy.at else None

    return None  # immediate: runs once


def initial_run(
    policy: IntervalSchedule | OnceSchedule | ImmediateSchedule,
    now: datetime,
) -> datetime:
    """First due time for a task that has never run."""
    if isinstance(policy, OnceSchedule):
        return policy.at
    if isinstance(policy, IntervalSchedule):
        return _fit_window(now, policy.window)
    return now


# Exhausted schedules park the task here; next_run is never null in storage.
NEVER = datetime.max.replace(tzinfo=timezone.utc)
