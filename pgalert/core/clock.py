"""Injectable time sources.

Every component that compares timestamps takes a :class:`Clock` instead of
calling ``datetime.now`` directly, so escalation timing can be driven
deterministically in tests and replays.
"""

from __future__ import annotations

import datetime
from typing import Protocol


class Clock(Protocol):
    """Anything that can report the current UTC time."""

    def now(self) -> datetime.datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime.datetime:
        return datetime.datetime.now(datetime.UTC)


class ManualClock:
    """A clock that only moves when told to.

    Usage::

        clock = ManualClock(datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC))
        clock.advance(minutes=10)
    """

    def __init__(self, start: datetime.datetime | None = None) -> None:
        if start is None:
            start = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
        if start.tzinfo is None:
            raise ValueError("ManualClock requires a timezone-aware start time")
        self._now = start

    def now(self) -> datetime.datetime:
        return self._now

    def advance(self, **delta: float) -> datetime.datetime:
        """Move forward by a ``timedelta(**delta)``; returns the new time."""
        step = datetime.timedelta(**delta)
        if step < datetime.timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self._now += step
        return self._now

    def set(self, when: datetime.datetime) -> None:
        if when < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = when
