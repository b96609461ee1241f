"""Interval arithmetic for technician availability.

Pure functions, no I/O.  The CRM hands us *busy* calendar tasks; we clamp
them to the working window, merge overlaps, and invert what is left into
free windows long enough for the requested visit.

None of these functions raise on bad input: a non-positive duration or an
empty busy list degrades to an empty (or whole-window) result and the caller
decides what that means.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable, Optional

WORKDAY_START_HOUR = 8
WORKDAY_END_HOUR = 17


@dataclass(frozen=True)
class TimeInterval:
    """Half-open ``[start, end)`` range with a strictly positive length."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(
                f"Interval end {self.end.isoformat()} is not after start "
                f"{self.start.isoformat()}"
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeInterval") -> bool:
        return self.start < other.end and other.start < self.end


def make_interval(start: datetime, end: datetime) -> Optional[TimeInterval]:
    """Build an interval, or return None when it would be empty or inverted."""
    if end <= start:
        return None
    return TimeInterval(start=start, end=end)


def clamp_interval(
    interval: TimeInterval, bounds: TimeInterval
) -> Optional[TimeInterval]:
    """Truncate ``interval`` to ``bounds``; None if nothing is left."""
    start = max(interval.start, bounds.start)
    end = min(interval.end, bounds.end)
    return make_interval(start, end)


def merge_intervals(intervals: Iterable[TimeInterval]) -> list[TimeInterval]:
    """Sort by start and fold overlapping or touching intervals together."""
    merged: list[TimeInterval] = []
    for interval in sorted(intervals, key=lambda i: i.start):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = TimeInterval(start=last.start, end=interval.end)
            continue
        merged.append(interval)
    return merged


def subtract_busy_from_working(
    working: TimeInterval, busy: Iterable[TimeInterval]
) -> list[TimeInterval]:
    """Return the free windows of ``working`` in chronological order."""
    clamped = [c for c in (clamp_interval(b, working) for b in busy) if c]

    free: list[TimeInterval] = []
    cursor = working.start
    for block in merge_intervals(clamped):
        gap = make_interval(cursor, block.start)
        if gap:
            free.append(gap)
        cursor = block.end

    tail = make_interval(cursor, working.end)
    if tail:
        free.append(tail)
    return free


def generate_slots(
    free_windows: Iterable[TimeInterval], duration_minutes: int
) -> list[TimeInterval]:
    """Keep the free windows that fit a visit of ``duration_minutes``.

    Windows are offered whole; splitting them into fixed start times is up
    to the caller.
    """
    if duration_minutes <= 0:
        return []
    needed = timedelta(minutes=duration_minutes)
    return [w for w in free_windows if w.duration >= needed]


def working_window(
    day: date,
    tz: tzinfo,
    start_hour: int = WORKDAY_START_HOUR,
    end_hour: int = WORKDAY_END_HOUR,
) -> TimeInterval:
    """The bookable hours of ``day`` in the business timezone."""
    return TimeInterval(
        start=datetime.combine(day, time(hour=start_hour), tzinfo=tz),
        end=datetime.combine(day, time(hour=end_hour), tzinfo=tz),
    )


def find_availability(
    day: date,
    busy: Iterable[TimeInterval],
    duration_minutes: int,
    tz: tzinfo,
    start_hour: int = WORKDAY_START_HOUR,
    end_hour: int = WORKDAY_END_HOUR,
) -> list[TimeInterval]:
    """Open slots on ``day`` given the technicians' busy intervals."""
    window = working_window(day, tz, start_hour, end_hour)
    free = subtract_busy_from_working(window, busy)
    return generate_slots(free, duration_minutes)
