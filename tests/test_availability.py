"""Tests for the interval arithmetic behind availability."""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from intake.availability import (
    TimeInterval,
    clamp_interval,
    find_availability,
    generate_slots,
    make_interval,
    merge_intervals,
    subtract_busy_from_working,
    working_window,
)

UTC = timezone.utc
DAY = date(2025, 3, 10)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 3, 10, hour, minute, tzinfo=UTC)


def iv(start: tuple, end: tuple) -> TimeInterval:
    return TimeInterval(start=at(*start), end=at(*end))


# ── TimeInterval ───────────────────────────────────────────────────


class TestTimeInterval:
    def test_duration(self):
        assert iv((9,), (10, 30)).duration == timedelta(minutes=90)

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            TimeInterval(start=at(9), end=at(9))

    def test_rejects_inverted(self):
        with pytest.raises(ValueError):
            TimeInterval(start=at(10), end=at(9))

    def test_make_interval_returns_none_for_empty(self):
        assert make_interval(at(9), at(9)) is None
        assert make_interval(at(10), at(9)) is None

    def test_touching_intervals_do_not_overlap(self):
        assert not iv((9,), (10,)).overlaps(iv((10,), (11,)))
        assert iv((9,), (10, 1)).overlaps(iv((10,), (11,)))


# ── Clamp ──────────────────────────────────────────────────────────


class TestClamp:
    def test_truncates_to_bounds(self):
        bounds = iv((8,), (17,))
        assert clamp_interval(iv((7,), (9,)), bounds) == iv((8,), (9,))
        assert clamp_interval(iv((16,), (19,)), bounds) == iv((16,), (17,))

    def test_outside_bounds_is_none(self):
        assert clamp_interval(iv((5,), (7,)), iv((8,), (17,))) is None
        assert clamp_interval(iv((17,), (18,)), iv((8,), (17,))) is None

    def test_idempotent(self):
        bounds = iv((8,), (17,))
        once = clamp_interval(iv((6,), (12,)), bounds)
        assert clamp_interval(once, bounds) == once


# ── Merge ──────────────────────────────────────────────────────────


class TestMerge:
    def test_empty(self):
        assert merge_intervals([]) == []

    def test_overlapping_merge(self):
        merged = merge_intervals([iv((9,), (11,)), iv((10,), (12,))])
        assert merged == [iv((9,), (12,))]

    def test_touching_merge(self):
        merged = merge_intervals([iv((9,), (10,)), iv((10,), (11,))])
        assert merged == [iv((9,), (11,))]

    def test_contained_interval_absorbed(self):
        merged = merge_intervals([iv((9,), (15,)), iv((10,), (11,))])
        assert merged == [iv((9,), (15,))]

    def test_unsorted_input(self):
        merged = merge_intervals([iv((14,), (15,)), iv((9,), (10,)), iv((9, 30), (11,))])
        assert merged == [iv((9,), (11,)), iv((14,), (15,))]

    def test_result_sorted_and_disjoint(self):
        raw = [iv((13,), (14,)), iv((8,), (9,)), iv((8, 30), (10,)), iv((16,), (17,)),
               iv((13, 30), (13, 45)), iv((11,), (12,))]
        merged = merge_intervals(raw)
        for a, b in zip(merged, merged[1:]):
            assert a.end < b.start


# ── Subtract / generate ────────────────────────────────────────────


class TestSubtractBusy:
    def test_no_busy_returns_whole_window(self):
        working = iv((8,), (17,))
        assert subtract_busy_from_working(working, []) == [working]

    def test_single_busy_splits_window(self):
        free = subtract_busy_from_working(iv((8,), (17,)), [iv((10,), (11, 30))])
        assert free == [iv((8,), (10,)), iv((11, 30), (17,))]

    def test_fully_busy_day(self):
        free = subtract_busy_from_working(iv((8,), (17,)), [iv((7,), (18,))])
        assert free == []

    def test_n_disjoint_busy_give_n_plus_one_gaps(self):
        busy = [iv((9,), (10,)), iv((12,), (13,)), iv((15,), (16,))]
        free = subtract_busy_from_working(iv((8,), (17,)), busy)
        assert len(free) == 4

    def test_busy_outside_window_ignored(self):
        free = subtract_busy_from_working(iv((8,), (17,)), [iv((18,), (19,))])
        assert free == [iv((8,), (17,))]

    def test_free_windows_do_not_overlap_busy(self):
        busy = [iv((9,), (10,)), iv((9, 30), (11,)), iv((14,), (14, 15))]
        free = subtract_busy_from_working(iv((8,), (17,)), busy)
        for window in free:
            assert not any(window.overlaps(b) for b in busy)


class TestGenerateSlots:
    def test_filters_short_windows(self):
        windows = [iv((8,), (8, 30)), iv((9,), (11,))]
        assert generate_slots(windows, 60) == [iv((9,), (11,))]

    def test_exact_fit_kept(self):
        assert generate_slots([iv((9,), (10,))], 60) == [iv((9,), (10,))]

    @pytest.mark.parametrize("duration", [0, -30])
    def test_non_positive_duration_is_empty(self, duration):
        assert generate_slots([iv((9,), (17,))], duration) == []


# ── Whole-day search ───────────────────────────────────────────────


class TestFindAvailability:
    def test_busy_morning_block(self):
        slots = find_availability(DAY, [iv((10,), (11, 30))], 60, UTC)
        assert slots == [iv((8,), (10,)), iv((11, 30), (17,))]

    def test_full_day_busy(self):
        assert find_availability(DAY, [iv((8,), (17,))], 30, UTC) == []

    def test_custom_hours(self):
        slots = find_availability(DAY, [], 60, UTC, start_hour=9, end_hour=12)
        assert slots == [iv((9,), (12,))]

    def test_business_timezone_window(self):
        tz = ZoneInfo("America/New_York")
        window = working_window(DAY, tz)
        # 2025-03-10 is after the DST switch: EDT, UTC-4
        assert window.start.astimezone(UTC) == at(12)
        assert window.end.astimezone(UTC) == at(21)

    def test_busy_in_utc_against_local_window(self):
        tz = ZoneInfo("America/New_York")
        # 14:00-15:00 UTC is 10:00-11:00 EDT
        slots = find_availability(DAY, [iv((14,), (15,))], 60, tz)
        assert [s.start.astimezone(tz).hour for s in slots] == [8, 11]
