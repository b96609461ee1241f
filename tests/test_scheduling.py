"""Tests for turning CRM calendar tasks into open slots."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from intake.errors import UpstreamError
from intake.models.availability import AvailabilityQuery
from intake.scheduling import (
    AvailabilityService,
    busy_intervals,
    normalize_tasks,
    parse_crm_datetime,
)

NY = ZoneInfo("America/New_York")
DAY = date(2025, 3, 10)


def task(start: str, end: str, **extra):
    return {"start_date": start, "end_date": end, **extra}


# ── Task parsing ───────────────────────────────────────────────────


class TestNormalizeTasks:
    def test_bare_list(self):
        assert normalize_tasks([{"id": 1}, "junk"]) == [{"id": 1}]

    @pytest.mark.parametrize("key", ["data", "results", "items"])
    def test_envelopes(self, key):
        assert normalize_tasks({key: [{"id": 1}]}) == [{"id": 1}]

    def test_unknown_shape(self):
        assert normalize_tasks({"count": 0}) == []
        assert normalize_tasks(None) == []


class TestParseCrmDatetime:
    def test_naive_is_business_time(self):
        parsed = parse_crm_datetime("2025-03-10 09:30:00", NY)
        assert parsed == datetime(2025, 3, 10, 9, 30, tzinfo=NY)

    def test_zulu_suffix(self):
        parsed = parse_crm_datetime("2025-03-10T13:30:00Z", NY)
        assert parsed == datetime(2025, 3, 10, 13, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "not a date", 12])
    def test_unusable(self, value):
        assert parse_crm_datetime(value, NY) is None


class TestBusyIntervals:
    def test_drops_completed_and_invalid(self):
        tasks = [
            task("2025-03-10 09:00:00", "2025-03-10 10:00:00"),
            task("2025-03-10 11:00:00", "2025-03-10 12:00:00", is_completed=True),
            task("2025-03-10 13:00:00", "2025-03-10 12:00:00"),
            task("garbage", "2025-03-10 12:00:00"),
        ]
        busy = busy_intervals(tasks, NY)
        assert len(busy) == 1
        assert busy[0].start.hour == 9

    def test_technician_filter_keeps_unassigned(self):
        tasks = [
            task("2025-03-10 09:00:00", "2025-03-10 10:00:00", users_id=7),
            task("2025-03-10 11:00:00", "2025-03-10 12:00:00", users_id=8),
            task("2025-03-10 13:00:00", "2025-03-10 14:00:00"),
        ]
        busy = busy_intervals(tasks, NY, technician_id="7")
        assert [b.start.hour for b in busy] == [9, 13]


# ── Service against the CRM ────────────────────────────────────────


class TestAvailabilityService:
    async def test_slots_from_crm_tasks(self, crm_client, fake_crm):
        fake_crm.on("GET", "calendar-tasks", (200, {"data": [
            task("2025-03-10 10:00:00", "2025-03-10 11:30:00"),
        ]}))
        service = AvailabilityService(crm_client, NY)
        slots = await service.find_open_slots(
            AvailabilityQuery(date=DAY, duration_minutes=60)
        )
        assert [(s.start.hour, s.start.minute, s.end.hour) for s in slots] == [
            (8, 0, 10), (11, 30, 17),
        ]

    async def test_query_filters(self, crm_client, fake_crm):
        fake_crm.on("GET", "calendar-tasks", (200, []))
        service = AvailabilityService(crm_client, NY)
        await service.find_open_slots(
            AvailabilityQuery(date=DAY, duration_minutes=60, technician_id="7")
        )
        params = fake_crm.calls("GET", "calendar-tasks")[0].url.params
        assert params["filters[start_date][from]"] == "2025-03-10 00:00:00"
        assert params["filters[start_date][to]"] == "2025-03-10 23:59:59"
        assert params["filters[users_id]"] == "7"
        assert params["limit"] == "200"

    async def test_no_technician_filter_omitted(self, crm_client, fake_crm):
        fake_crm.on("GET", "calendar-tasks", (200, []))
        service = AvailabilityService(crm_client, NY)
        slots = await service.find_open_slots(AvailabilityQuery(date=DAY, duration_minutes=60))
        assert "filters[users_id]" not in fake_crm.calls("GET", "calendar-tasks")[0].url.params
        assert len(slots) == 1

    async def test_read_retried_once(self, crm_client, fake_crm):
        fake_crm.on("GET", "calendar-tasks", (503, "busy"), (200, []))
        service = AvailabilityService(crm_client, NY)
        await service.find_open_slots(AvailabilityQuery(date=DAY, duration_minutes=60))
        assert len(fake_crm.calls("GET", "calendar-tasks")) == 2

    async def test_crm_failure_propagates(self, crm_client, fake_crm):
        fake_crm.on("GET", "calendar-tasks", (500, "down"))
        service = AvailabilityService(crm_client, NY)
        with pytest.raises(UpstreamError):
            await service.find_open_slots(AvailabilityQuery(date=DAY, duration_minutes=60))
