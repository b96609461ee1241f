"""Read-only availability query: CRM calendar tasks → open booking slots."""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Any, Iterable, Optional

from intake.availability import (
    WORKDAY_END_HOUR,
    WORKDAY_START_HOUR,
    TimeInterval,
    find_availability,
    make_interval,
)
from intake.crm.client import CRMClient
from intake.crm.identifiers import CRMObject
from intake.models.availability import AvailabilityQuery

log = logging.getLogger("intake.scheduling")

TASK_PAGE_LIMIT = 200
# List endpoints wrap their rows under different keys.
_LIST_KEYS = ("data", "results", "items")
# Technician assignment, most specific first.
_TECHNICIAN_KEYS = ("users_id", "user_id", "technician_id")


def normalize_tasks(payload: Any) -> list[dict[str, Any]]:
    """Pull the list of task dicts out of whatever envelope the CRM used."""
    rows: Any = payload
    if isinstance(payload, dict):
        rows = next(
            (payload[k] for k in _LIST_KEYS if isinstance(payload.get(k), list)),
            [],
        )
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]


def parse_crm_datetime(value: Any, tz: tzinfo) -> Optional[datetime]:
    """Parse ISO-8601 or ``YYYY-MM-DD HH:MM:SS``; naive values are in ``tz``."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def task_to_interval(task: dict[str, Any], tz: tzinfo) -> Optional[TimeInterval]:
    start = parse_crm_datetime(task.get("start_date"), tz)
    end = parse_crm_datetime(task.get("end_date"), tz)
    if start is None or end is None:
        return None
    return make_interval(start, end)


def task_technician(task: dict[str, Any]) -> Optional[str]:
    for key in _TECHNICIAN_KEYS:
        value = task.get(key)
        if value is not None and not isinstance(value, bool) and str(value):
            return str(value)
    return None


def busy_intervals(
    tasks: Iterable[dict[str, Any]],
    tz: tzinfo,
    technician_id: Optional[str] = None,
) -> list[TimeInterval]:
    """Busy periods from calendar tasks; invalid tasks are dropped."""
    busy = []
    for task in tasks:
        if task.get("is_completed") is True:
            continue
        if technician_id is not None:
            assigned = task_technician(task)
            # Unassigned tasks still block everyone.
            if assigned is not None and assigned != technician_id:
                continue
        interval = task_to_interval(task, tz)
        if interval is None:
            log.debug("Skipping calendar task %s with unusable dates", task.get("id"))
            continue
        busy.append(interval)
    return busy


class AvailabilityService:
    def __init__(
        self,
        crm: CRMClient,
        tz: tzinfo,
        start_hour: int = WORKDAY_START_HOUR,
        end_hour: int = WORKDAY_END_HOUR,
    ) -> None:
        self._crm = crm
        self._tz = tz
        self._start_hour = start_hour
        self._end_hour = end_hour

    def calendar_query(self, query: AvailabilityQuery) -> dict[str, Optional[str]]:
        day = query.date.isoformat()
        return {
            "limit": str(TASK_PAGE_LIMIT),
            "filters[start_date][from]": f"{day} 00:00:00",
            "filters[start_date][to]": f"{day} 23:59:59",
            "filters[users_id]": query.technician_id,
        }

    async def fetch_tasks(self, query: AvailabilityQuery) -> list[dict[str, Any]]:
        raw = await self._crm.get(
            CRMObject.CALENDAR_TASK.endpoint,
            query=self.calendar_query(query),
            retries=1,
        )
        return normalize_tasks(raw)

    async def find_open_slots(self, query: AvailabilityQuery) -> list[TimeInterval]:
        tasks = await self.fetch_tasks(query)
        busy = busy_intervals(tasks, self._tz, query.technician_id)
        slots = find_availability(
            query.date,
            busy,
            query.duration_minutes,
            self._tz,
            self._start_hour,
            self._end_hour,
        )
        log.info(
            "Availability %s (%d min, technician=%s): %d task(s), %d slot(s)",
            query.date, query.duration_minutes, query.technician_id or "any",
            len(tasks), len(slots),
        )
        return slots
