"""Pydantic models for the availability query path."""

from __future__ import annotations

import re
from datetime import date as date_type
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class AvailabilityQuery(BaseModel):
    """Which day to search, for how long a visit, optionally for one technician."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    date: date_type
    duration_minutes: int = Field(gt=0)
    technician_id: Optional[str] = None

    @field_validator("date", mode="before")
    @classmethod
    def date_only(cls, value: object) -> object:
        if isinstance(value, date_type) and not isinstance(value, datetime):
            return value
        if not isinstance(value, str) or not _DATE_ONLY.match(value):
            raise ValueError("date must be a YYYY-MM-DD date string")
        return value


class SlotOut(BaseModel):
    start: datetime
    end: datetime


class AvailabilityResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    date: date_type
    duration_minutes: int
    technician_id: Optional[str] = None
    slots: list[SlotOut]
