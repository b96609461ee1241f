"""Pydantic models for booking requests and pipeline results.

Wire format is camelCase (``firstName``, ``estimatedPrice`` ...) to match the
intake forms; Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

RequiredText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
)


def _string_or_none(value: Any) -> Any:
    # Loosely-typed sources send numbers, nulls or objects for optional text.
    return value if isinstance(value, str) else None


class CustomerInfo(BaseModel):
    model_config = _WIRE_CONFIG

    first_name: RequiredText
    last_name: RequiredText
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None

    @field_validator(
        "email", "phone", "address_line1", "city", "state", "postal_code",
        mode="before",
    )
    @classmethod
    def optional_text(cls, value: Any) -> Any:
        return _string_or_none(value)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ServiceDetails(BaseModel):
    model_config = _WIRE_CONFIG

    type: RequiredText
    notes: Optional[str] = None
    estimated_price: Optional[float] = None
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def optional_notes(cls, value: Any) -> Any:
        return _string_or_none(value)

    @field_validator("estimated_price", mode="before")
    @classmethod
    def numeric_price(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value

    @field_validator("options", mode="before")
    @classmethod
    def options_mapping(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}


class ScheduleWindow(BaseModel):
    """Requested visit window; naive timestamps are taken as UTC."""

    model_config = _WIRE_CONFIG

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def end_after_start(self) -> "ScheduleWindow":
        if self.end <= self.start:
            raise ValueError("schedule.end must be after schedule.start")
        return self

    @property
    def duration_seconds(self) -> int:
        return int((self.end - self.start).total_seconds())


class BookingRequest(BaseModel):
    """Normalized intake record. Immutable once validated."""

    model_config = _WIRE_CONFIG

    source: RequiredText
    customer: CustomerInfo
    service: ServiceDetails
    schedule: Optional[ScheduleWindow] = None

    def with_options(self, **updates: Any) -> "BookingRequest":
        """Return a copy whose service options are merged with ``updates``.

        Keys set to ``None`` are removed.
        """
        options = {**self.service.options, **updates}
        options = {k: v for k, v in options.items() if v is not None}
        service = self.service.model_copy(update={"options": options})
        return self.model_copy(update={"service": service})


# ── Pipeline results ─────────────────────────────────────────────────

PipelineStep = Literal["customer", "estimate", "calendar_task"]
StepStatus = Literal["completed", "failed", "skipped"]


class StepOutcome(BaseModel):
    model_config = _WIRE_CONFIG

    step: PipelineStep
    status: StepStatus
    detail: str = ""


class BookingPipelineResult(BaseModel):
    """Summary of one pipeline run.

    ``steps`` records which CRM writes happened, so a partially created
    booking (customer without estimate, say) can be reconciled by hand.
    """

    model_config = _WIRE_CONFIG

    status: Literal["ok", "error"]
    customer_id: str | int | None = None
    estimate_id: str | int | None = None
    job_id: str | int | None = None  # job creation not wired up yet
    calendar_task_id: str | int | None = None
    message: str = ""
    error: Optional[str] = None
    steps: list[StepOutcome] = Field(default_factory=list)

    @property
    def failed_step(self) -> Optional[str]:
        for outcome in self.steps:
            if outcome.status == "failed":
                return outcome.step
        return None

    @property
    def completed_steps(self) -> list[str]:
        return [o.step for o in self.steps if o.status == "completed"]
