"""Data models for the intake service."""

from .availability import AvailabilityQuery, AvailabilityResponse, SlotOut
from .booking import (
    BookingPipelineResult,
    BookingRequest,
    CustomerInfo,
    ScheduleWindow,
    ServiceDetails,
    StepOutcome,
)

__all__ = [
    "AvailabilityQuery",
    "AvailabilityResponse",
    "BookingPipelineResult",
    "BookingRequest",
    "CustomerInfo",
    "ScheduleWindow",
    "ServiceDetails",
    "SlotOut",
    "StepOutcome",
]
