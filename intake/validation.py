"""Input validation: raw JSON / query params → validated models.

Pydantic does the checking; this module turns its errors into a single
:class:`intake.errors.ValidationError` with a readable message, so the HTTP
layer can reject the request before any external call is made.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import pydantic

from intake.errors import ValidationError
from intake.models.availability import AvailabilityQuery
from intake.models.booking import BookingRequest

DEFAULT_DURATION_MINUTES = 120


def _describe(exc: pydantic.ValidationError) -> str:
    messages = []
    for error in exc.errors():
        where = ".".join(str(part) for part in error["loc"])
        if error["type"] == "missing":
            messages.append(f"{where} is required")
        elif error["type"] == "string_too_short":
            messages.append(f"{where} must not be empty")
        else:
            msg = error["msg"].removeprefix("Value error, ")
            messages.append(f"{where}: {msg}" if where else msg)
    return "; ".join(messages)


def validate_book_request(body: Any, require_schedule: bool = True) -> BookingRequest:
    """Validate an intake payload.

    ``require_schedule`` is off for intake paths that only capture a lead
    (no calendar task is created for those).
    """
    if not isinstance(body, Mapping):
        raise ValidationError("Request body must be an object")
    try:
        request = BookingRequest.model_validate(body)
    except pydantic.ValidationError as exc:
        raise ValidationError(_describe(exc)) from exc
    if require_schedule and request.schedule is None:
        raise ValidationError("schedule is required")
    return request


def validate_availability_query(
    date: Any,
    duration_minutes: Any = None,
    technician_id: Optional[str] = None,
    default_duration: int = DEFAULT_DURATION_MINUTES,
) -> AvailabilityQuery:
    if duration_minutes is None or duration_minutes == "":
        duration_minutes = default_duration
    try:
        duration = float(duration_minutes)
    except (TypeError, ValueError):
        raise ValidationError("durationMinutes must be a positive number") from None
    if not duration > 0 or not duration.is_integer():
        raise ValidationError("durationMinutes must be a positive whole number")
    try:
        return AvailabilityQuery(
            date=date,
            duration_minutes=int(duration),
            technician_id=technician_id or None,
        )
    except pydantic.ValidationError as exc:
        raise ValidationError(_describe(exc)) from exc
