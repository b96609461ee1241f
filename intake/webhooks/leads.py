"""Lead-referral partner webhook → BookingRequest.

Lead payloads are loosely typed: the person may sit under ``lead.contact``
or ``lead.customer``, the address under the contact or the lead, and most
fields have two or three historical names.  Leads rarely carry a confirmed
time, so when no usable window is present a placeholder (tomorrow morning,
fixed length) is substituted and flagged in the service options.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Callable, Mapping, Optional

from intake.errors import ValidationError
from intake.models.booking import BookingRequest
from intake.validation import validate_book_request
from intake.webhooks.signatures import verify_hmac_signature

log = logging.getLogger("intake.webhooks.leads")

LEAD_SOURCE = "thumbtack"
DEFAULT_SERVICE_TYPE = "thumbtack-lead"


@dataclass(frozen=True)
class LeadEnvelope:
    event: Optional[str]
    data: dict[str, Any]


def parse_lead_webhook(body: Any) -> LeadEnvelope:
    if not isinstance(body, dict):
        raise ValidationError("Lead webhook payload must be an object")
    data = body.get("data")
    if not isinstance(data, dict):
        raise ValidationError("Lead webhook payload missing data")
    event = body.get("event")
    return LeadEnvelope(event=event if isinstance(event, str) else None, data=data)


def _text(obj: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def split_name(full_name: str) -> tuple[str, str]:
    first, *rest = full_name.split() or [""]
    return first or "Thumbtack", " ".join(rest) or "Lead"


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class LeadWebhookAdapter:
    """Verifies, parses and maps lead webhooks for the booking pipeline."""

    def __init__(
        self,
        secret: str,
        tz: tzinfo,
        placeholder_hour: int = 9,
        placeholder_minutes: int = 120,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._secret = secret
        self._tz = tz
        self._placeholder_hour = placeholder_hour
        self._placeholder_minutes = placeholder_minutes
        self._now = now

    def to_booking_request(
        self, raw_body: bytes, signature: Optional[str]
    ) -> BookingRequest:
        verify_hmac_signature(raw_body, signature, self._secret)
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Lead webhook body is not valid JSON") from exc
        envelope = parse_lead_webhook(body)
        log.info("Lead webhook received (event=%s)", envelope.event or "unknown")
        return validate_book_request(self.map_lead(envelope))

    def placeholder_window(self) -> tuple[datetime, datetime]:
        """Tomorrow at the placeholder hour, business timezone."""
        tomorrow = self._now().astimezone(self._tz).date() + timedelta(days=1)
        start = datetime.combine(tomorrow, time(hour=self._placeholder_hour), tzinfo=self._tz)
        return start, start + timedelta(minutes=self._placeholder_minutes)

    def derive_schedule(self, lead: Mapping[str, Any]) -> tuple[dict[str, str], bool]:
        """Return the schedule and whether it came from the lead itself."""
        start = _parse_instant(_text(lead, "requestedStart", "start_time", "startDate"))
        end = _parse_instant(_text(lead, "requestedEnd", "end_time", "endDate"))
        if start and end and end > start:
            return {"start": start.isoformat(), "end": end.isoformat()}, True

        start, end = self.placeholder_window()
        return {"start": start.isoformat(), "end": end.isoformat()}, False

    def map_lead(self, envelope: LeadEnvelope) -> dict[str, Any]:
        data = envelope.data
        lead = _mapping(data.get("lead")) or data
        contact = _mapping(lead.get("contact")) or _mapping(lead.get("customer"))
        address = _mapping(contact.get("address")) or _mapping(lead.get("address"))

        full_name = (
            _text(contact, "name")
            or _text(lead, "customerName", "name")
            or "Thumbtack Lead"
        )
        first_name, last_name = split_name(full_name)
        schedule, confirmed = self.derive_schedule(lead)

        options: dict[str, Any] = {
            "thumbtackLeadId": lead.get("id") or contact.get("id"),
            "leadEvent": envelope.event,
            "raw": lead,
            "scheduleConfirmed": confirmed,
        }
        if not confirmed:
            options["schedulePlaceholder"] = True
            log.info("Lead has no usable schedule, using placeholder %s", schedule["start"])

        return {
            "source": LEAD_SOURCE,
            "customer": {
                "firstName": first_name,
                "lastName": last_name,
                "email": _text(contact, "email") or _text(lead, "email"),
                "phone": _text(contact, "phone") or _text(lead, "phone"),
                "addressLine1": _text(address, "line1", "addressLine1"),
                "city": _text(address, "city"),
                "state": _text(address, "state"),
                "postalCode": _text(address, "postal_code", "zip"),
            },
            "service": {
                "type": _text(lead, "jobType", "category") or DEFAULT_SERVICE_TYPE,
                "notes": _text(lead, "description", "details", "message") or "Thumbtack lead",
                "options": options,
            },
            "schedule": schedule,
        }
