"""Booking pipeline: one BookingRequest → customer, estimate, calendar task.

The three CRM writes run strictly in order, each feeding its identifier to
the next.  The CRM has no multi-object transactions and we do not roll
back: if the estimate fails after the customer was created, the customer
stays, the result says which step failed, and the booking is reconciled by
hand.

Retrying such a request blindly would create a second customer, so every
run is recorded in a :class:`PipelineLedger` under an idempotency key (the
``Idempotency-Key`` header, or a fingerprint of the request).  A retry with
the same key resumes after the last completed step.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
import weakref
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from typing import Any, Callable, Optional

from intake.crm.client import CRMClient
from intake.crm.identifiers import (
    CRMObject,
    Identifier,
    extract_identifier,
    require_identifier,
)
from intake.errors import UpstreamError
from intake.models.booking import (
    BookingPipelineResult,
    BookingRequest,
    StepOutcome,
)

log = logging.getLogger("intake.pipeline")

# Origins the CRM accepts as a customer's referral source.
REFERRAL_SOURCES = (
    "Google",
    "Facebook",
    "Yelp",
    "Thumbtack",
    "Website",
    "Referral",
    "Repeat Customer",
    "Other",
)
FALLBACK_REFERRAL_SOURCE = "Other"

_REFERRAL_ALIASES = {
    "web": "Website",
    "web-form": "Website",
    "site": "Website",
    "evcharger": "Website",
    "ev-charger-estimator": "Website",
    "stripe": "Website",
    "stripe-checkout": "Website",
    "google-ads": "Google",
    "gmb": "Google",
    "fb": "Facebook",
    "instagram": "Facebook",
    "word-of-mouth": "Referral",
    "friend": "Referral",
    "repeat": "Repeat Customer",
    "returning": "Repeat Customer",
}

SERVICE_LABELS = {
    "led-recessed-lighting": "LED Recessed Lighting",
    "ev-charger-install": "EV Charger Install",
}


def _normalize_source(value: str) -> str:
    return re.sub(r"[\s_]+", "-", value.strip().lower())


def map_referral_source(source: str) -> str:
    """Map a free-text origin onto the CRM's allow-list."""
    key = _normalize_source(source)
    for allowed in REFERRAL_SOURCES:
        if key == _normalize_source(allowed):
            return allowed
    return _REFERRAL_ALIASES.get(key, FALLBACK_REFERRAL_SOURCE)


def service_label(service_type: str) -> str:
    return SERVICE_LABELS.get(service_type, service_type)


def _format_price(price: Optional[float]) -> Optional[str]:
    if not price:
        return None
    return f"${price:g}"


# ── Idempotency ledger ───────────────────────────────────────────────


@dataclass
class LedgerEntry:
    customer_id: Optional[Identifier] = None
    estimate_id: Optional[Identifier] = None
    result: Optional[BookingPipelineResult] = None
    updated_at: float = 0.0


@dataclass
class PipelineLedger:
    """Process-local record of pipeline progress per idempotency key."""

    ttl_seconds: float = 24 * 3600
    max_entries: int = 1000
    clock: Callable[[], float] = time.time
    _entries: "OrderedDict[str, LedgerEntry]" = field(default_factory=OrderedDict)
    # Held only by runs in progress or waiting on the key.
    _locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = field(
        default_factory=weakref.WeakValueDictionary
    )

    @staticmethod
    def fingerprint(request: BookingRequest) -> str:
        raw = request.model_dump_json(by_alias=True)
        return "req-" + hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def get(self, key: str) -> Optional[LedgerEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() - entry.updated_at > self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return entry

    def record(self, key: str, **updates: Any) -> LedgerEntry:
        entry = self._entries.get(key) or LedgerEntry()
        for name, value in updates.items():
            setattr(entry, name, value)
        entry.updated_at = self.clock()
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return entry


# ── Pipeline ─────────────────────────────────────────────────────────


class BookingPipeline:
    """Creates the CRM records for one booking."""

    def __init__(
        self,
        crm: CRMClient,
        ledger: Optional[PipelineLedger] = None,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._crm = crm
        self._ledger = ledger if ledger is not None else PipelineLedger()
        self._tz = tz

    @property
    def ledger(self) -> PipelineLedger:
        return self._ledger

    async def run(
        self,
        request: BookingRequest,
        *,
        create_calendar_task: bool = True,
        idempotency_key: Optional[str] = None,
        stage_label: Optional[str] = None,
    ) -> BookingPipelineResult:
        """Run customer → estimate → calendar task.

        CRM failures stop the run and come back as ``status="error"``; only
        a success response without an identifier (ContractViolation) raises.
        """
        key = idempotency_key or self._ledger.fingerprint(request)
        async with self._ledger.lock(key):
            return await self._run_locked(
                key, request, create_calendar_task, stage_label
            )

    async def _run_locked(
        self,
        key: str,
        request: BookingRequest,
        create_calendar_task: bool,
        stage_label: Optional[str],
    ) -> BookingPipelineResult:
        entry = self._ledger.get(key)
        if entry and entry.result and entry.result.status == "ok":
            log.info("Booking %s already completed, returning recorded result", key[:16])
            return entry.result

        steps: list[StepOutcome] = []
        customer_id = entry.customer_id if entry else None
        estimate_id = entry.estimate_id if entry else None
        calendar_task_id: Optional[Identifier] = None
        current = "customer"

        try:
            if customer_id is None:
                customer_id = await self.create_customer(request)
                self._ledger.record(key, customer_id=customer_id)
                steps.append(StepOutcome(step="customer", status="completed"))
            else:
                steps.append(StepOutcome(
                    step="customer", status="completed",
                    detail="reused from an earlier attempt",
                ))

            current = "estimate"
            if estimate_id is None:
                estimate_id = await self.create_estimate(request, customer_id, stage_label)
                self._ledger.record(key, estimate_id=estimate_id)
                steps.append(StepOutcome(step="estimate", status="completed"))
            else:
                steps.append(StepOutcome(
                    step="estimate", status="completed",
                    detail="reused from an earlier attempt",
                ))

            current = "calendar_task"
            if not create_calendar_task:
                steps.append(StepOutcome(
                    step="calendar_task", status="skipped",
                    detail="not requested for this intake path",
                ))
            elif request.schedule is None:
                steps.append(StepOutcome(
                    step="calendar_task", status="skipped",
                    detail="no schedule supplied",
                ))
            else:
                calendar_task_id = await self.create_calendar_task(
                    request, customer_id, estimate_id, job_id=None
                )
                steps.append(StepOutcome(step="calendar_task", status="completed"))

        except UpstreamError as exc:
            steps.append(StepOutcome(step=current, status="failed", detail=str(exc)))
            log.error(
                "Booking pipeline failed at %s step (customer=%s, estimate=%s): %s",
                current, customer_id, estimate_id, exc,
            )
            result = BookingPipelineResult(
                status="error",
                customer_id=customer_id,
                estimate_id=estimate_id,
                message=f"Booking failed while creating the {current.replace('_', ' ')}",
                error=str(exc),
                steps=steps,
            )
            self._ledger.record(key, result=result)
            return result

        result = BookingPipelineResult(
            status="ok",
            customer_id=customer_id,
            estimate_id=estimate_id,
            job_id=None,
            calendar_task_id=calendar_task_id,
            message="Booking created in CRM",
            steps=steps,
        )
        self._ledger.record(key, result=result)
        log.info(
            "Booking created: customer=%s estimate=%s calendar_task=%s",
            customer_id, estimate_id, calendar_task_id,
        )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def create_customer(self, request: BookingRequest) -> Identifier:
        response = await self._crm.post(
            CRMObject.CUSTOMER.endpoint, json=self.customer_payload(request)
        )
        return require_identifier(response, CRMObject.CUSTOMER)

    async def create_estimate(
        self,
        request: BookingRequest,
        customer_id: Identifier,
        stage_label: Optional[str] = None,
    ) -> Identifier:
        response = await self._crm.post(
            CRMObject.ESTIMATE.endpoint,
            json=self.estimate_payload(request, customer_id, stage_label),
        )
        return require_identifier(response, CRMObject.ESTIMATE)

    async def create_calendar_task(
        self,
        request: BookingRequest,
        customer_id: Identifier,
        estimate_id: Identifier,
        job_id: Optional[Identifier] = None,
    ) -> Optional[Identifier]:
        response = await self._crm.post(
            CRMObject.CALENDAR_TASK.endpoint,
            json=self.calendar_task_payload(request, customer_id, estimate_id, job_id),
        )
        task_id = extract_identifier(response, CRMObject.CALENDAR_TASK)
        if task_id is None:
            log.warning("Calendar task created without an identifier in the response")
        return task_id

    # ------------------------------------------------------------------
    # Field mapping
    # ------------------------------------------------------------------

    def customer_payload(self, request: BookingRequest) -> dict[str, Any]:
        customer = request.customer
        payload = {
            "first_name": customer.first_name,
            "last_name": customer.last_name,
            "email": customer.email,
            "phone": customer.phone,
            "address_line_1": customer.address_line1,
            "city": customer.city,
            "state": customer.state,
            "postal_code": customer.postal_code,
            "referral_source": map_referral_source(request.source),
            "notes": f"Lead source: {request.source}",
        }
        return {k: v for k, v in payload.items() if v is not None}

    def estimate_payload(
        self,
        request: BookingRequest,
        customer_id: Identifier,
        stage_label: Optional[str] = None,
    ) -> dict[str, Any]:
        service = request.service
        notes = [
            service.notes,
            f"Source: {request.source}",
            f"Estimated price: {_format_price(service.estimated_price)}"
            if service.estimated_price else None,
            f"Stage: {stage_label}" if stage_label else None,
        ]
        payload: dict[str, Any] = {
            "customers_id": customer_id,
            "description": f"Estimate for {service_label(service.type)}",
            "notes": "\n".join(n for n in notes if n),
            "referral_source": map_referral_source(request.source),
            "metadata": {"options": dict(service.options)},
        }
        if request.schedule is not None:
            payload.update(self.schedule_fields(request))
        return payload

    def calendar_task_payload(
        self,
        request: BookingRequest,
        customer_id: Identifier,
        estimate_id: Identifier,
        job_id: Optional[Identifier] = None,
    ) -> dict[str, Any]:
        schedule = request.schedule
        if schedule is None:
            raise ValueError("calendar task requires a schedule")
        payload: dict[str, Any] = {
            "start_date": schedule.start.astimezone(self._tz).isoformat(),
            "end_date": schedule.end.astimezone(self._tz).isoformat(),
            "description": self.calendar_description(request),
            "customers_id": customer_id,
            "estimates_id": estimate_id,
            "type": request.service.type,
        }
        if job_id is not None:
            payload["jobs_id"] = job_id
        return payload

    def schedule_fields(self, request: BookingRequest) -> dict[str, Any]:
        """CRM date, time-of-day and duration fields for the estimate."""
        schedule = request.schedule
        if schedule is None:
            return {}
        start = schedule.start.astimezone(self._tz)
        end = schedule.end.astimezone(self._tz)
        return {
            "start_date": start.strftime("%Y-%m-%d"),
            "start_time": start.strftime("%H:%M"),
            "end_time": end.strftime("%H:%M"),
            "duration": schedule.duration_seconds,
        }

    @staticmethod
    def calendar_description(request: BookingRequest) -> str:
        service = request.service
        parts = [
            f"{service.type} via {request.source}",
            service.notes,
            f"Est. price: {_format_price(service.estimated_price)}"
            if service.estimated_price else None,
        ]
        return " - ".join(p for p in parts if p)

    def debug_dates(self, request: BookingRequest) -> dict[str, Any]:
        """The date conversions a booking would send, without calling the CRM."""
        schedule = request.schedule
        return {
            "debug": True,
            "rawSchedule": schedule.model_dump(mode="json") if schedule else None,
            "timezone": str(self._tz),
            **self.schedule_fields(request),
        }
