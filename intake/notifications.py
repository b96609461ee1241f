"""Booking notification emails, sent off the request path.

Handlers enqueue a job and return; a background worker (started in the app
lifespan) drains the queue and talks to SendGrid.  Each job is retried a few
times with a delay; a job that still fails is logged and dropped.  A failed
email never changes a booking result that is already in the CRM.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Optional

import httpx

from intake.errors import UpstreamError
from intake.models.booking import BookingPipelineResult, BookingRequest
from intake.pipeline import service_label

log = logging.getLogger("intake.notifications")

SendOutcome = Literal["sent", "skipped"]

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
BUSINESS_NAME = "Tentmakers Electric"
BUSINESS_PHONE = "(704) 555-1234"


def redact_pii(value: Optional[str]) -> str:
    """Mask PII for logging — show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(_EMAIL_RE.match(value.strip()))


def dedupe_emails(emails: list[str]) -> list[str]:
    seen: dict[str, str] = {}
    for email in emails:
        trimmed = email.strip()
        if trimmed and trimmed.lower() not in seen:
            seen[trimmed.lower()] = trimmed
    return list(seen.values())


def _money(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not value:
        return "N/A"
    return f"${value:g}"


def build_booking_text(request: BookingRequest, result: BookingPipelineResult) -> str:
    customer = request.customer
    service = request.service
    options = service.options
    estimate_status = options.get("estimateStatus")
    payment_preference = options.get("paymentPreference")
    schedule = request.schedule

    lines = [
        f"New {service_label(service.type)} request",
        "",
        f"Name: {customer.full_name}",
        f"Email: {customer.email or 'N/A'}",
        f"Phone: {customer.phone or 'N/A'}",
        "",
        f"Estimate: {_money(service.estimated_price)}",
        f"Estimate status: {estimate_status if isinstance(estimate_status, str) else 'Estimate Requested'}",
        f"Payment preference: {payment_preference if isinstance(payment_preference, str) else 'N/A'}",
        f"Deposit paid: {'Yes' if options.get('depositPaid') else 'No'}",
        f"Deposit amount: {_money(options.get('depositAmount'))}",
        f"Schedule start: {schedule.start.isoformat() if schedule else 'N/A'}",
        f"Schedule end: {schedule.end.isoformat() if schedule else 'N/A'}",
    ]
    if options.get("schedulePlaceholder"):
        lines.append("Schedule is a placeholder, not confirmed with the customer.")
    lines += [
        "",
        "Details:",
        service.notes or "N/A",
        "",
        "CRM IDs:",
        f"Customer: {result.customer_id if result.customer_id is not None else 'unknown'}",
        f"Estimate: {result.estimate_id if result.estimate_id is not None else 'unknown'}",
        f"Calendar task: {result.calendar_task_id if result.calendar_task_id is not None else 'unknown'}",
    ]
    if result.status == "error":
        lines += ["", f"Booking incomplete, failed at: {result.failed_step}", result.error or ""]
    return "\n".join(lines)


def build_reminder_text(request: BookingRequest, stage: str) -> str:
    label = service_label(request.service.type)
    return "\n".join([
        f"Hi {request.customer.first_name or 'there'},",
        "",
        f'We noticed you started the {label} estimate and reached the "{stage}" step.',
        "To lock in your install slot, please return to the calculator and submit "
        "the deposit or reply to this email so we can follow up.",
        "",
        f"If you prefer, you can also call us at {BUSINESS_PHONE} or reply here "
        "and we'll help you finish the booking.",
        "",
        f"– {BUSINESS_NAME}",
    ])


class EmailSender:
    """Plain-text mail over the SendGrid v3 API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        recipients: list[str],
        http_client: httpx.AsyncClient,
        url: str = "https://api.sendgrid.com/v3/mail/send",
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._recipients = recipients
        self._http = http_client
        self._url = url

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._sender)

    async def send_booking_email(
        self, request: BookingRequest, result: BookingPipelineResult
    ) -> SendOutcome:
        if not self.configured or not self._recipients:
            log.warning("Email skipped: SENDGRID_API_KEY/EMAIL_FROM/EMAIL_TO not fully set.")
            return "skipped"

        extra = [request.customer.email] if is_valid_email(request.customer.email) else []
        to = dedupe_emails(self._recipients + extra)
        subject = (
            f"New {service_label(request.service.type)} Request - "
            f"{request.customer.full_name}"
        )
        await self._send(to, subject, build_booking_text(request, result))
        return "sent"

    async def send_reminder_email(self, request: BookingRequest, stage: str) -> SendOutcome:
        email = (request.customer.email or "").strip()
        if not self.configured or not is_valid_email(email):
            log.warning("Reminder email skipped: missing configuration or customer email")
            return "skipped"

        label = service_label(request.service.type)
        if "deposit" in stage.lower():
            subject = f"Reminder: Finish your {label} deposit"
        else:
            subject = f"Reminder: Complete your {label} estimate request"
        await self._send([email], subject, build_reminder_text(request, stage))
        return "sent"

    async def _send(self, to: list[str], subject: str, text: str) -> None:
        body = {
            "personalizations": [{"to": [{"email": addr} for addr in to]}],
            "from": {"email": self._sender},
            "subject": subject,
            "content": [{"type": "text/plain", "value": text}],
        }
        response = await self._http.post(
            self._url,
            json=body,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if not response.is_success:
            raise UpstreamError(
                f"SendGrid API failed ({response.status_code}): {response.text[:200]}",
                upstream_status=response.status_code,
                reason=response.reason_phrase,
                body=response.text,
            )
        log.info("Email sent to %s: %s",
                 ", ".join(redact_pii(addr) for addr in to), subject)


# ── Queue ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class NotificationJob:
    kind: Literal["booking", "reminder"]
    request: BookingRequest
    result: Optional[BookingPipelineResult] = None
    stage: str = ""


class NotificationQueue:
    """Fire-and-forget delivery with its own retry policy."""

    def __init__(
        self,
        sender: EmailSender,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        maxsize: int = 500,
    ) -> None:
        self._sender = sender
        self._max_attempts = max(max_attempts, 1)
        self._retry_delay = retry_delay
        self._maxsize = maxsize
        self._queue: Optional[asyncio.Queue[NotificationJob]] = None
        self._worker: Optional[asyncio.Task] = None
        self.delivered = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker on the running loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._worker = asyncio.create_task(self._run(), name="notification-worker")
        log.info("Notification worker started")

    async def stop(self, drain: bool = True) -> None:
        if self._worker is None:
            return
        if drain and self._queue is not None:
            await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        log.info("Notification worker stopped (delivered=%d, dropped=%d)",
                 self.delivered, self.dropped)

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    def enqueue_booking(self, request: BookingRequest, result: BookingPipelineResult) -> bool:
        return self._put(NotificationJob(kind="booking", request=request, result=result))

    def enqueue_reminder(self, request: BookingRequest, stage: str) -> bool:
        return self._put(NotificationJob(kind="reminder", request=request, stage=stage))

    def _put(self, job: NotificationJob) -> bool:
        if self._queue is None or not self.running:
            log.error("Notification worker not running, dropping %s email", job.kind)
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            log.error("Notification queue full, dropping %s email", job.kind)
            self.dropped += 1
            return False
        return True

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await self._deliver(job)
            except Exception:
                # keep the worker alive for the next job
                self.dropped += 1
                log.exception("Unexpected error sending %s email", job.kind)
            finally:
                self._queue.task_done()

    async def _deliver(self, job: NotificationJob) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                if job.kind == "booking":
                    assert job.result is not None
                    await self._sender.send_booking_email(job.request, job.result)
                else:
                    await self._sender.send_reminder_email(job.request, job.stage)
                self.delivered += 1
                return
            except (UpstreamError, httpx.HTTPError) as exc:
                log.warning("Failed to send %s email (attempt %d/%d): %s",
                            job.kind, attempt, self._max_attempts, exc)
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_delay * attempt)
        self.dropped += 1
        log.error("Giving up on %s email for %s", job.kind,
                  redact_pii(job.request.customer.email))
