"""FastAPI application — booking intake, availability and partner webhooks.

Endpoints:

  GET  /health                          Health check
  GET  /crm/token                       Masked CRM token preview (admin)
  GET  /availability                    Open slots for a day
  POST /bookings                        Intake form → CRM booking
  POST /leads/progress                  Partial lead capture (no calendar task)
  POST /webhooks/payments               Deposit checkout completed
  POST /webhooks/leads                  Lead partner webhook (HMAC signed)
  GET  /partners/oauth/callback         Lead partner OAuth install (production)
  GET  /partners/oauth/callback-staging Lead partner OAuth install (staging)

The booking flow:
  1. Validate the payload (400 before any external call)
  2. Run the pipeline: customer → estimate → calendar task
  3. Queue the notification email (never blocks or fails the response)
  4. Return the pipeline result, or 502 naming the failed step
"""

from __future__ import annotations

# Load .env into os.environ before settings are read.
from dotenv import load_dotenv
load_dotenv()

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

import httpx

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-24s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from intake.auth import require_admin_token
from intake.config import Settings, settings as default_settings
from intake.crm.client import CRMClient
from intake.crm.token_cache import TokenCache
from intake.errors import ConfigurationError, IntakeError, UpstreamError, ValidationError
from intake.models.availability import AvailabilityResponse, SlotOut
from intake.models.booking import BookingPipelineResult
from intake.notifications import EmailSender, NotificationQueue
from intake.pipeline import BookingPipeline, PipelineLedger
from intake.scheduling import AvailabilityService
from intake.validation import validate_availability_query, validate_book_request
from intake.webhooks.leads import LeadWebhookAdapter
from intake.webhooks.oauth import OAuthEnvironment, PartnerOAuth
from intake.webhooks.payments import PaymentWebhookAdapter
from intake.webhooks.signatures import get_signature

log = logging.getLogger("intake.app")

_START_TIME = time.time()

DEFAULT_LEAD_STAGE = "Lead - Partial"


@dataclass
class IntakeServices:
    """Everything the routes need, built once per process."""

    http: httpx.AsyncClient
    tokens: TokenCache
    crm: CRMClient
    pipeline: BookingPipeline
    availability: AvailabilityService
    notifications: NotificationQueue
    leads: Optional[LeadWebhookAdapter] = None
    payments: Optional[PaymentWebhookAdapter] = None
    partner_oauth: Optional[PartnerOAuth] = None
    owns_http: bool = True


def build_services(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.time,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> IntakeServices:
    """Assemble services from settings.

    CRM credentials are mandatory; an integration whose secrets are missing
    is left unset and its route answers with a configuration error.
    """
    client_id, client_secret = settings.require("crm_client_id", "crm_client_secret")
    tz = ZoneInfo(settings.business_timezone)
    owns_http = http_client is None
    http = http_client or httpx.AsyncClient(timeout=settings.crm_timeout_seconds)

    tokens = TokenCache(
        token_url=settings.crm_token_url,
        client_id=client_id,
        client_secret=client_secret,
        http_client=http,
        skew_seconds=settings.crm_token_skew_seconds,
        clock=clock,
    )
    crm = CRMClient(settings.crm_api_base, tokens, http)
    sender = EmailSender(
        api_key=settings.sendgrid_api_key,
        sender=settings.email_from,
        recipients=settings.email_recipients,
        http_client=http,
        url=settings.sendgrid_url,
    )

    services = IntakeServices(
        http=http,
        tokens=tokens,
        crm=crm,
        pipeline=BookingPipeline(crm, PipelineLedger(clock=clock), tz=tz),
        availability=AvailabilityService(
            crm, tz, settings.workday_start_hour, settings.workday_end_hour
        ),
        notifications=NotificationQueue(
            sender,
            max_attempts=settings.notification_max_attempts,
            retry_delay=settings.notification_retry_delay_seconds,
        ),
        owns_http=owns_http,
    )
    if settings.lead_webhook_secret:
        services.leads = LeadWebhookAdapter(
            settings.lead_webhook_secret,
            tz,
            placeholder_hour=settings.placeholder_schedule_hour,
            placeholder_minutes=settings.placeholder_duration_minutes,
            now=now,
        )
    if settings.stripe_webhook_secret:
        services.payments = PaymentWebhookAdapter(settings.stripe_webhook_secret, http)
    if settings.partner_client_id and settings.partner_client_secret:
        services.partner_oauth = PartnerOAuth(
            settings.partner_token_url,
            settings.partner_client_id,
            settings.partner_client_secret,
            http,
            redirect_uri=settings.partner_redirect_uri,
            redirect_uri_staging=settings.partner_redirect_uri_staging,
        )
    return services


def get_services(request: Request) -> IntakeServices:
    return request.app.state.services


def _error_body(exc: IntakeError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": exc.title, "details": str(exc)}
    if isinstance(exc, UpstreamError) and exc.upstream_status is not None:
        body["upstreamStatus"] = exc.upstream_status
    return body


def _result_response(
    result: BookingPipelineResult, ok_body: dict[str, Any]
) -> JSONResponse:
    """200 with ``ok_body`` on success, 502 naming the failed step otherwise.

    Partial identifiers are logged by the pipeline for reconciliation and
    are not reported to the caller as a partial success.
    """
    if result.status == "ok":
        return JSONResponse(ok_body)
    return JSONResponse(
        {
            "error": "Failed to create CRM booking",
            "details": result.error,
            "failedStep": result.failed_step,
            "completedSteps": result.completed_steps,
        },
        status_code=502,
    )


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Invalid JSON payload") from exc


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[IntakeServices] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            for warning in settings.validate_startup():
                log.warning(warning)
            app.state.services = build_services(settings)
        current: IntakeServices = app.state.services
        current.notifications.start()
        try:
            yield
        finally:
            await current.notifications.stop()
            if current.owns_http:
                await current.http.aclose()

    app = FastAPI(
        title="Booking Intake",
        description="Booking intake, availability and partner webhooks for the field-service CRM",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors_allow_origin],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Idempotency-Key"],
    )

    @app.exception_handler(IntakeError)
    async def intake_error(request: Request, exc: IntakeError) -> JSONResponse:
        if exc.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(_error_body(exc), status_code=exc.status_code)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── CRM token diagnostics ──────────────────────────────────

    @app.get("/crm/token", dependencies=[Depends(require_admin_token)])
    async def crm_token(svc: IntakeServices = Depends(get_services)) -> JSONResponse:
        """Confirm the CRM credentials work without exposing the token."""
        await svc.tokens.get_token()
        view = svc.tokens.view()
        return JSONResponse({
            "accessTokenPreview": view.access_token_preview if view else None,
            "expiresAt": (
                datetime.fromtimestamp(view.expires_at, tz=timezone.utc).isoformat()
                if view else None
            ),
        })

    # ── Availability ───────────────────────────────────────────

    @app.get("/availability")
    async def availability(
        request: Request, svc: IntakeServices = Depends(get_services)
    ) -> JSONResponse:
        params = request.query_params
        query = validate_availability_query(
            params.get("date"),
            params.get("durationMinutes"),
            params.get("technicianId"),
            default_duration=settings.default_duration_minutes,
        )
        slots = await svc.availability.find_open_slots(query)
        response = AvailabilityResponse(
            date=query.date,
            duration_minutes=query.duration_minutes,
            technician_id=query.technician_id,
            slots=[SlotOut(start=s.start, end=s.end) for s in slots],
        )
        return JSONResponse(response.model_dump(mode="json", by_alias=True))

    # ── Booking submission ─────────────────────────────────────

    @app.post("/bookings")
    async def create_booking(
        request: Request, svc: IntakeServices = Depends(get_services)
    ) -> JSONResponse:
        booking = validate_book_request(await _json_body(request))

        if request.query_params.get("debugDates"):
            return JSONResponse(svc.pipeline.debug_dates(booking))

        result = await svc.pipeline.run(
            booking, idempotency_key=request.headers.get("idempotency-key")
        )
        svc.notifications.enqueue_booking(booking, result)
        return _result_response(result, result.model_dump(mode="json", by_alias=True))

    @app.post("/leads/progress")
    async def lead_progress(
        request: Request, svc: IntakeServices = Depends(get_services)
    ) -> JSONResponse:
        body = await _json_body(request)
        stage = body.get("stage") if isinstance(body, dict) else None
        stage = stage.strip() if isinstance(stage, str) and stage.strip() else DEFAULT_LEAD_STAGE

        booking = validate_book_request(body, require_schedule=False)
        booking = booking.with_options(estimateStatus=stage)
        result = await svc.pipeline.run(
            booking,
            create_calendar_task=False,
            idempotency_key=request.headers.get("idempotency-key"),
            stage_label=stage,
        )
        if result.status == "ok":
            svc.notifications.enqueue_reminder(booking, stage)
        return _result_response(result, {
            "status": "ok",
            "stage": stage,
            "result": result.model_dump(mode="json", by_alias=True),
        })

    # ── Partner webhooks ───────────────────────────────────────

    @app.post("/webhooks/leads")
    async def lead_webhook(
        request: Request, svc: IntakeServices = Depends(get_services)
    ) -> JSONResponse:
        if svc.leads is None:
            raise ConfigurationError("Lead webhook is not configured (LEAD_WEBHOOK_SECRET)")
        raw_body = await request.body()
        booking = svc.leads.to_booking_request(raw_body, get_signature(request.headers))
        result = await svc.pipeline.run(booking)
        svc.notifications.enqueue_booking(booking, result)
        return _result_response(result, {
            "status": "received",
            "forwardedToCrm": True,
            "booking": result.model_dump(mode="json", by_alias=True),
        })

    @app.post("/webhooks/payments")
    async def payment_webhook(
        request: Request, svc: IntakeServices = Depends(get_services)
    ) -> JSONResponse:
        if svc.payments is None:
            raise ConfigurationError("Payment webhook is not configured (STRIPE_WEBHOOK_SECRET)")
        raw_body = await request.body()
        booking = await svc.payments.to_booking_request(
            raw_body, request.headers.get("stripe-signature")
        )
        if booking is None:
            return JSONResponse({"received": True})
        result = await svc.pipeline.run(booking)
        svc.notifications.enqueue_booking(booking, result)
        return _result_response(result, {"received": True, "status": result.status})

    # ── Partner OAuth install ──────────────────────────────────

    async def _oauth_callback(
        request: Request, svc: IntakeServices, environment: OAuthEnvironment
    ) -> JSONResponse:
        params = request.query_params
        if params.get("error"):
            return JSONResponse(
                {
                    "error": "Partner authorization failed",
                    "code": params.get("error"),
                    "description": params.get("error_description"),
                    "environment": environment,
                },
                status_code=400,
            )
        code = params.get("code")
        if not code:
            return JSONResponse(
                {"error": "Missing code parameter", "environment": environment},
                status_code=400,
            )
        if svc.partner_oauth is None:
            raise ConfigurationError(
                "Partner OAuth is not configured (PARTNER_CLIENT_ID, PARTNER_CLIENT_SECRET)"
            )
        tokens = await svc.partner_oauth.exchange_code(code, environment)
        return JSONResponse({
            "status": "ok",
            "environment": environment,
            "message": "Partner OAuth successful. Store these tokens securely.",
            "tokens": tokens,
            "state": params.get("state"),
        })

    @app.get("/partners/oauth/callback")
    async def oauth_callback(
        request: Request, svc: IntakeServices = Depends(get_services)
    ) -> JSONResponse:
        return await _oauth_callback(request, svc, "production")

    @app.get("/partners/oauth/callback-staging")
    async def oauth_callback_staging(
        request: Request, svc: IntakeServices = Depends(get_services)
    ) -> JSONResponse:
        return await _oauth_callback(request, svc, "staging")

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "intake.app:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        log_config=log_config,
    )
