"""Payment provider webhook → BookingRequest.

When a deposit checkout completes, the session metadata points at the intake
payload stored before the customer was sent to checkout.  We fetch it, inline
any stored photos, mark the deposit as paid and hand the result to the
pipeline.  Other event types are acknowledged and ignored.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Optional

import httpx
import stripe

from intake.errors import AuthenticationError, UpstreamError, ValidationError
from intake.models.booking import BookingRequest
from intake.validation import validate_book_request

log = logging.getLogger("intake.webhooks.payments")

CHECKOUT_COMPLETED = "checkout.session.completed"
MAX_PHOTOS = 4


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


class PaymentWebhookAdapter:
    def __init__(self, webhook_secret: str, http_client: httpx.AsyncClient) -> None:
        self._webhook_secret = webhook_secret
        self._http = http_client

    def construct_event(self, raw_body: bytes, signature: Optional[str]) -> Any:
        if not signature:
            raise AuthenticationError("Missing payment webhook signature")
        try:
            return stripe.Webhook.construct_event(
                raw_body, signature, self._webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            log.warning("Payment webhook rejected: %s", exc)
            raise AuthenticationError("Invalid payment webhook signature") from exc
        except ValueError as exc:
            raise ValidationError("Payment webhook body is not valid JSON") from exc

    async def to_booking_request(
        self, raw_body: bytes, signature: Optional[str]
    ) -> Optional[BookingRequest]:
        """Return the enriched request, or None for events we do not handle."""
        event = self.construct_event(raw_body, signature)
        event_type = _field(event, "type")
        if event_type != CHECKOUT_COMPLETED:
            log.info("Ignoring payment event %s", event_type)
            return None

        session = _field(_field(event, "data"), "object")
        payload_url = _field(_field(session, "metadata"), "payloadUrl")
        if not payload_url:
            raise ValidationError("Missing payload URL in checkout session metadata")

        stored = await self._fetch_json(payload_url)
        request = validate_book_request(_field(stored, "payload"))
        photo_refs = _field(stored, "photoRefs")
        if photo_refs is None:
            photo_refs = []
        elif not isinstance(photo_refs, list):
            raise ValidationError("Stored photoRefs must be a list")
        photos = [await self._fetch_photo(ref) for ref in photo_refs[:MAX_PHOTOS]]

        log.info("Deposit paid for checkout session %s", _field(session, "id"))
        enriched = request.with_options(
            photos=photos or None,
            depositPaid=True,
            estimateStatus="Estimate Won",
        )
        return validate_book_request(enriched.model_dump(mode="json", by_alias=True))

    async def _fetch_json(self, url: str) -> Any:
        response = await self._http.get(url)
        if not response.is_success:
            raise UpstreamError(
                f"Unable to read stored payload ({response.status_code})",
                upstream_status=response.status_code,
                reason=response.reason_phrase,
                body=response.text,
            )
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise UpstreamError("Stored payload is not valid JSON") from exc

    async def _fetch_photo(self, ref: Any) -> dict[str, Any]:
        url = _field(ref, "url")
        if not isinstance(url, str):
            raise ValidationError("Stored photo reference has no url")
        response = await self._http.get(url)
        if not response.is_success:
            raise UpstreamError(
                f"Failed to fetch photo blob ({response.status_code})",
                upstream_status=response.status_code,
            )
        content_type = (
            _field(ref, "type")
            or response.headers.get("content-type")
            or "image/jpeg"
        )
        encoded = base64.b64encode(response.content).decode("ascii")
        return {
            "name": _field(ref, "name"),
            "type": _field(ref, "type"),
            "dataUrl": f"data:{content_type};base64,{encoded}",
        }
