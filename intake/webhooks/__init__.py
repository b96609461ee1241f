"""Partner webhook adapters: verify, parse and map into BookingRequest."""

from .leads import LeadWebhookAdapter, parse_lead_webhook
from .oauth import PartnerOAuth
from .payments import PaymentWebhookAdapter
from .signatures import get_signature, verify_hmac_signature

__all__ = [
    "LeadWebhookAdapter",
    "PartnerOAuth",
    "PaymentWebhookAdapter",
    "get_signature",
    "parse_lead_webhook",
    "verify_hmac_signature",
]
