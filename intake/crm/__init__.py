"""Field-service CRM access: token cache, HTTP client, identifier lookup."""

from .client import CRMClient
from .identifiers import CRMObject, extract_identifier, require_identifier
from .token_cache import CachedToken, TokenCache, TokenView, mask_token

__all__ = [
    "CRMClient",
    "CRMObject",
    "CachedToken",
    "TokenCache",
    "TokenView",
    "extract_identifier",
    "mask_token",
    "require_identifier",
]
