"""Error taxonomy shared by the pipeline, the CRM client and the HTTP layer.

Each kind maps to one HTTP status in ``intake.app``:

  ValidationError        → 400  malformed or missing input, rejected before any call
  AuthenticationError    → 401  bad webhook signature / credentials
  UpstreamError          → 502  CRM or partner API answered non-2xx
  TokenUnavailableError  → 502  neither refresh nor re-issue produced a token
  ContractViolation      → 502  a success response lacked an expected identifier
  ConfigurationError     → 500  a required setting is missing
"""

from __future__ import annotations

import json
from typing import Any

BODY_EXCERPT_CHARS = 500


class IntakeError(Exception):
    """Base class for every error the service raises on purpose."""

    status_code = 500
    title = "Internal error"


class ValidationError(IntakeError):
    status_code = 400
    title = "Invalid request"


class AuthenticationError(IntakeError):
    status_code = 401
    title = "Unauthorized"


class ConfigurationError(IntakeError):
    status_code = 500
    title = "Service misconfigured"


class UpstreamError(IntakeError):
    """A remote API answered with a non-2xx status (or not at all)."""

    status_code = 502
    title = "Upstream request failed"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        reason: str = "",
        body: Any = None,
    ) -> None:
        self.upstream_status = upstream_status
        self.reason = reason
        self.body = body
        super().__init__(message)

    @property
    def body_excerpt(self) -> str:
        if self.body is None:
            return ""
        text = self.body if isinstance(self.body, str) else json.dumps(self.body)
        return text[:BODY_EXCERPT_CHARS]


class TokenUnavailableError(UpstreamError):
    title = "CRM authentication unavailable"


class ContractViolation(IntakeError):
    """The upstream said yes but the response shape is not what we rely on."""

    status_code = 502
    title = "Unexpected upstream response"
