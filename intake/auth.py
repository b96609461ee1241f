"""Authentication dependency for admin/diagnostic endpoints.

  require_admin_token()  — Bearer token in the Authorization header

Behavior matrix:
  ADMIN_API_KEY set + valid token   → allow
  ADMIN_API_KEY set + wrong/missing → 401 Unauthorized
  ADMIN_API_KEY empty + DEBUG=true  → allow (local dev convenience)
  ADMIN_API_KEY empty + DEBUG=false → 403 Forbidden (locked in production)
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from intake.config import Settings, settings

log = logging.getLogger("intake.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def _settings_for(request: Request) -> Settings:
    return getattr(request.app.state, "settings", settings)


async def require_admin_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency — protect admin endpoints with a bearer token."""
    current = _settings_for(request)
    key = current.admin_api_key

    if not key:
        # No key configured
        if current.debug:
            return  # Local dev, allow without auth
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )

    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode("utf-8"), key.encode("utf-8")
    ):
        log.warning("Rejected admin request to %s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
