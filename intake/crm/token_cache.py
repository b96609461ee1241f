"""OAuth token cache for the CRM API.

State machine::

    Absent ──exchange──▶ Valid ──(clock passes expires_at)──▶ Expired
                           ▲                                     │
                           └────── refresh_token / re-issue ─────┘

One token is held at a time and replaced wholesale on every exchange.  The
lifetime the server reports is shortened by ``skew_seconds`` when the token
is stored, so a token is never handed out moments before it lapses.

Refreshes are serialized: concurrent callers that find the token expired
wait on one lock, and whoever gets it second re-checks the cache and reuses
the token the first caller just fetched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from intake.errors import TokenUnavailableError, UpstreamError

log = logging.getLogger("intake.crm.token_cache")

DEFAULT_SKEW_SECONDS = 60


@dataclass(frozen=True)
class CachedToken:
    access_token: str
    refresh_token: Optional[str]
    expires_at: float  # epoch seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class TokenView:
    """What may leave the cache: a masked preview, never the token itself."""

    access_token_preview: str
    expires_at: float


def mask_token(token: str) -> str:
    if not token:
        return token
    if len(token) <= 6:
        return f"{token[:2]}****"
    return f"{token[:8]}****"


class TokenCache:
    """Holds the CRM bearer token and renews it when it lapses."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
        skew_seconds: int = DEFAULT_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._http = http_client
        self._skew_seconds = skew_seconds
        self._clock = clock
        self._token: Optional[CachedToken] = None
        self._lock = asyncio.Lock()
        self.exchange_count = 0

    @property
    def cached_token(self) -> Optional[CachedToken]:
        return self._token

    def view(self) -> Optional[TokenView]:
        token = self._token
        if token is None:
            return None
        return TokenView(
            access_token_preview=mask_token(token.access_token),
            expires_at=token.expires_at,
        )

    def _valid_token(self) -> Optional[CachedToken]:
        token = self._token
        if token is None or token.is_expired(self._clock()):
            return None
        return token

    async def get_token(self) -> str:
        """Return a bearer token that has not expired, fetching one if needed."""
        token = self._valid_token()
        if token is None:
            token = await self.refresh(only_if_expired=True)
        return token.access_token

    async def refresh(self, only_if_expired: bool = False) -> CachedToken:
        """Exchange for a new token: refresh grant first, then client credentials.

        Exchanges are serialized.  With ``only_if_expired``, a token that
        another caller fetched while this one waited is returned as is.
        """
        async with self._lock:
            if only_if_expired:
                token = self._valid_token()
                if token is not None:
                    return token
            return await self._refresh_locked()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _refresh_locked(self) -> CachedToken:
        current = self._token
        if current is not None and current.refresh_token:
            try:
                return await self._exchange(
                    {
                        "grant_type": "refresh_token",
                        "refresh_token": current.refresh_token,
                    }
                )
            except (UpstreamError, httpx.HTTPError) as exc:
                log.warning(
                    "CRM token refresh failed, falling back to client credentials: %s",
                    exc,
                )

        try:
            return await self._exchange(
                {
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                }
            )
        except (UpstreamError, httpx.HTTPError) as exc:
            log.error("CRM token request failed: %s", exc)
            raise TokenUnavailableError(
                f"Unable to obtain CRM token: {exc}",
                upstream_status=getattr(exc, "upstream_status", None),
                body=getattr(exc, "body", None),
            ) from exc

    async def _exchange(self, form: dict[str, str]) -> CachedToken:
        self.exchange_count += 1
        grant = form["grant_type"]
        response = await self._http.post(
            self._token_url,
            data=form,
            headers={"Accept": "application/json", "Cache-Control": "no-store"},
        )
        if not response.is_success:
            raise UpstreamError(
                f"CRM token request ({grant}) failed "
                f"({response.status_code}): {response.text[:200]}",
                upstream_status=response.status_code,
                reason=response.reason_phrase,
                body=response.text,
            )

        payload = _parse_token_payload(response, grant)
        issued_at = self._clock()
        lifetime = max(payload["expires_in"] - self._skew_seconds, 0)
        token = CachedToken(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            expires_at=issued_at + lifetime,
        )
        self._token = token
        log.info(
            "CRM token obtained via %s (%s, valid for %ds)",
            grant, mask_token(token.access_token), lifetime,
        )
        return token


def _parse_token_payload(response: httpx.Response, grant: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise UpstreamError(
            f"CRM token response ({grant}) is not JSON",
            upstream_status=response.status_code,
            body=response.text,
        ) from exc

    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    expires_in = payload.get("expires_in") if isinstance(payload, dict) else None
    if not isinstance(access_token, str) or not access_token:
        raise UpstreamError(
            f"CRM token response ({grant}) has no access_token",
            upstream_status=response.status_code,
            body=payload,
        )
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
        raise UpstreamError(
            f"CRM token response ({grant}) has no numeric expires_in",
            upstream_status=response.status_code,
            body=payload,
        )
    return payload
