"""Lead partner OAuth: authorization-code exchange for the install callback."""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx

from intake.errors import UpstreamError

log = logging.getLogger("intake.webhooks.oauth")

OAuthEnvironment = Literal["production", "staging"]

DEFAULT_REDIRECTS: dict[str, str] = {
    "production": "https://tentmakers-electric.vercel.app/api/thumbtack/oauth/callback",
    "staging": "https://tentmakers-electric.vercel.app/api/thumbtack/oauth/callback-staging",
}


class PartnerOAuth:
    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
        redirect_uri: str = "",
        redirect_uri_staging: str = "",
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._http = http_client
        self._redirect_uri = redirect_uri
        self._redirect_uri_staging = redirect_uri_staging

    def redirect_uri(self, environment: OAuthEnvironment) -> str:
        if environment == "production":
            return self._redirect_uri or DEFAULT_REDIRECTS["production"]
        return (
            self._redirect_uri_staging
            or self._redirect_uri
            or DEFAULT_REDIRECTS["staging"]
        )

    async def exchange_code(self, code: str, environment: OAuthEnvironment) -> dict[str, Any]:
        redirect_uri = self.redirect_uri(environment)
        log.info("Exchanging partner authorization code (%s, redirect=%s)",
                 environment, redirect_uri)
        response = await self._http.post(
            self._token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
            headers={"Accept": "application/json"},
        )
        if not response.is_success:
            raise UpstreamError(
                f"Partner token exchange failed ({response.status_code} "
                f"{response.reason_phrase}): {response.text[:200]}",
                upstream_status=response.status_code,
                reason=response.reason_phrase,
                body=response.text,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError("Partner token response is not JSON") from exc
