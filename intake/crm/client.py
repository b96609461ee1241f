"""Authenticated HTTP wrapper for the field-service CRM REST API."""

from __future__ import annotations

import json as jsonlib
import logging
from typing import Any, Mapping, Optional

import httpx

from intake.crm.token_cache import TokenCache
from intake.errors import UpstreamError

log = logging.getLogger("intake.crm.client")

QueryValue = Optional[str | int | float | bool]


class CRMClient:
    """Every call carries a fresh bearer token and bypasses any caching.

    Non-2xx answers raise :class:`UpstreamError` with the status, reason and
    a body excerpt.  Writes are never retried; reads may opt in with
    ``retries`` (5xx and transport errors only).
    """

    def __init__(
        self,
        base_url: str,
        token_cache: TokenCache,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._tokens = token_cache
        self._http = http_client

    @property
    def token_cache(self) -> TokenCache:
        return self._tokens

    def build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def request(
        self,
        path: str,
        method: str = "GET",
        *,
        query: Optional[Mapping[str, QueryValue]] = None,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        retries: int = 0,
    ) -> Any:
        """Perform one CRM call and return its parsed body.

        Returns decoded JSON when the response declares it, the raw text
        otherwise, and None for 204 / empty bodies.
        """
        url = self.build_url(path)
        params = _clean_query(query)
        attempts = 1 + max(retries, 0)

        attempt = 0
        while True:
            attempt += 1
            send_headers = {
                "Accept": "application/json",
                "Cache-Control": "no-store",
                **(headers or {}),
                "Authorization": f"Bearer {await self._tokens.get_token()}",
            }
            content = None
            if json is not None:
                content = jsonlib.dumps(json)
                send_headers.setdefault("Content-Type", "application/json")

            try:
                response = await self._http.request(
                    method,
                    url,
                    params=params,
                    content=content,
                    headers=send_headers,
                )
            except httpx.TransportError as exc:
                if attempt < attempts:
                    log.warning("CRM %s %s transport error (attempt %d): %s",
                                method, path, attempt, exc)
                    continue
                raise UpstreamError(
                    f"CRM API unreachable ({method} {path}): {exc}"
                ) from exc

            if response.is_success:
                return _parse_success(response)

            error = _upstream_error(response)
            if response.status_code >= 500 and attempt < attempts:
                log.warning("CRM %s %s returned %d (attempt %d), retrying",
                            method, path, response.status_code, attempt)
                continue
            log.error("CRM %s %s failed: %s", method, path, error)
            raise error

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request(path, "GET", **kwargs)

    async def post(self, path: str, json: Any, **kwargs: Any) -> Any:
        return await self.request(path, "POST", json=json, **kwargs)


def _clean_query(query: Optional[Mapping[str, QueryValue]]) -> dict[str, str]:
    params: dict[str, str] = {}
    for key, value in (query or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            params[key] = "true" if value else "false"
        else:
            params[key] = str(value)
    return params


def _is_json(response: httpx.Response) -> bool:
    return "application/json" in response.headers.get("content-type", "")


def _parse_success(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    if _is_json(response):
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                f"CRM API returned malformed JSON ({response.status_code}): "
                f"{response.text[:200]}",
                upstream_status=response.status_code,
                reason=response.reason_phrase,
                body=response.text,
            ) from exc
    return response.text or None


def _upstream_error(response: httpx.Response) -> UpstreamError:
    body: Any = response.text
    if _is_json(response):
        try:
            body = response.json()
        except ValueError:
            pass  # keep the raw text
    excerpt = body if isinstance(body, str) else jsonlib.dumps(body)
    return UpstreamError(
        f"CRM API error ({response.status_code} {response.reason_phrase}): "
        f"{excerpt[:500]}",
        upstream_status=response.status_code,
        reason=response.reason_phrase,
        body=body,
    )
