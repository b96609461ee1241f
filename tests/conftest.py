"""Shared fakes: a scripted CRM behind httpx.MockTransport and a settable clock."""

import json
import os
import sys
from typing import Any, Callable, Union
from urllib.parse import parse_qsl

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest

from intake.crm.client import CRMClient
from intake.crm.token_cache import TokenCache

TOKEN_URL = "https://crm.test/oauth/access_token"
API_BASE = "https://crm.test/v1"

Reply = Union[tuple, Callable[[httpx.Request], httpx.Response]]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _build(reply: Reply, request: httpx.Request) -> httpx.Response:
    if callable(reply):
        return reply(request)
    status, body = reply
    if body is None:
        return httpx.Response(status)
    if isinstance(body, (bytes, str)):
        return httpx.Response(status, content=body)
    return httpx.Response(status, json=body)


def _bare(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


class FakeCRM:
    """Routes token and REST calls to scripted replies.

    Replies for a route are consumed in order; the last one repeats.  Token
    requests answer ``tok-N`` / ``ref-N`` unless replies are queued.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_forms: list[dict[str, str]] = []
        self.token_replies: list[Reply] = []
        self.routes: dict[tuple[str, str], list[Reply]] = {}
        self.token_lifetime = 3600

    def on(self, method: str, url: str, *replies: Reply) -> None:
        if not url.startswith("http"):
            url = f"{API_BASE}/{url}"
        self.routes[(method, url)] = list(replies)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = _bare(request)
        if url == TOKEN_URL:
            self.token_forms.append(dict(parse_qsl(request.content.decode())))
            if self.token_replies:
                return _build(self.token_replies.pop(0), request)
            n = len(self.token_forms)
            return httpx.Response(200, json={
                "access_token": f"tok-{n}",
                "refresh_token": f"ref-{n}",
                "expires_in": self.token_lifetime,
            })

        replies = self.routes.get((request.method, url))
        if not replies:
            return httpx.Response(404, json={"error": f"no route for {request.method} {url}"})
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        return _build(reply, request)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        url = f"{API_BASE}/{path}"
        return [
            r for r in self.requests
            if r.method == method and _bare(r) == url
        ]

    @staticmethod
    def body(request: httpx.Request) -> Any:
        return json.loads(request.content)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_crm():
    return FakeCRM()


@pytest.fixture
def http_client(fake_crm):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_crm.handler))


@pytest.fixture
def token_cache(http_client, clock):
    return TokenCache(TOKEN_URL, "client-id", "client-secret", http_client, clock=clock)


@pytest.fixture
def crm_client(token_cache, http_client):
    return CRMClient(API_BASE, token_cache, http_client)


def booking_body(**overrides: Any) -> dict[str, Any]:
    body = {
        "source": "ev-charger-estimator",
        "customer": {
            "firstName": "Ada",
            "lastName": "Lovelace",
            "email": "ada@example.com",
            "phone": "704-555-0100",
            "addressLine1": "12 Analytical Way",
            "city": "Charlotte",
            "state": "NC",
            "postalCode": "28202",
        },
        "service": {
            "type": "ev-charger-install",
            "notes": "Garage install, 40A circuit",
            "estimatedPrice": 1450,
            "options": {"chargerModel": "Level 2"},
        },
        "schedule": {
            "start": "2025-03-10T14:00:00Z",
            "end": "2025-03-10T16:00:00Z",
        },
    }
    body.update(overrides)
    return body
