"""Tests for the CRM OAuth token cache."""

import asyncio

import httpx
import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from intake.crm.token_cache import TokenCache, mask_token
from intake.errors import TokenUnavailableError


# ── Issue and reuse ────────────────────────────────────────────────


class TestGetToken:
    async def test_first_call_uses_client_credentials(self, token_cache, fake_crm):
        token = await token_cache.get_token()
        assert token == "tok-1"
        form = fake_crm.token_forms[0]
        assert form["grant_type"] == "client_credentials"
        assert form["client_id"] == "client-id"
        assert form["client_secret"] == "client-secret"

    async def test_valid_token_is_reused(self, token_cache):
        await token_cache.get_token()
        await token_cache.get_token()
        assert token_cache.exchange_count == 1

    async def test_skew_shortens_lifetime(self, token_cache, clock):
        await token_cache.get_token()
        assert token_cache.cached_token.expires_at == clock.now + 3600 - 60

    async def test_expired_token_uses_refresh_grant(self, token_cache, fake_crm, clock):
        await token_cache.get_token()
        clock.advance(3600)
        token = await token_cache.get_token()
        assert token == "tok-2"
        assert fake_crm.token_forms[1] == {
            "grant_type": "refresh_token",
            "refresh_token": "ref-1",
        }

    async def test_renewed_token_expires_later(self, token_cache, clock):
        await token_cache.get_token()
        first = token_cache.cached_token.expires_at
        clock.advance(3600)
        await token_cache.get_token()
        assert token_cache.cached_token.expires_at > first

    async def test_token_valid_just_before_expiry(self, token_cache, clock):
        await token_cache.get_token()
        clock.advance(3600 - 60 - 1)
        await token_cache.get_token()
        assert token_cache.exchange_count == 1

    async def test_short_lifetime_not_negative(self, token_cache, fake_crm, clock):
        fake_crm.token_lifetime = 30
        await token_cache.get_token()
        assert token_cache.cached_token.expires_at == clock.now

    async def test_concurrent_callers_share_one_exchange(self, token_cache):
        tokens = await asyncio.gather(*(token_cache.get_token() for _ in range(10)))
        assert set(tokens) == {"tok-1"}
        assert token_cache.exchange_count == 1

    async def test_concurrent_callers_after_expiry(self, token_cache, clock):
        await token_cache.get_token()
        clock.advance(4000)
        tokens = await asyncio.gather(*(token_cache.get_token() for _ in range(5)))
        assert set(tokens) == {"tok-2"}
        assert token_cache.exchange_count == 2


# ── Failure paths ──────────────────────────────────────────────────


class TestRefreshFallback:
    async def test_refresh_failure_falls_back_to_client_credentials(
        self, token_cache, fake_crm, clock
    ):
        await token_cache.get_token()
        clock.advance(4000)
        fake_crm.token_replies.append((400, {"error": "invalid_grant"}))
        token = await token_cache.get_token()
        assert token == "tok-3"
        grants = [f["grant_type"] for f in fake_crm.token_forms]
        assert grants == ["client_credentials", "refresh_token", "client_credentials"]

    async def test_both_grants_fail(self, token_cache, fake_crm, clock):
        await token_cache.get_token()
        clock.advance(4000)
        fake_crm.token_replies += [(400, {"error": "invalid_grant"}),
                                   (401, {"error": "invalid_client"})]
        with pytest.raises(TokenUnavailableError) as exc_info:
            await token_cache.get_token()
        assert exc_info.value.upstream_status == 401

    async def test_initial_issue_failure(self, token_cache, fake_crm):
        fake_crm.token_replies.append((500, "boom"))
        with pytest.raises(TokenUnavailableError):
            await token_cache.get_token()
        assert token_cache.cached_token is None

    async def test_missing_access_token_rejected(self, token_cache, fake_crm):
        fake_crm.token_replies.append((200, {"expires_in": 3600}))
        with pytest.raises(TokenUnavailableError):
            await token_cache.get_token()

    async def test_non_numeric_expires_in_rejected(self, token_cache, fake_crm):
        fake_crm.token_replies.append((200, {"access_token": "abc", "expires_in": "soon"}))
        with pytest.raises(TokenUnavailableError):
            await token_cache.get_token()

    async def test_transport_error_becomes_token_unavailable(self, clock):
        def broken(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(broken))
        cache = TokenCache("https://crm.test/token", "id", "secret", http, clock=clock)
        with pytest.raises(TokenUnavailableError):
            await cache.get_token()


# ── Forced refresh and views ───────────────────────────────────────


class TestRefreshAndView:
    async def test_refresh_forces_exchange(self, token_cache, fake_crm):
        await token_cache.get_token()
        token = await token_cache.refresh()
        assert token.access_token == "tok-2"
        assert token_cache.exchange_count == 2
        assert fake_crm.token_forms[-1]["grant_type"] == "refresh_token"

    async def test_refresh_if_expired_reuses_valid_token(self, token_cache):
        await token_cache.get_token()
        token = await token_cache.refresh(only_if_expired=True)
        assert token.access_token == "tok-1"
        assert token_cache.exchange_count == 1

    async def test_view_masks_token(self, token_cache, fake_crm):
        fake_crm.token_replies.append(
            (200, {"access_token": "abcdefghijklmnop", "expires_in": 3600})
        )
        await token_cache.get_token()
        view = token_cache.view()
        assert view.access_token_preview == "abcdefgh****"
        assert "ijklmnop" not in view.access_token_preview

    def test_view_empty_cache(self, token_cache):
        assert token_cache.view() is None


class TestMaskToken:
    def test_long_token(self):
        assert mask_token("0123456789") == "01234567****"

    def test_short_token(self):
        assert mask_token("abcdef") == "ab****"

    def test_empty(self):
        assert mask_token("") == ""
