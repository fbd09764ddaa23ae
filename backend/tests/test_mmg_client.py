"""MMG gateway client tests"""
import time
import pytest
from urllib.parse import parse_qs, urlparse

import httpx

from app.services.mmg_client import MMGAuthError, MMGClient, MMGLookupError


def _form(request: httpx.Request):
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


@pytest.mark.critical
class TestSessionToken:
    @pytest.mark.asyncio
    async def test_login_posts_password_grant(self, mmg_client, fake_gateway):
        token = await mmg_client.get_session_token()

        assert token == "session-token-1"
        login = fake_gateway.requests[0]
        assert login.method == "POST"
        assert str(login.url) == "https://mmg.test/merchant/oauth/token"
        assert _form(login) == {
            "grant_type": "password",
            "api_key": "test-api-key",
            "username": "merchant-user",
            "password": "merchant-pass",
        }

    @pytest.mark.asyncio
    async def test_token_is_cached(self, mmg_client, fake_gateway):
        first = await mmg_client.get_session_token()
        second = await mmg_client.get_session_token()

        assert first == second
        assert fake_gateway.login_calls == 1

    @pytest.mark.asyncio
    async def test_expiry_keeps_safety_margin(self, mmg_client, fake_gateway, mmg_settings):
        fake_gateway.expires_in = 100
        before = time.monotonic()
        await mmg_client.get_session_token()

        cached = mmg_client._tokens[mmg_client.credentials.identity]
        assert before + 70 <= cached.expires_at <= time.monotonic() + 70

    @pytest.mark.asyncio
    async def test_token_within_margin_is_refreshed(self, mmg_client, fake_gateway):
        # A 30s lifetime is entirely eaten by the safety margin
        fake_gateway.expires_in = 30
        await mmg_client.get_session_token()
        refreshed = await mmg_client.get_session_token()

        assert refreshed == "session-token-2"
        assert fake_gateway.login_calls == 2

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, mmg_client, fake_gateway):
        fake_gateway.login_status = 401
        with pytest.raises(MMGAuthError):
            await mmg_client.get_session_token()

    @pytest.mark.asyncio
    async def test_missing_credentials(self, monkeypatch, mmg_client, mmg_settings, fake_gateway):
        monkeypatch.setattr(mmg_settings, "MMG_PASSWORD", "")
        with pytest.raises(MMGAuthError, match="MMG_PASSWORD"):
            await mmg_client.get_session_token()
        assert fake_gateway.login_calls == 0

    @pytest.mark.asyncio
    async def test_missing_access_token(self, mmg_settings):
        client = MMGClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"expires_in": 60})))
        with pytest.raises(MMGAuthError, match="access_token"):
            await client.get_session_token()

    @pytest.mark.asyncio
    async def test_timeout(self, mmg_settings):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        client = MMGClient(transport=httpx.MockTransport(handler))
        with pytest.raises(MMGAuthError, match="timed out"):
            await client.get_session_token()


@pytest.mark.critical
class TestLookup:
    @pytest.mark.asyncio
    async def test_successful_lookup(self, mmg_client, fake_gateway):
        fake_gateway.add_transaction("MMG-100", amount="5000.00")

        result = await mmg_client.lookup_transaction("MMG-100")

        assert result.transaction_id == "MMG-100"
        assert result.amount == "5000.00"
        assert result.transaction_reference == "REF-MMG-100"
        assert result.raw["transactionStatus"] == "Successful"

    @pytest.mark.asyncio
    async def test_lookup_headers(self, mmg_client, fake_gateway):
        fake_gateway.add_transaction("MMG-100")
        await mmg_client.lookup_transaction("MMG-100")
        await mmg_client.lookup_transaction("MMG-100")

        lookups = [r for r in fake_gateway.requests if "/transactions/" in r.url.path]
        assert len(lookups) == 2
        headers = lookups[0].headers
        assert headers["Authorization"] == "Bearer session-token-1"
        assert headers["X-MMG-Merchant-MID"] == "7000001"
        assert headers["X-MMG-Merchant-Key"] == "test-merchant-key"
        assert headers["X-MMG-Merchant-Secret"] == "test-secret"
        assert headers["X-API-Key"] == "test-api-key"
        # Fresh correlation id per call
        assert lookups[0].headers["X-Correlation-ID"] != lookups[1].headers["X-Correlation-ID"]
        assert fake_gateway.login_calls == 1

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, mmg_client, fake_gateway):
        with pytest.raises(MMGLookupError, match="404"):
            await mmg_client.lookup_transaction("MMG-missing")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["Pending", "Failed", ""])
    async def test_not_successful_status(self, mmg_client, fake_gateway, status):
        fake_gateway.add_transaction("MMG-100", status=status)
        with pytest.raises(MMGLookupError):
            await mmg_client.lookup_transaction("MMG-100")

    @pytest.mark.asyncio
    async def test_status_match_is_case_insensitive(self, mmg_client, fake_gateway):
        fake_gateway.add_transaction("MMG-100", status="SUCCESSFUL")
        result = await mmg_client.lookup_transaction("MMG-100")
        assert result.is_successful

    @pytest.mark.asyncio
    async def test_unauthorized_lookup_clears_cached_token(self, mmg_settings):
        calls = {"login": 0}

        def handler(request):
            if request.url.path.endswith("/oauth/token"):
                calls["login"] += 1
                return httpx.Response(200, json={"access_token": f"t{calls['login']}", "expires_in": 3600})
            return httpx.Response(401, text="token revoked")

        client = MMGClient(transport=httpx.MockTransport(handler))
        with pytest.raises(MMGLookupError):
            await client.lookup_transaction("MMG-100")
        with pytest.raises(MMGLookupError):
            await client.lookup_transaction("MMG-100")

        assert calls["login"] == 2

    @pytest.mark.asyncio
    async def test_non_json_body(self, mmg_settings):
        def handler(request):
            if request.url.path.endswith("/oauth/token"):
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            return httpx.Response(200, text="<html>maintenance</html>")

        client = MMGClient(transport=httpx.MockTransport(handler))
        with pytest.raises(MMGLookupError, match="non-JSON"):
            await client.lookup_transaction("MMG-100")

    @pytest.mark.asyncio
    async def test_auth_failure_surfaces_as_gateway_error(self, mmg_client, fake_gateway):
        fake_gateway.login_status = 500
        with pytest.raises(MMGAuthError):
            await mmg_client.lookup_transaction("MMG-100")


@pytest.mark.high
def test_checkout_url(mmg_client):
    url = mmg_client.build_checkout_url("abc-_123")
    parsed = urlparse(url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://checkout.mmg.test/mmg-pg/web/payments"
    assert parse_qs(parsed.query) == {
        "token": ["abc-_123"],
        "merchantId": ["7000001"],
        "X-Client-ID": ["test-client-id"],
    }
