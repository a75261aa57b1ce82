"""Tests for the token issuer client and URL builders, using httpx.MockTransport."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import START, FakeClock, query_params
from tenant_oauth.errors import IssuerError, NetworkError
from tenant_oauth.issuer import (
    TokenIssuerClient,
    build_app_login_url,
    build_authorize_url,
    build_logout_url,
    is_valid_tenant_domain,
)

DOMAIN = "invotastic.example.com"
TOKEN_BODY = {"access_token": "tok1", "refresh_token": "ref1", "expires_in": 3600, "token_type": "Bearer"}


class Recorder:
    """MockTransport handler that records requests and replies with a canned response."""

    def __init__(self, status_code=200, json_body=None, text=None, exc=None):
        self.status_code = status_code
        self.json_body = json_body
        self.text = text
        self.exc = exc
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc("connection refused", request=request)
        if self.json_body is not None:
            return httpx.Response(self.status_code, json=self.json_body)
        return httpx.Response(self.status_code, text=self.text or "")

    def form(self, index=0):
        body = self.requests[index].content.decode()
        return {name: values[0] for name, values in parse_qs(body).items()}


def make_client(recorder):
    return TokenIssuerClient(
        redirect_uri="mobiledemoapp://callback",
        transport=httpx.MockTransport(recorder),
        clock=FakeClock(),
    )


class TestExchangeCode:
    async def test_posts_pkce_form(self):
        recorder = Recorder(json_body=TOKEN_BODY)

        record = await make_client(recorder).exchange_code(DOMAIN, "abc123", "client-123", "verifier-xyz")

        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"https://{DOMAIN}/api/v1/oauth2/token"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert recorder.form() == {
            "grant_type": "authorization_code",
            "client_id": "client-123",
            "redirect_uri": "mobiledemoapp://callback",
            "code": "abc123",
            "code_verifier": "verifier-xyz",
        }
        assert record.access_token == "tok1"
        assert record.token_expiration == START + timedelta(seconds=3600)

    async def test_provider_error_body_is_kept(self):
        recorder = Recorder(
            status_code=400,
            json_body={"error": "invalid_grant", "error_description": "Code expired"},
        )

        with pytest.raises(IssuerError) as excinfo:
            await make_client(recorder).exchange_code(DOMAIN, "abc123", "client-123", "v")

        assert excinfo.value.status_code == 400
        assert excinfo.value.error == "invalid_grant"
        assert excinfo.value.error_description == "Code expired"

    async def test_non_json_error_body(self):
        recorder = Recorder(status_code=502, text="<html>Bad Gateway</html>")

        with pytest.raises(IssuerError) as excinfo:
            await make_client(recorder).exchange_code(DOMAIN, "abc123", "client-123", "v")

        assert excinfo.value.status_code == 502
        assert excinfo.value.error is None

    async def test_incomplete_success_body(self):
        recorder = Recorder(json_body={"access_token": "tok1"})

        with pytest.raises(IssuerError):
            await make_client(recorder).exchange_code(DOMAIN, "abc123", "client-123", "v")

    async def test_connection_failure_is_network_error(self):
        recorder = Recorder(exc=httpx.ConnectError)

        with pytest.raises(NetworkError):
            await make_client(recorder).exchange_code(DOMAIN, "abc123", "client-123", "v")


class TestRefresh:
    async def test_posts_refresh_grant(self):
        recorder = Recorder(json_body=dict(TOKEN_BODY, access_token="tok2", refresh_token="ref2"))

        record = await make_client(recorder).refresh(DOMAIN, "client-123", "ref1")

        assert recorder.form() == {
            "grant_type": "refresh_token",
            "client_id": "client-123",
            "refresh_token": "ref1",
        }
        assert record.access_token == "tok2"
        assert record.refresh_token == "ref2"

    async def test_unrotated_refresh_token_carried_over(self):
        recorder = Recorder(json_body={"access_token": "tok2", "expires_in": 60})

        record = await make_client(recorder).refresh(DOMAIN, "client-123", "ref1")

        assert record.refresh_token == "ref1"

    async def test_rejected_refresh(self):
        recorder = Recorder(status_code=401, json_body={"error": "invalid_token"})

        with pytest.raises(IssuerError):
            await make_client(recorder).refresh(DOMAIN, "client-123", "ref1")

    async def test_timeout_is_network_error(self):
        recorder = Recorder(exc=httpx.ReadTimeout)

        with pytest.raises(NetworkError):
            await make_client(recorder).refresh(DOMAIN, "client-123", "ref1")


class TestRevoke:
    async def test_empty_success_body(self):
        recorder = Recorder(status_code=200)

        await make_client(recorder).revoke(DOMAIN, "client-123", "ref1")

        assert str(recorder.requests[0].url) == f"https://{DOMAIN}/api/v1/oauth2/revoke"
        assert recorder.form() == {
            "client_id": "client-123",
            "token": "ref1",
            "token_type_hint": "refresh_token",
        }

    async def test_failure_raises(self):
        recorder = Recorder(status_code=500)

        with pytest.raises(IssuerError):
            await make_client(recorder).revoke(DOMAIN, "client-123", "ref1")


class TestUrls:
    def test_authorize_url(self):
        url = build_authorize_url(
            app_vanity_domain=DOMAIN,
            tenant_domain="acme",
            client_id="client-123",
            redirect_uri="mobiledemoapp://callback",
            scopes="openid offline_access",
            code_challenge="challenge",
            state="state-1",
            nonce="nonce-1",
            login_hint="jane@acme.com",
        )

        parsed = urlparse(url)
        assert parsed.netloc == f"acme-{DOMAIN}"
        assert parsed.path == "/api/v1/oauth2/authorize"
        assert query_params(url) == {
            "client_id": "client-123",
            "redirect_uri": "mobiledemoapp://callback",
            "response_type": "code",
            "scope": "openid offline_access",
            "state": "state-1",
            "nonce": "nonce-1",
            "code_challenge": "challenge",
            "code_challenge_method": "S256",
            "login_hint": "jane@acme.com",
        }

    def test_authorize_url_without_login_hint(self):
        url = build_authorize_url(DOMAIN, "acme", "client-123", "app://callback", "openid", "c", "s", "n")

        assert "login_hint" not in query_params(url)

    def test_logout_url(self):
        url = build_logout_url(DOMAIN, "acme", "client-123", "mobiledemoapp://logout")

        assert url.startswith(f"https://acme-{DOMAIN}/api/v1/logout?")
        assert query_params(url) == {"client_id": "client-123", "redirect_url": "mobiledemoapp://logout"}

    def test_app_login_url(self):
        assert build_app_login_url(DOMAIN, "client-123") == f"https://{DOMAIN}/login?client_id=client-123"

    @pytest.mark.parametrize("tenant_domain", ["acme", "Acme-2", "a", "a" * 63])
    def test_tenant_domain_accepts_dns_labels(self, tenant_domain):
        assert is_valid_tenant_domain(tenant_domain)

    @pytest.mark.parametrize(
        "tenant_domain",
        [None, "", "evil.example#", "evil/x", "user@evil", "acme?", "-acme", "acme-", "acme\n", "a" * 64],
    )
    def test_tenant_domain_rejects_anything_else(self, tenant_domain):
        assert not is_valid_tenant_domain(tenant_domain)

    def test_unsafe_tenant_domain_never_reaches_the_host(self):
        with pytest.raises(ValueError):
            build_authorize_url(DOMAIN, "evil.example#", "client-123", "app://callback", "openid", "c", "s", "n")
        with pytest.raises(ValueError):
            build_logout_url(DOMAIN, "evil.example#", "client-123", "app://logout")
