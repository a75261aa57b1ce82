"""
Token issuer client for a multi-tenant identity provider.

The application has one vanity domain; each tenant logs in on
``<tenant>-<vanity domain>``. Authorize, login and logout are browser URLs;
token exchange, refresh and revoke are form-encoded POSTs.
"""

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from .errors import IssuerError, NetworkError
from .tokens import TokenRecord, utcnow

logger = logging.getLogger(__name__)

TOKEN_PATH = "/api/v1/oauth2/token"
REVOKE_PATH = "/api/v1/oauth2/revoke"
AUTHORIZE_PATH = "/api/v1/oauth2/authorize"
LOGOUT_PATH = "/api/v1/logout"
APP_LOGIN_PATH = "/login"

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}

# A single DNS label; anything else would escape the URL authority
TENANT_DOMAIN_RE = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?", re.IGNORECASE)


def is_valid_tenant_domain(tenant_domain: Optional[str]) -> bool:
    return bool(tenant_domain) and TENANT_DOMAIN_RE.fullmatch(tenant_domain) is not None


def tenant_host(tenant_domain: str, app_vanity_domain: str) -> str:
    if not is_valid_tenant_domain(tenant_domain):
        raise ValueError(f"Invalid tenant domain: {tenant_domain!r}")
    return f"{tenant_domain}-{app_vanity_domain}"


def build_app_login_url(app_vanity_domain: str, client_id: str) -> str:
    """URL of the application-level login page, where the user picks a tenant."""
    return f"https://{app_vanity_domain}{APP_LOGIN_PATH}?{urlencode({'client_id': client_id})}"


def build_authorize_url(
    app_vanity_domain: str,
    tenant_domain: str,
    client_id: str,
    redirect_uri: str,
    scopes: str,
    code_challenge: str,
    state: str,
    nonce: str,
    login_hint: Optional[str] = None,
) -> str:
    """
    Build the tenant-scoped authorization URL.

    Args:
        app_vanity_domain: The application's vanity domain
        tenant_domain: Tenant whose login page is requested
        client_id: Your application's client ID
        redirect_uri: The registered redirect URI
        scopes: Space-separated OAuth scopes
        code_challenge: PKCE code challenge
        state: Random state for CSRF protection
        nonce: Random value the id_token must echo back
        login_hint: Optional user or tenant hint

    Returns:
        Complete authorization URL
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scopes,
        "state": state,
        "nonce": nonce,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if login_hint:
        params["login_hint"] = login_hint
    host = tenant_host(tenant_domain, app_vanity_domain)
    return f"https://{host}{AUTHORIZE_PATH}?{urlencode(params)}"


def build_logout_url(
    app_vanity_domain: str,
    tenant_domain: str,
    client_id: str,
    redirect_uri: str,
) -> str:
    """Tenant logout page; clears the provider's session cookies, then redirects."""
    params = {"client_id": client_id, "redirect_url": redirect_uri}
    host = tenant_host(tenant_domain, app_vanity_domain)
    return f"https://{host}{LOGOUT_PATH}?{urlencode(params)}"


class TokenIssuerClient:
    """
    Async client for the token and revoke endpoints.

    Args:
        redirect_uri: Redirect URI used when the code was requested
        timeout: Seconds per request
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        clock: Returns the current UTC time; used to stamp token expiration
    """

    def __init__(
        self,
        redirect_uri: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.transport = transport
        self.clock = clock

    async def _post(self, url: str, data: Dict[str, str], action: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, data=data, headers=FORM_HEADERS)
        except httpx.RequestError as e:
            raise NetworkError(f"{action} failed: {e.__class__.__name__}") from e

        if not response.is_success:
            raise self._issuer_error(response, action)
        return response

    @staticmethod
    def _issuer_error(response: httpx.Response, action: str) -> IssuerError:
        error_data: Dict[str, Any] = {}
        if response.text:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                error_data = body
        return IssuerError(
            f"{action} failed: {response.status_code} - "
            f"{error_data.get('error_description', response.reason_phrase)}",
            status_code=response.status_code,
            error=error_data.get("error"),
            error_description=error_data.get("error_description"),
        )

    def _token_record(
        self,
        response: httpx.Response,
        action: str,
        previous_refresh_token: Optional[str] = None,
    ) -> TokenRecord:
        try:
            payload = response.json()
        except ValueError:
            raise IssuerError(f"{action} failed: response is not JSON", status_code=response.status_code)
        if not isinstance(payload, dict):
            raise IssuerError(f"{action} failed: unexpected response body", status_code=response.status_code)
        return TokenRecord.from_response(payload, self.clock(), previous_refresh_token)

    async def exchange_code(
        self,
        domain: str,
        code: str,
        client_id: str,
        code_verifier: str,
    ) -> TokenRecord:
        """
        Exchange an authorization code for tokens.

        Raises:
            NetworkError: If the issuer could not be reached
            IssuerError: If the issuer rejected the code or answered badly
        """
        data = {
            "grant_type": "authorization_code",
            "client_id": client_id,
            "redirect_uri": self.redirect_uri,
            "code": code,
            "code_verifier": code_verifier,
        }
        logger.debug("Exchanging authorization code at %s", domain)
        response = await self._post(f"https://{domain}{TOKEN_PATH}", data, "Token exchange")
        return self._token_record(response, "Token exchange")

    async def refresh(self, domain: str, client_id: str, refresh_token: str) -> TokenRecord:
        """
        Get a new access token with a refresh token.

        The old refresh token is kept if the response does not rotate it.
        """
        data = {
            "grant_type": "refresh_token",
            "client_id": client_id,
            "refresh_token": refresh_token,
        }
        logger.debug("Refreshing access token at %s", domain)
        response = await self._post(f"https://{domain}{TOKEN_PATH}", data, "Token refresh")
        return self._token_record(response, "Token refresh", previous_refresh_token=refresh_token)

    async def revoke(self, domain: str, client_id: str, refresh_token: str) -> None:
        data = {
            "client_id": client_id,
            "token": refresh_token,
            "token_type_hint": "refresh_token",
        }
        logger.debug("Revoking refresh token at %s", domain)
        await self._post(f"https://{domain}{REVOKE_PATH}", data, "Token revoke")
