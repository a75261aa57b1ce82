"""
Redirect router: turns custom-scheme redirect URLs into session transitions.

Recognised URLs::

    <scheme>://login?tenant_domain=<d>&login_hint=<h>
    <scheme>://callback?code=<c>&state=<s>
    <scheme>://logout
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from .errors import MalformedCallback
from .issuer import is_valid_tenant_domain
from .session import CallbackOutcome, LoginOutcome, SessionController

logger = logging.getLogger(__name__)


class RedirectKind(str, Enum):
    LOGIN = "login"
    CALLBACK = "callback"
    LOGOUT = "logout"
    UNRECOGNIZED = "unrecognized"
    IGNORED = "ignored"


@dataclass(frozen=True)
class RedirectOutcome:
    """
    What the router did with a redirect, and what the UI should do next.

    ``login`` is None for a login redirect without a usable tenant domain.
    """

    kind: RedirectKind
    login: Optional[LoginOutcome] = None
    callback: Optional[CallbackOutcome] = None
    reset_navigation: bool = False
    close_logout_browser: bool = False


def parse_redirect(url: str) -> Tuple[str, str, Dict[str, str]]:
    """
    Split a redirect URL into scheme, host and query parameters.

    Only the first value of a repeated parameter is kept.

    Raises:
        MalformedCallback: If the URL cannot be parsed
    """
    try:
        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        host = parsed.hostname or ""
    except (TypeError, ValueError, AttributeError) as e:
        raise MalformedCallback(f"Unparseable redirect URL: {e}") from e
    if not parsed.scheme:
        raise MalformedCallback("Redirect URL has no scheme")
    return parsed.scheme.lower(), host.lower(), {name: values[0] for name, values in params.items()}


class RedirectRouter:
    def __init__(self, controller: SessionController, scheme: Optional[str] = None):
        self.controller = controller
        self.scheme = (scheme or controller.config.redirect_scheme).lower()

    async def route(self, url: str) -> RedirectOutcome:
        try:
            scheme, host, params = parse_redirect(url)
        except MalformedCallback as e:
            logger.warning("Ignoring redirect: %s", e)
            return RedirectOutcome(RedirectKind.IGNORED)

        if scheme != self.scheme:
            logger.debug("Ignoring redirect with foreign scheme %r", scheme)
            return RedirectOutcome(RedirectKind.IGNORED)

        if host == "login":
            tenant_domain = params.get("tenant_domain")
            if not tenant_domain:
                logger.warning("Login redirect without tenant_domain; nothing to do")
                return RedirectOutcome(RedirectKind.LOGIN)
            if not is_valid_tenant_domain(tenant_domain):
                logger.warning("Login redirect with invalid tenant_domain %r; nothing to do", tenant_domain)
                return RedirectOutcome(RedirectKind.LOGIN)
            login = self.controller.begin_tenant_login(tenant_domain, params.get("login_hint") or None)
            return RedirectOutcome(RedirectKind.LOGIN, login=login)

        if host == "callback":
            if "error" in params:
                logger.warning(
                    "Identity provider returned %s: %s",
                    params["error"],
                    params.get("error_description", "no description"),
                )
            callback = await self.controller.handle_auth_callback(params.get("code"), params.get("state"))
            return RedirectOutcome(RedirectKind.CALLBACK, callback=callback, reset_navigation=True)

        if host == "logout":
            self.controller.finish_logout()
            return RedirectOutcome(RedirectKind.LOGOUT, reset_navigation=True, close_logout_browser=True)

        logger.info("Unrecognized redirect host %r", host)
        return RedirectOutcome(RedirectKind.UNRECOGNIZED)
