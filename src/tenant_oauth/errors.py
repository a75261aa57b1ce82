"""
Error taxonomy for the token lifecycle.

Issuer client calls raise; the session controller catches those and reports
them through its outcome objects, so callers only see these classes when they
talk to the issuer client or the configuration loader directly.
"""

from typing import Optional


class OAuthSessionError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(OAuthSessionError):
    """Required configuration is missing or invalid."""


class IssuerClientError(OAuthSessionError):
    """A call to the token issuer did not produce a usable response."""


class NetworkError(IssuerClientError):
    """The issuer could not be reached (DNS, TLS, timeout, connection reset)."""


class IssuerError(IssuerClientError):
    """
    The issuer answered, but with an error.

    Covers non-2xx statuses and 2xx bodies that are not a complete token
    response.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.error_description = error_description


class MalformedCallback(OAuthSessionError):
    """A redirect URL could not be parsed."""


class StateMismatch(OAuthSessionError):
    """The callback's state does not match the one sent with the login."""


class NonceMismatch(StateMismatch):
    """The id_token nonce does not match the one sent with the login."""


class ExchangeFailure(OAuthSessionError):
    """The authorization code could not be exchanged for tokens."""


class RefreshFailure(OAuthSessionError):
    """The refresh token could not be exchanged for a new access token."""


class RevokeFailure(OAuthSessionError):
    """The refresh token could not be revoked. Logout continues regardless."""
