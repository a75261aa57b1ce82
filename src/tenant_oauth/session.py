"""
Session controller: the single owner of the login/refresh/logout state machine.

States::

    UNAUTHENTICATED --login redirect--> PENDING_ISSUER_LOGIN
    PENDING_ISSUER_LOGIN --callback, state ok, exchange ok--> AUTHENTICATED
    PENDING_ISSUER_LOGIN --exchange failed / nonce mismatch--> UNAUTHENTICATED
    AUTHENTICATED --token expired--> REFRESH_IN_FLIGHT --> AUTHENTICATED | UNAUTHENTICATED
    any --logout()--> LOGGING_OUT --logout redirect--> UNAUTHENTICATED

All mutation happens on one asyncio event loop. The only concurrent entry
point is ``get_valid_access_token``, whose refreshes are coalesced into one
shared task.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from .browser import BrowserLauncher, BrowserSurface
from .config import AuthConfig
from .errors import (
    ExchangeFailure,
    IssuerClientError,
    MalformedCallback,
    NonceMismatch,
    OAuthSessionError,
    RefreshFailure,
    RevokeFailure,
    StateMismatch,
)
from .issuer import (
    TokenIssuerClient,
    build_app_login_url,
    build_authorize_url,
    build_logout_url,
    is_valid_tenant_domain,
)
from .pkce import PKCEMaterial, generate_pkce_material
from .store import SecureStore, store_from_config
from .tokens import TokenRecord, utcnow

logger = logging.getLogger(__name__)

LOGIN_ERROR_MESSAGE = "Unable to login, please reach out for support"
SESSION_EXPIRED_MESSAGE = "Your session has expired, please log in again"

DEFAULT_SESSION_ID = "default"


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PENDING_ISSUER_LOGIN = "pending_issuer_login"
    AUTHENTICATED = "authenticated"
    REFRESH_IN_FLIGHT = "refresh_in_flight"
    LOGGING_OUT = "logging_out"


class CallbackStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    MISSING_CODE = "missing_code"
    STATE_MISMATCH = "state_mismatch"
    NONCE_MISMATCH = "nonce_mismatch"
    NO_PENDING_LOGIN = "no_pending_login"
    EXCHANGE_FAILED = "exchange_failed"


@dataclass(frozen=True)
class TenantContext:
    tenant_domain_name: str
    # Login hint from the app login page; not a secret and never persisted
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class LoginOutcome:
    authorize_url: str
    tenant: TenantContext


@dataclass(frozen=True)
class CallbackOutcome:
    """
    Result of feeding an auth callback to the controller.

    ``message`` is safe to show to the user; ``error`` is for logs only.
    """

    status: CallbackStatus
    error: Optional[OAuthSessionError] = None
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is CallbackStatus.AUTHENTICATED


@dataclass(frozen=True)
class LogoutOutcome:
    revoked: bool
    logout_url: Optional[str] = None
    error: Optional[RevokeFailure] = None


def _matches(received: str, expected: str) -> bool:
    return secrets.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


class SessionController:
    """
    Drives the PKCE login handshake and hands out valid access tokens.

    Args:
        config: OAuth client configuration
        store: Persists the token record and tenant domain
        issuer: Talks to the token endpoint
        browser: Shows provider pages
        clock: Returns the current UTC time
        session_id: Key for the in-flight refresh; one session per controller
    """

    def __init__(
        self,
        config: AuthConfig,
        store: SecureStore,
        issuer: TokenIssuerClient,
        browser: BrowserLauncher,
        clock: Callable = utcnow,
        session_id: str = DEFAULT_SESSION_ID,
    ):
        self.config = config
        self.session_id = session_id
        self._store = store
        self._issuer = issuer
        self._browser = browser
        self._clock = clock

        self._state = SessionState.UNAUTHENTICATED
        self._record: Optional[TokenRecord] = None
        self._tenant: Optional[TenantContext] = None
        self._pkce: Optional[PKCEMaterial] = None
        # Bumped whenever a login attempt starts or is abandoned
        self._login_attempt = 0
        self._restored = False
        self._pending_refresh: Dict[str, asyncio.Task] = {}
        self._listeners: List[Callable[[SessionState], None]] = []
        self.error_message: Optional[str] = None
        # Set when a failed refresh ended the session
        self.refresh_error: Optional[RefreshFailure] = None

    @classmethod
    def from_config(
        cls,
        config: AuthConfig,
        browser: BrowserLauncher,
        store: Optional[SecureStore] = None,
    ) -> "SessionController":
        """Wire a controller with the store and issuer client the config selects."""
        issuer = TokenIssuerClient(
            redirect_uri=config.redirect_uri,
            timeout=config.http_timeout_seconds,
        )
        return cls(config, store or store_from_config(config), issuer, browser)

    # --- Observation ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._record is not None

    @property
    def token_record(self) -> Optional[TokenRecord]:
        return self._record

    @property
    def tenant(self) -> Optional[TenantContext]:
        return self._tenant

    @property
    def pending_login(self) -> bool:
        return self._pkce is not None

    def subscribe(self, listener: Callable[[SessionState], None]) -> Callable[[], None]:
        """
        Call ``listener`` with the new state after every state change.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.info("Session state %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Session state listener failed")

    # --- Persistence helpers ---

    def _discard_token(self) -> None:
        self._record = None
        self._store.delete_token()

    def restore(self) -> Optional[TokenRecord]:
        """Load the persisted token record and tenant domain (app launch)."""
        self._restored = True
        stored_tenant = self._store.get_tenant_domain()
        if is_valid_tenant_domain(stored_tenant) and self._tenant is None:
            self._tenant = TenantContext(stored_tenant)

        if self._record is None and self._state is SessionState.UNAUTHENTICATED:
            record = self._store.get_token()
            if record is not None:
                self._record = record
                self._set_state(SessionState.AUTHENTICATED)
        return self._record

    # --- Login ---

    def begin_app_login(self) -> str:
        """Open the application login page, where the user chooses a tenant."""
        url = build_app_login_url(self.config.app_vanity_domain, self.config.client_id)
        self.error_message = None
        self._browser.open(BrowserSurface.APP_LOGIN, url)
        return url

    def begin_tenant_login(self, tenant_domain: str, login_hint: Optional[str] = None) -> LoginOutcome:
        """
        Start the tenant-scoped PKCE login.

        Any previous attempt's material is replaced and any held token is
        discarded, since the user may be switching tenants (e.g. from an invite).

        Raises:
            ValueError: If ``tenant_domain`` is not a single DNS label
        """
        if not is_valid_tenant_domain(tenant_domain):
            raise ValueError(f"Invalid tenant domain: {tenant_domain!r}")

        material = generate_pkce_material()
        self._pkce = material
        self._login_attempt += 1
        self._restored = True

        self._tenant = TenantContext(tenant_domain, login_hint)
        self._store.save_tenant_domain(tenant_domain)
        self._discard_token()
        self.error_message = None
        self.refresh_error = None

        url = build_authorize_url(
            app_vanity_domain=self.config.app_vanity_domain,
            tenant_domain=tenant_domain,
            client_id=self.config.client_id,
            redirect_uri=self.config.redirect_uri,
            scopes=self.config.scopes,
            code_challenge=material.code_challenge,
            state=material.state,
            nonce=material.nonce,
            login_hint=login_hint,
        )
        self._browser.close(BrowserSurface.APP_LOGIN)
        self._browser.open(BrowserSurface.TENANT_LOGIN, url)
        self._set_state(SessionState.PENDING_ISSUER_LOGIN)
        logger.info("Started login for tenant %s", tenant_domain)
        return LoginOutcome(authorize_url=url, tenant=self._tenant)

    def _fail_login(self, status: CallbackStatus, error: OAuthSessionError) -> CallbackOutcome:
        self._pkce = None
        self._discard_token()
        self._browser.close(BrowserSurface.TENANT_LOGIN)
        self.error_message = LOGIN_ERROR_MESSAGE
        self._set_state(SessionState.UNAUTHENTICATED)
        return CallbackOutcome(status, error=error, message=LOGIN_ERROR_MESSAGE)

    async def handle_auth_callback(self, code: Optional[str], state: Optional[str]) -> CallbackOutcome:
        """
        Complete the login with the authorization code from the redirect.

        A callback is only honoured once, and only when its state matches the
        pending attempt. Refused callbacks leave the session untouched.
        """
        material = self._pkce
        if material is None:
            logger.warning("Ignoring auth callback: no login in progress")
            return CallbackOutcome(
                CallbackStatus.NO_PENDING_LOGIN,
                error=StateMismatch("No login in progress for this callback"),
            )
        if not code:
            logger.warning("Ignoring auth callback without an authorization code")
            return CallbackOutcome(
                CallbackStatus.MISSING_CODE,
                error=MalformedCallback("Callback has no authorization code"),
            )
        if not state or not _matches(state, material.state):
            logger.warning("Rejected auth callback: state mismatch")
            return CallbackOutcome(
                CallbackStatus.STATE_MISMATCH,
                error=StateMismatch("Callback state does not match the login request"),
            )

        # Consumed before the exchange so a duplicate callback is refused
        self._pkce = None
        attempt = self._login_attempt

        try:
            record = await self._issuer.exchange_code(
                self.config.app_vanity_domain,
                code,
                self.config.client_id,
                material.code_verifier,
            )
        except IssuerClientError as e:
            logger.error("Token exchange failed: %s", e)
            if attempt != self._login_attempt:
                return CallbackOutcome(CallbackStatus.NO_PENDING_LOGIN, error=ExchangeFailure(str(e)))
            return self._fail_login(CallbackStatus.EXCHANGE_FAILED, ExchangeFailure(str(e)))
        except BaseException:
            # Cancelled or crashed mid-exchange: the attempt cannot finish
            if attempt == self._login_attempt:
                self._end_login_attempt()
            raise

        if attempt != self._login_attempt:
            logger.warning("Discarding tokens for a login attempt that was superseded")
            return CallbackOutcome(
                CallbackStatus.NO_PENDING_LOGIN,
                error=StateMismatch("Login attempt was superseded"),
            )

        nonce = record.id_token_nonce()
        if nonce is not None and not _matches(nonce, material.nonce):
            logger.warning("Rejected tokens: id_token nonce mismatch")
            return self._fail_login(
                CallbackStatus.NONCE_MISMATCH,
                NonceMismatch("id_token nonce does not match the login request"),
            )

        self._record = record
        self._store.save_token(record)
        self._browser.close(BrowserSurface.TENANT_LOGIN)
        self._set_state(SessionState.AUTHENTICATED)
        logger.info("Login complete; access token valid until %s", record.token_expiration.isoformat())
        return CallbackOutcome(CallbackStatus.AUTHENTICATED)

    def _end_login_attempt(self) -> None:
        self._pkce = None
        self._login_attempt += 1
        self._browser.close(BrowserSurface.TENANT_LOGIN)
        self._set_state(
            SessionState.AUTHENTICATED if self._record is not None else SessionState.UNAUTHENTICATED
        )
        logger.info("Login attempt discarded")

    def discard_login(self) -> None:
        """Abandon the pending login attempt; its material is never reused."""
        if self._state is not SessionState.PENDING_ISSUER_LOGIN:
            return
        self._end_login_attempt()

    def cancel_login(self) -> None:
        """The login browser was dismissed before it redirected back."""
        self.discard_login()

    # --- Tokens ---

    async def get_valid_access_token(self) -> Optional[str]:
        """
        Return an access token that has not expired, refreshing it if needed.

        Returns:
            The access token, or None when the user has to log in
        """
        if self._record is None and not self._restored:
            self.restore()

        record = self._record
        if record is None:
            return None
        if not record.is_expired(self._clock(), self.config.expiry_leeway):
            return record.access_token

        task = self._pending_refresh.get(self.session_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(record))
            self._pending_refresh[self.session_id] = task
            task.add_done_callback(self._refresh_done)
        # Shielded so one cancelled caller does not cancel everyone's refresh
        return await asyncio.shield(task)

    def _refresh_done(self, task: asyncio.Task) -> None:
        if self._pending_refresh.get(self.session_id) is task:
            del self._pending_refresh[self.session_id]

    async def _refresh(self, record: TokenRecord) -> Optional[str]:
        if self._state is SessionState.AUTHENTICATED:
            self._set_state(SessionState.REFRESH_IN_FLIGHT)

        try:
            new_record = await self._issuer.refresh(
                self.config.app_vanity_domain,
                self.config.client_id,
                record.refresh_token,
            )
        except IssuerClientError as e:
            if self._record is not record:
                return None
            # Not retried: the refresh token may have been revoked or rotated
            self.refresh_error = RefreshFailure(f"Token refresh failed, session ended: {e}")
            logger.warning("%s", self.refresh_error)
            self._discard_token()
            self.error_message = SESSION_EXPIRED_MESSAGE
            self._set_state(SessionState.UNAUTHENTICATED)
            return None

        if self._record is not record:
            logger.info("Ignoring refreshed token for a session that has ended")
            return None

        self._record = new_record
        self.refresh_error = None
        self._store.save_token(new_record)
        self._set_state(SessionState.AUTHENTICATED)
        logger.debug("Access token refreshed; valid until %s", new_record.token_expiration.isoformat())
        return new_record.access_token

    # --- Logout ---

    async def logout(self) -> LogoutOutcome:
        """
        Revoke the refresh token, forget the session and open the logout page.

        Revocation is best effort. Local state is always cleared.
        """
        if not self._restored:
            self.restore()

        record = self._record
        tenant = self._tenant
        self._set_state(SessionState.LOGGING_OUT)
        self._pkce = None
        self._login_attempt += 1
        self._record = None

        revoked = False
        revoke_error = None
        if record is not None:
            try:
                await self._issuer.revoke(
                    self.config.app_vanity_domain,
                    self.config.client_id,
                    record.refresh_token,
                )
                revoked = True
            except IssuerClientError as e:
                revoke_error = RevokeFailure(f"Unable to revoke token: {e}")
                logger.warning("%s", revoke_error)

        self._store.delete_token()
        self._store.delete_tenant_domain()
        self._tenant = None

        if tenant is None:
            self.finish_logout()
            return LogoutOutcome(revoked=revoked, error=revoke_error)

        url = build_logout_url(
            self.config.app_vanity_domain,
            tenant.tenant_domain_name,
            self.config.client_id,
            self.config.logout_redirect_uri,
        )
        self._browser.open(BrowserSurface.LOGOUT, url)
        return LogoutOutcome(revoked=revoked, logout_url=url, error=revoke_error)

    def finish_logout(self) -> None:
        """The logout page redirected back: provider cookies are gone."""
        self._pkce = None
        self._record = None
        self._tenant = None
        self._restored = True
        self._store.delete_token()
        self._store.delete_tenant_domain()
        self._browser.close(BrowserSurface.LOGOUT)
        self._set_state(SessionState.UNAUTHENTICATED)
