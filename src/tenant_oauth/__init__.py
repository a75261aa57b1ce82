"""
Client-side OAuth Authorization Code + PKCE session management for
multi-tenant identity providers.
"""

from .browser import BrowserLauncher, BrowserSurface, SystemBrowser
from .config import AuthConfig, load_config
from .errors import (
    ConfigError,
    ExchangeFailure,
    IssuerClientError,
    IssuerError,
    MalformedCallback,
    NetworkError,
    NonceMismatch,
    OAuthSessionError,
    RefreshFailure,
    RevokeFailure,
    StateMismatch,
)
from .issuer import TokenIssuerClient
from .pkce import PKCEMaterial, generate_pkce_material
from .router import RedirectKind, RedirectOutcome, RedirectRouter
from .session import (
    CallbackOutcome,
    CallbackStatus,
    LoginOutcome,
    LogoutOutcome,
    SessionController,
    SessionState,
    TenantContext,
)
from .store import FileStore, KeyringStore, MemoryStore, SecureStore
from .tokens import TokenRecord

__version__ = "0.1.0"
