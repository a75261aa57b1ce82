"""OAuth client configuration, read from the environment (and an optional .env file)."""

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_REDIRECT_SCHEME = "mobiledemoapp"
DEFAULT_SCOPES = "openid offline_access email profile"
DEFAULT_TOKEN_FILE = Path.home() / ".tenant-oauth-tokens.json"
DEFAULT_KEYRING_SERVICE = "tenant-oauth"

TOKEN_STORES = ("keyring", "file", "memory")


@dataclass(frozen=True)
class AuthConfig:
    app_vanity_domain: str
    client_id: str
    redirect_scheme: str = DEFAULT_REDIRECT_SCHEME
    scopes: str = DEFAULT_SCOPES
    token_store: str = "keyring"
    token_file: Path = DEFAULT_TOKEN_FILE
    keyring_service: str = DEFAULT_KEYRING_SERVICE
    expiry_leeway_seconds: int = 0
    http_timeout_seconds: float = 30.0

    @property
    def redirect_uri(self) -> str:
        return f"{self.redirect_scheme}://callback"

    @property
    def logout_redirect_uri(self) -> str:
        return f"{self.redirect_scheme}://logout"

    @property
    def expiry_leeway(self) -> timedelta:
        return timedelta(seconds=self.expiry_leeway_seconds)


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{name} must not be negative")
    return value


def load_config(env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> AuthConfig:
    """
    Build the configuration from environment variables.

    Args:
        env: Mapping to read instead of ``os.environ``
        dotenv: Load a ``.env`` file into the process environment first

    Raises:
        ConfigError: If a required variable is missing or a value is invalid
    """
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    app_vanity_domain = env.get("APP_VANITY_DOMAIN", "").strip()
    client_id = env.get("CLIENT_ID", "").strip()

    missing = [
        name
        for name, value in (("APP_VANITY_DOMAIN", app_vanity_domain), ("CLIENT_ID", client_id))
        if not value
    ]
    if missing:
        raise ConfigError(f"Missing configuration: {', '.join(missing)}")

    token_store = env.get("TOKEN_STORE", "keyring").strip().lower()
    if token_store not in TOKEN_STORES:
        raise ConfigError(
            f"TOKEN_STORE must be one of {', '.join(TOKEN_STORES)}, got {token_store!r}"
        )

    redirect_scheme = env.get("REDIRECT_SCHEME", DEFAULT_REDIRECT_SCHEME).strip()
    if not redirect_scheme or "://" in redirect_scheme:
        raise ConfigError("REDIRECT_SCHEME must be a bare URL scheme, e.g. 'myapp'")

    token_file = env.get("TOKEN_FILE")

    return AuthConfig(
        app_vanity_domain=app_vanity_domain,
        client_id=client_id,
        redirect_scheme=redirect_scheme.lower(),
        scopes=env.get("OAUTH_SCOPES", DEFAULT_SCOPES),
        token_store=token_store,
        token_file=Path(token_file).expanduser() if token_file else DEFAULT_TOKEN_FILE,
        keyring_service=env.get("KEYRING_SERVICE", DEFAULT_KEYRING_SERVICE),
        expiry_leeway_seconds=_int_setting(env, "TOKEN_EXPIRY_LEEWAY_SECONDS", 0),
        http_timeout_seconds=float(_int_setting(env, "HTTP_TIMEOUT_SECONDS", 30)),
    )
