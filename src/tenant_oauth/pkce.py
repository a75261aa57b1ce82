"""
PKCE (Proof Key for Code Exchange) implementation.

PKCE is used for OAuth 2.0 public clients (native apps, SPAs) that cannot
securely store a client secret. It prevents authorization code interception attacks.

Flow:
1. Generate random code_verifier (43-128 chars)
2. Create code_challenge = BASE64URL(SHA256(code_verifier))
3. Send code_challenge, state and nonce with the authorization request
4. Check state on the redirect, send code_verifier when exchanging the code
5. Server verifies SHA256(code_verifier) == code_challenge
"""

import base64
import hashlib
import secrets
import string
from dataclasses import dataclass

# Length used for state and nonce values
RANDOM_STRING_LENGTH = 22

_ALPHANUMERIC = string.ascii_letters + string.digits


@dataclass(frozen=True)
class PKCEMaterial:
    """Verifier, challenge, state and nonce for one login attempt."""

    code_verifier: str
    code_challenge: str
    state: str
    nonce: str

    def __repr__(self) -> str:
        return f"PKCEMaterial(code_challenge={self.code_challenge!r})"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier(num_bytes: int = 32) -> str:
    """
    Generate a cryptographically random code verifier.

    Args:
        num_bytes: Random bytes to draw (32-96, default 32)

    Returns:
        URL-safe base64 encoded random string, 43-128 characters
    """
    if not 32 <= num_bytes <= 96:
        raise ValueError("num_bytes must be between 32 and 96")
    return _b64url(secrets.token_bytes(num_bytes))


def generate_code_challenge(code_verifier: str) -> str:
    """
    Generate a code challenge from a code verifier using SHA256.

    Args:
        code_verifier: The code verifier string

    Returns:
        URL-safe base64 encoded SHA256 hash
    """
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_random_string(length: int = RANDOM_STRING_LENGTH) -> str:
    """
    Generate an alphanumeric random string, used for state and nonce.

    Args:
        length: Number of characters to return

    Returns:
        Random string of exactly ``length`` characters
    """
    if length < 1:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def generate_pkce_material() -> PKCEMaterial:
    """Generate fresh verifier, challenge, state and nonce for a login attempt."""
    verifier = generate_code_verifier()
    return PKCEMaterial(
        code_verifier=verifier,
        code_challenge=generate_code_challenge(verifier),
        state=generate_random_string(),
        nonce=generate_random_string(),
    )
