"""Token record built from issuer responses and persisted by the secure store."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from .errors import IssuerError

_REQUIRED_FIELDS = ("access_token", "refresh_token", "expires_in")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenRecord:
    """
    Access/refresh token pair with a locally computed expiration.

    ``token_expiration`` is always issuance time + ``expires_in``; the
    issuer never supplies it.
    """

    access_token: str
    refresh_token: str
    expires_in: int
    token_expiration: datetime
    token_type: str = "Bearer"
    id_token: Optional[str] = None

    def __repr__(self) -> str:
        # Never print secrets
        return (
            f"TokenRecord(expires_in={self.expires_in}, "
            f"token_expiration={self.token_expiration.isoformat()})"
        )

    @classmethod
    def from_response(
        cls,
        payload: Dict[str, Any],
        issued_at: datetime,
        previous_refresh_token: Optional[str] = None,
    ) -> "TokenRecord":
        """
        Build a record from a token endpoint response.

        Args:
            payload: Decoded JSON body of the token response
            issued_at: Time the response was received
            previous_refresh_token: Kept when a refresh response omits one

        Raises:
            IssuerError: If the response is not a complete token response
        """
        data = dict(payload)
        if not data.get("refresh_token") and previous_refresh_token:
            data["refresh_token"] = previous_refresh_token

        missing = [name for name in _REQUIRED_FIELDS if data.get(name) in (None, "")]
        if missing:
            raise IssuerError(f"Token response missing fields: {', '.join(missing)}")

        try:
            expires_in = int(data["expires_in"])
        except (TypeError, ValueError):
            raise IssuerError("Token response has a non-numeric expires_in")

        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
            expires_in=expires_in,
            token_expiration=issued_at + timedelta(seconds=expires_in),
            token_type=str(data.get("token_type") or "Bearer"),
            id_token=data.get("id_token"),
        )

    def is_expired(self, now: datetime, leeway: timedelta = timedelta(0)) -> bool:
        return now >= self.token_expiration - leeway

    def id_token_nonce(self) -> Optional[str]:
        """
        Return the ``nonce`` claim of the id_token, without verifying the signature.

        Returns None when there is no id_token. An undecodable id_token is
        reported as an empty string so it can never match a real nonce.
        """
        if not self.id_token:
            return None
        try:
            claims = jwt.get_unverified_claims(self.id_token)
        except JWTError:
            return ""
        return str(claims.get("nonce") or "")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_expiration": self.token_expiration.isoformat(),
            "token_type": self.token_type,
        }
        if self.id_token:
            data["id_token"] = self.id_token
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        """
        Rebuild a stored record.

        Raises:
            KeyError, TypeError, ValueError: If the stored data is incomplete
        """
        expiration = datetime.fromisoformat(data["token_expiration"])
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
            expires_in=int(data["expires_in"]),
            token_expiration=expiration,
            token_type=str(data.get("token_type") or "Bearer"),
            id_token=data.get("id_token"),
        )
