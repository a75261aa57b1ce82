"""
Secure storage for the token record and the tenant domain.

Every backend stores two independent keys. A write replaces one key in full,
so readers see either the old value or the new one.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
from keyring.errors import PasswordDeleteError

from .config import AuthConfig
from .tokens import TokenRecord

logger = logging.getLogger(__name__)

TOKEN_KEY = "token"
TENANT_DOMAIN_KEY = "tenant_domain_name"


class SecureStore(ABC):
    """Key-value secret storage for the current session."""

    @abstractmethod
    def _read(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def _write(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def _delete(self, key: str) -> None:
        ...

    def get_token(self) -> Optional[TokenRecord]:
        raw = self._read(TOKEN_KEY)
        if raw is None:
            return None
        try:
            return TokenRecord.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable stored token record")
            self._delete(TOKEN_KEY)
            return None

    def save_token(self, record: TokenRecord) -> None:
        self._write(TOKEN_KEY, json.dumps(record.to_dict()))

    def delete_token(self) -> None:
        self._delete(TOKEN_KEY)

    def get_tenant_domain(self) -> Optional[str]:
        return self._read(TENANT_DOMAIN_KEY) or None

    def save_tenant_domain(self, tenant_domain: str) -> None:
        self._write(TENANT_DOMAIN_KEY, tenant_domain)

    def delete_tenant_domain(self) -> None:
        self._delete(TENANT_DOMAIN_KEY)


class MemoryStore(SecureStore):
    """Process-local store. Nothing survives a restart."""

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}

    def _read(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def _write(self, key: str, value: str) -> None:
        self._values[key] = value

    def _delete(self, key: str) -> None:
        self._values.pop(key, None)


class KeyringStore(SecureStore):
    """Store backed by the OS credential manager (Keychain, Secret Service, ...)."""

    def __init__(self, service_name: str = "tenant-oauth"):
        self.service_name = service_name

    def _read(self, key: str) -> Optional[str]:
        return keyring.get_password(self.service_name, key)

    def _write(self, key: str, value: str) -> None:
        keyring.set_password(self.service_name, key, value)

    def _delete(self, key: str) -> None:
        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            # Nothing stored under this key
            pass


class FileStore(SecureStore):
    """
    JSON file store with owner-only permissions.

    Writes go to a temporary file in the same directory which then replaces
    the original, so a crash never leaves a torn file behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, IOError):
            logger.warning("Ignoring unreadable token file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: Dict[str, Any]) -> None:
        if not data:
            if self.path.exists():
                self.path.unlink()
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".tokens-")
        try:
            with os.fdopen(fd, "w") as handle:
                # Restrict file permissions to owner only (0o600 = rw-------)
                os.chmod(tmp_name, 0o600)
                json.dump(data, handle, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _read(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def _write(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def _delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)


def store_from_config(config: AuthConfig) -> SecureStore:
    if config.token_store == "file":
        return FileStore(config.token_file)
    if config.token_store == "memory":
        return MemoryStore()
    return KeyringStore(config.keyring_service)
