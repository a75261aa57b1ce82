import asyncio
import inspect
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from tenant_oauth.browser import BrowserLauncher, BrowserSurface  # noqa: E402
from tenant_oauth.config import AuthConfig  # noqa: E402
from tenant_oauth.session import SessionController  # noqa: E402
from tenant_oauth.store import MemoryStore  # noqa: E402
from tenant_oauth.tokens import TokenRecord  # noqa: E402

START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


class CountingStore(MemoryStore):
    """Memory store that records every key access."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Tuple[str, str]] = []

    def _read(self, key: str) -> Optional[str]:
        self.calls.append(("read", key))
        return super()._read(key)

    def _write(self, key: str, value: str) -> None:
        self.calls.append(("write", key))
        super()._write(key, value)

    def _delete(self, key: str) -> None:
        self.calls.append(("delete", key))
        super()._delete(key)


class FakeIssuer:
    """Stands in for TokenIssuerClient; hands out tok1, tok2, ... in order."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.exchange_calls: List[Dict[str, str]] = []
        self.refresh_calls: List[str] = []
        self.revoke_calls: List[str] = []
        self.exchange_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.revoke_error: Optional[Exception] = None
        self.id_token: Optional[str] = None
        self.expires_in = 3600
        self._issued = 0

    def _next_record(self, refresh_token: str) -> TokenRecord:
        self._issued += 1
        payload = {
            "access_token": f"tok{self._issued}",
            "refresh_token": refresh_token,
            "expires_in": self.expires_in,
        }
        if self.id_token:
            payload["id_token"] = self.id_token
        return TokenRecord.from_response(payload, self.clock())

    async def exchange_code(self, domain, code, client_id, code_verifier):
        self.exchange_calls.append(
            {"domain": domain, "code": code, "client_id": client_id, "code_verifier": code_verifier}
        )
        await asyncio.sleep(0)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self._next_record("refresh-1")

    async def refresh(self, domain, client_id, refresh_token):
        self.refresh_calls.append(refresh_token)
        # Yield a few times so concurrent callers pile up behind the refresh
        for _ in range(3):
            await asyncio.sleep(0)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self._next_record(f"refresh-{len(self.refresh_calls) + 1}")

    async def revoke(self, domain, client_id, refresh_token):
        self.revoke_calls.append(refresh_token)
        await asyncio.sleep(0)
        if self.revoke_error is not None:
            raise self.revoke_error


class RecordingBrowser(BrowserLauncher):
    def __init__(self) -> None:
        self.opened: List[Tuple[BrowserSurface, str]] = []
        self.closed: List[BrowserSurface] = []
        self.visible: Dict[BrowserSurface, str] = {}

    def open(self, surface: BrowserSurface, url: str) -> None:
        self.opened.append((surface, url))
        self.visible[surface] = url

    def close(self, surface: BrowserSurface) -> None:
        self.closed.append(surface)
        self.visible.pop(surface, None)


def query_params(url: str) -> Dict[str, str]:
    return {name: values[0] for name, values in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def config():
    return AuthConfig(app_vanity_domain="invotastic.example.com", client_id="client-123")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def issuer(clock):
    return FakeIssuer(clock)


@pytest.fixture
def browser():
    return RecordingBrowser()


@pytest.fixture
def controller(config, store, issuer, browser, clock):
    return SessionController(config, store, issuer, browser, clock=clock)
