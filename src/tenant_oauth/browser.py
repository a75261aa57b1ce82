"""
User-agent launcher.

The session controller never renders web content. It asks a launcher to show
a provider URL on one of three surfaces and to close it again; the redirect
that ends each round trip comes back through the redirect router.
"""

import logging
import webbrowser
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Optional

from rich.console import Console
from rich.panel import Panel

logger = logging.getLogger(__name__)


class BrowserSurface(str, Enum):
    APP_LOGIN = "app_login"
    TENANT_LOGIN = "tenant_login"
    LOGOUT = "logout"


_SURFACE_TITLES = {
    BrowserSurface.APP_LOGIN: "🔐 Application Login",
    BrowserSurface.TENANT_LOGIN: "🔐 Tenant Login",
    BrowserSurface.LOGOUT: "👋 Logout",
}


class BrowserLauncher(ABC):
    @abstractmethod
    def open(self, surface: BrowserSurface, url: str) -> None:
        """Show ``url`` on ``surface``, replacing whatever it showed before."""

    @abstractmethod
    def close(self, surface: BrowserSurface) -> None:
        """Dismiss ``surface``. Closing a surface that is not open is a no-op."""


class SystemBrowser(BrowserLauncher):
    """
    Opens URLs in the platform's default browser.

    The system browser cannot be closed from here, so ``close`` only tracks
    which surfaces are considered open.
    """

    def __init__(self, console: Optional[Console] = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose
        self.open_surfaces: Dict[BrowserSurface, str] = {}

    def open(self, surface: BrowserSurface, url: str) -> None:
        self.open_surfaces[surface] = url
        self.console.print(Panel(
            "A browser will open to continue.\n"
            "When it asks to open this application, [yellow]click 'Open'[/yellow].",
            title=_SURFACE_TITLES[surface],
            border_style="blue"
        ))
        if self.verbose:
            self.console.print(f"[dim]URL: {url[:80]}...[/dim]")

        if not webbrowser.open(url):
            logger.warning("No browser available; open this URL manually: %s", url)
            self.console.print(f"Open this URL in your browser:\n{url}")

    def close(self, surface: BrowserSurface) -> None:
        if self.open_surfaces.pop(surface, None) is not None:
            logger.debug("Closed %s browser surface", surface.value)
