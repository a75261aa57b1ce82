#!/usr/bin/env python3
"""
Tenant OAuth CLI

Developer harness for the PKCE session controller. Redirect URLs that the
browser would normally hand to the app are pasted at the prompt instead.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .browser import SystemBrowser
from .config import AuthConfig, load_config
from .errors import ConfigError
from .router import RedirectKind, RedirectRouter
from .session import SessionController, SessionState
from .store import store_from_config

app = typer.Typer(
    name="tenant-oauth",
    help="Tenant OAuth CLI - Log in to a multi-tenant identity provider using PKCE",
    add_completion=False,
)
console = Console()


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def get_config() -> AuthConfig:
    """Get OAuth configuration from environment."""
    try:
        return load_config()
    except ConfigError as e:
        console.print(
            Panel(
                f"[bold red]{e}[/bold red]\n\n"
                "Please set these environment variables in your .env file:\n"
                "  • APP_VANITY_DOMAIN\n"
                "  • CLIENT_ID\n"
                "  • REDIRECT_SCHEME (optional)\n"
                "  • TOKEN_STORE (optional: keyring, file, memory)",
                title="⚠️ Configuration Error",
                border_style="red"
            )
        )
        raise typer.Exit(1)


def _format_expiration(expiration: datetime) -> str:
    is_expired = datetime.now(timezone.utc) >= expiration
    status = "[red]EXPIRED[/red]" if is_expired else "[green]Valid[/green]"
    local = expiration.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    return f"{local} ({status})"


async def _interactive_login(controller: SessionController) -> None:
    router = RedirectRouter(controller)
    controller.begin_app_login()

    while controller.state is not SessionState.AUTHENTICATED:
        url = typer.prompt(
            "Paste the redirect URL (empty to cancel)",
            default="",
            show_default=False,
        ).strip()
        if not url:
            controller.cancel_login()
            return

        outcome = await router.route(url)
        if outcome.kind is RedirectKind.IGNORED:
            console.print(f"[yellow]Not a {router.scheme}:// redirect, try again[/yellow]")
        elif outcome.kind is RedirectKind.LOGIN and outcome.login is None:
            console.print("[yellow]Login redirect has no usable tenant_domain, try again[/yellow]")
        elif outcome.kind is RedirectKind.CALLBACK and not outcome.callback.succeeded:
            if controller.state is SessionState.UNAUTHENTICATED:
                return
            console.print(
                f"[yellow]Callback rejected ({outcome.callback.status.value}), "
                "waiting for another redirect[/yellow]"
            )


@app.command()
def login(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed debug information")
):
    """
    Log in with the tenant-scoped Authorization Code + PKCE flow.

    Opens the application login page; paste each redirect URL the browser
    offers to open. Tokens are saved to the configured secure store.
    """
    configure_logging(verbose)
    config = get_config()

    console.print(Panel(
        "[bold]Tenant OAuth Login[/bold]\n\n"
        "Authorization Code flow with PKCE.\n"
        "No client secret required - secure for native apps and CLI tools.",
        title="🔐 Authentication",
        border_style="blue"
    ))
    if verbose:
        console.print(f"[dim]Client ID: {config.client_id[:12]}...[/dim]")
        console.print(f"[dim]Vanity domain: {config.app_vanity_domain}[/dim]")
        console.print(f"[dim]Redirect: {config.redirect_uri}[/dim]")
        console.print()

    controller = SessionController.from_config(config, SystemBrowser(console=console, verbose=verbose))
    asyncio.run(_interactive_login(controller))

    record = controller.token_record
    if controller.state is SessionState.AUTHENTICATED and record is not None:
        console.print(Panel(
            "[bold green]Authentication successful![/bold green]\n\n"
            f"Tenant: {controller.tenant.tenant_domain_name if controller.tenant else 'Unknown'}\n"
            f"Token expires: {_format_expiration(record.token_expiration)}",
            title="✓ Success",
            border_style="green"
        ))
    else:
        console.print(Panel(
            f"[bold red]Authentication failed[/bold red]\n\n"
            f"{controller.error_message or 'Login was cancelled.'}",
            title="✗ Failed",
            border_style="red"
        ))
        raise typer.Exit(1)


@app.command("access-token")
def access_token(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed debug information")
):
    """
    Print a valid access token, refreshing it if it has expired.
    """
    configure_logging(verbose)
    config = get_config()
    controller = SessionController.from_config(config, SystemBrowser(console=console))

    token_value = asyncio.run(controller.get_valid_access_token())
    if not token_value:
        console.print(Panel(
            f"{controller.error_message or 'No valid token available.'}\n\n"
            "Run [bold]login[/bold] to authenticate.",
            title="⚠️ No Token",
            border_style="yellow"
        ))
        raise typer.Exit(1)
    typer.echo(token_value)


@app.command()
def token():
    """
    Show current token information.
    """
    config = get_config()
    store = store_from_config(config)
    record = store.get_token()

    if record is None:
        console.print(Panel(
            "No tokens found.\n\nRun [bold]login[/bold] to authenticate.",
            title="Token Status",
            border_style="yellow"
        ))
        raise typer.Exit(1)

    table = Table(title="Token Information")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Access Token", f"{record.access_token[:20]}...{record.access_token[-10:]}")
    table.add_row("Refresh Token", "✓ Present")
    table.add_row("Expires", _format_expiration(record.token_expiration))
    table.add_row("Token Type", record.token_type)
    table.add_row("Tenant", store.get_tenant_domain() or "Unknown")

    console.print(table)


@app.command()
def logout(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed debug information")
):
    """
    Revoke the refresh token and clear the saved session.
    """
    configure_logging(verbose)
    config = get_config()
    controller = SessionController.from_config(config, SystemBrowser(console=console, verbose=verbose))

    async def _logout() -> None:
        outcome = await controller.logout()
        if outcome.error is not None:
            console.print("[yellow]Could not revoke the refresh token; local session cleared anyway[/yellow]")
        if controller.state is SessionState.LOGGING_OUT:
            url = typer.prompt(
                "Paste the logout redirect URL (empty to skip)",
                default="",
                show_default=False,
            ).strip()
            if url:
                await RedirectRouter(controller).route(url)
            if controller.state is SessionState.LOGGING_OUT:
                controller.finish_logout()

    asyncio.run(_logout())
    console.print("[green]✓ Logged out successfully[/green]")


@app.command()
def status():
    """
    Show setup status and configuration.
    """
    load_dotenv()
    console.print(Panel("[bold]Tenant OAuth Status[/bold]", border_style="blue"))

    console.print("\n[bold]Environment:[/bold]")
    for name, required in (
        ("APP_VANITY_DOMAIN", True),
        ("CLIENT_ID", True),
        ("REDIRECT_SCHEME", False),
        ("TOKEN_STORE", False),
    ):
        if os.getenv(name):
            console.print(f"  {name}: ✓ Set")
        elif required:
            console.print(f"  {name}: ✗ Missing")
        else:
            console.print(f"  {name}: (using default)")

    config = get_config()
    console.print(f"\n[bold]Token store:[/bold] {config.token_store}")

    console.print("\n[bold]Tokens:[/bold]")
    store = store_from_config(config)
    record = store.get_token()
    if record is None:
        console.print("  [dim]No tokens saved[/dim]")
    elif record.is_expired(datetime.now(timezone.utc)):
        console.print("  [yellow]⚠ Token expired[/yellow]")
    else:
        expires = record.token_expiration.astimezone().strftime("%Y-%m-%d %H:%M")
        console.print(f"  [green]✓ Valid until {expires}[/green]")

    tenant = store.get_tenant_domain()
    console.print(f"  Tenant: {tenant or '[dim]none[/dim]'}")


if __name__ == "__main__":
    app()
