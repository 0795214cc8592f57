"""CLI entry point for mcp-oauth."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn, TypeVar

import click

from . import __version__
from .config import AuthConfig, load_config
from .errors import InvalidProvider, OAuthError, ProviderNotFound
from .oauth.manager import AuthManager
from .output import OutputHandler


T = TypeVar("T")


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Path to mcp-oauth config file")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, config_path: str | None, env_path: str | None, verbose: bool) -> None:
    """mcp-oauth - Manage OAuth sessions for MCP servers."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_config(ctx: click.Context) -> AuthConfig | NoReturn:
    """Get config from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_config(ctx.obj["config_path"], ctx.obj["env_path"])
    except FileNotFoundError as e:
        output.error(e, help_text=str(e))
    except json.JSONDecodeError as e:
        output.error(
            e,
            error_type="ConfigParseError",
            help_text="The config file contains invalid JSON. Check for syntax errors.",
        )
    except (InvalidProvider, ValueError) as e:
        output.error(e, error_type="ConfigError", help_text="Fix the provider entries in your config file.")


def get_manager(ctx: click.Context) -> AuthManager:
    """Build the AuthManager for this invocation (once per command)."""
    if "manager" not in ctx.obj:
        config = get_config(ctx)
        output: OutputHandler = ctx.obj["output"]
        ctx.obj["config"] = config
        ctx.obj["manager"] = config.create_manager(on_status=output.status)
    manager: AuthManager = ctx.obj["manager"]
    return manager


def run_with_manager(manager: AuthManager, action: Callable[[AuthManager], Awaitable[T]]) -> T:
    """Run one async action, always tearing down listeners afterwards."""

    async def runner() -> T:
        try:
            return await action(manager)
        finally:
            await manager.cleanup()

    return asyncio.run(runner())


def require_provider(ctx: click.Context, manager: AuthManager, name: str) -> None:
    if manager.get_provider(name) is None:
        output: OutputHandler = ctx.obj["output"]
        available = ", ".join(manager.registry.names()) or "(none)"
        output.error(
            ProviderNotFound(f"Provider '{name}' not found", {"provider": name}),
            help_text=f"Configured providers: {available}",
        )


@main.command()
@click.pass_context
def providers(ctx: click.Context) -> None:
    """List configured OAuth providers."""
    output: OutputHandler = ctx.obj["output"]
    manager = get_manager(ctx)

    configured = manager.list_providers()
    if output.json_mode:
        output.success([p.to_dict() for p in configured])
        return

    if not configured:
        output.success([], "No providers configured.")
        return

    output.table(
        ["Provider", "Client", "Scopes", "Authorize URL"],
        [
            [p.name, "confidential" if p.is_confidential() else "public", " ".join(p.scope), p.authorization_url]
            for p in configured
        ],
    )


@main.command()
@click.argument("provider")
@click.option("--timeout", "-t", type=float, default=None, help="Seconds to wait for the browser (default from config)")
@click.option("--scope", "scopes", multiple=True, help="Scope to request instead of the configured ones (repeatable)")
@click.pass_context
def login(ctx: click.Context, provider: str, timeout: float | None, scopes: tuple[str, ...]) -> None:
    """Authenticate with PROVIDER in the browser."""
    output: OutputHandler = ctx.obj["output"]
    manager = get_manager(ctx)
    require_provider(ctx, manager, provider)

    try:
        tokens = run_with_manager(
            manager,
            lambda m: m.authenticate(provider, scopes=list(scopes) or None, timeout=timeout),
        )
    except OAuthError as e:
        output.error(e, help_text="Run with --verbose for details, then try again.")

    data: dict[str, Any] = {
        "provider": provider,
        "authenticated": True,
        "scope": tokens.scope,
        "has_refresh_token": tokens.has_refresh_token(),
    }
    output.success(data, f"Authenticated with {provider}.")


def _status_rows(statuses: list[Any]) -> list[list[str]]:
    rows = []
    for status in statuses:
        user = ""
        if status.user is not None:
            user = status.user.username or status.user.email or status.user.id or ""
        rows.append([
            status.provider,
            "yes" if status.is_authenticated else "no",
            user,
            status.expires_in_human() or ("never" if status.is_authenticated else ""),
            " ".join(status.scope or []),
        ])
    return rows


@main.command()
@click.argument("provider", required=False)
@click.pass_context
def status(ctx: click.Context, provider: str | None) -> None:
    """Show authentication status for one or all providers."""
    output: OutputHandler = ctx.obj["output"]
    manager = get_manager(ctx)

    if provider:
        require_provider(ctx, manager, provider)
        names = [provider]
    else:
        names = manager.registry.names()

    async def collect(m: AuthManager) -> list[Any]:
        return [await m.get_authentication_status(name) for name in names]

    statuses = run_with_manager(manager, collect)

    if output.json_mode:
        output.success([s.to_dict() for s in statuses])
        return

    if not statuses:
        output.success([], "No providers configured.")
        return

    output.table(["Provider", "Authenticated", "User", "Expires In", "Scopes"], _status_rows(statuses))


@main.command()
@click.argument("provider")
@click.pass_context
def refresh(ctx: click.Context, provider: str) -> None:
    """Refresh the stored tokens for PROVIDER."""
    output: OutputHandler = ctx.obj["output"]
    manager = get_manager(ctx)
    require_provider(ctx, manager, provider)

    try:
        tokens = run_with_manager(manager, lambda m: m.refresh_tokens(provider))
    except OAuthError as e:
        output.error(e)

    if tokens is None:
        output.error(
            OAuthError(f"Could not refresh tokens for '{provider}'", {"provider": provider}),
            error_type="RefreshUnavailable",
            help_text=f"No refresh token is stored or the refresh was rejected. Run: mcp-oauth login {provider}",
        )

    output.success(
        {"provider": provider, "refreshed": True, "expires_at": tokens.expires_at},
        f"Refreshed tokens for {provider}.",
    )


@main.command()
@click.argument("provider", required=False)
@click.option("--all", "all_providers", is_flag=True, help="Remove tokens for every provider")
@click.pass_context
def logout(ctx: click.Context, provider: str | None, all_providers: bool) -> None:
    """Remove stored tokens for PROVIDER (or --all)."""
    output: OutputHandler = ctx.obj["output"]

    if not provider and not all_providers:
        output.error(click.UsageError("Specify a PROVIDER or --all"))
    if provider and all_providers:
        output.error(click.UsageError("PROVIDER and --all are mutually exclusive"))

    manager = get_manager(ctx)

    try:
        if all_providers:
            run_with_manager(manager, lambda m: m.clear_all_authentications())
            output.success({"removed": "all"}, "Removed stored tokens for all providers.")
        else:
            assert provider is not None
            run_with_manager(manager, lambda m: m.revoke_authentication(provider))
            output.success({"removed": provider}, f"Removed stored tokens for {provider}.")
    except OAuthError as e:
        output.error(e)


if __name__ == "__main__":
    main()
