"""Main CLI entry point for modelgate.

Every command opens the persisted gateway, runs one gateway operation and
exits with the error's exit code when it fails.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, NoReturn, Optional, TypeVar

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from modelgate import __version__
from modelgate.core.config import (
    AuthScheme,
    ModelTier,
    ProviderStatus,
    ResetPolicy,
    ResponseShape,
    TierLimit,
)
from modelgate.core.errors import (
    EXIT_AUTHENTICATION,
    EXIT_CONNECTIVITY,
    EXIT_OK,
    EXIT_VALIDATION,
    GatewayError,
)
from modelgate.core.gateway import Gateway
from modelgate.utils.log import get_logger
from modelgate.utils.user_agent import CLIENT_SOURCE_ENV

console = Console()
err_console = Console(stderr=True)
logger = get_logger()

T = TypeVar("T")

_STATUS_STYLES = {
    ProviderStatus.HEALTHY: "green",
    ProviderStatus.UNVERIFIED: "yellow",
    ProviderStatus.UNREACHABLE: "red",
    ProviderStatus.UNAUTHORIZED: "red",
}

_STATUS_EXIT_CODES = {
    ProviderStatus.HEALTHY: EXIT_OK,
    ProviderStatus.UNVERIFIED: EXIT_OK,
    ProviderStatus.UNAUTHORIZED: EXIT_AUTHENTICATION,
    ProviderStatus.UNREACHABLE: EXIT_CONNECTIVITY,
}


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True))


def _fail(exc: GatewayError, json_output: bool) -> NoReturn:
    if json_output:
        _echo_json({"error": exc.to_dict()})
    else:
        err_console.print(f"[red]Error:[/red] {escape(str(exc))}")
    logger.debug(
        "[cli] Command failed",
        extra={"error_code": exc.error_code, "exit_code": exc.exit_code, "provider_id": exc.provider_id},
    )
    sys.exit(exc.exit_code)


def _run(ctx: click.Context, operation: Callable[[Gateway], Awaitable[T]], *, json_output: bool = False) -> T:
    state_dir: Optional[Path] = ctx.obj.get("home") if ctx.obj else None

    async def _runner() -> T:
        async with Gateway.open(state_dir) as gateway:
            return await operation(gateway)

    try:
        return asyncio.run(_runner())
    except GatewayError as exc:
        _fail(exc, json_output)


def _parse_header_entries(raw_entries: tuple[str, ...]) -> Dict[str, str]:
    parsed: Dict[str, str] = {}
    for raw in raw_entries:
        if ":" in raw:
            key, value = raw.split(":", 1)
        elif "=" in raw:
            key, value = raw.split("=", 1)
        else:
            raise click.BadParameter(f"Invalid --header entry '{raw}'. Use 'Name: Value' or 'Name=Value'.")
        key = key.strip()
        if not key:
            raise click.BadParameter(f"Invalid --header entry '{raw}'. Empty header name.")
        parsed[key] = value.strip()
    return parsed


def _parse_tier_limits(raw_entries: tuple[str, ...]) -> List[Dict[str, Any]]:
    """Parse ``TIER:LIMIT[:POLICY[:FALLBACK_MODEL]]`` entries."""
    limits: List[Dict[str, Any]] = []
    for raw in raw_entries:
        parts = raw.split(":", 3)
        if len(parts) < 2:
            raise click.BadParameter(
                f"Invalid --tier-limit '{raw}'. Expected TIER:LIMIT[:POLICY[:FALLBACK_MODEL]]."
            )
        policy = parts[2].strip().lower() if len(parts) > 2 and parts[2].strip() else ResetPolicy.ROLLING_24H.value
        fallback = parts[3].strip() if len(parts) > 3 else ""
        try:
            entry = TierLimit(
                tier=ModelTier(parts[0].strip().lower()),
                limit=int(parts[1]),
                window_policy=ResetPolicy(policy),
                fallback_model_id=fallback or None,
            )
        except ValueError as exc:
            raise click.BadParameter(f"Invalid --tier-limit '{raw}': {exc}") from exc
        limits.append(entry.model_dump(mode="json"))
    return limits


def _status_text(status: ProviderStatus) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="MODELGATE_HOME",
    default=None,
    help="State directory (default: ~/.modelgate).",
)
@click.pass_context
def cli(ctx: click.Context, home: Optional[Path]) -> None:
    """modelgate - one gateway for many model providers."""
    ctx.ensure_object(dict)
    ctx.obj["home"] = home


# ----------------------------------------------------------------------
# provider
# ----------------------------------------------------------------------


@cli.group(name="provider")
def provider_group() -> None:
    """Add, edit, remove and verify providers."""


def _provider_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option("--base-url", default=None, help="Provider API base URL."),
        click.option("--display-name", default=None, help="Human readable name."),
        click.option(
            "--auth-scheme",
            type=click.Choice([scheme.value for scheme in AuthScheme]),
            default=None,
            help="How the API key is attached to requests.",
        ),
        click.option("--auth-header-name", default=None, help="Header or query parameter carrying the key."),
        click.option(
            "--response-shape",
            type=click.Choice([shape.value for shape in ResponseShape]),
            default=None,
            help="Completion response format.",
        ),
        click.option("--chat-path", default=None, help="Completion endpoint path."),
        click.option("--models-path", default=None, help="Model listing endpoint path."),
        click.option("--header", "header_entries", multiple=True, help="Extra header (`Name: Value`)."),
        click.option(
            "--default-tier",
            type=click.Choice([tier.value for tier in ModelTier]),
            default=None,
            help="Tier for models whose listing has no tier hint.",
        ),
        click.option(
            "--fallback-mode",
            type=click.Choice(["auto", "disabled"]),
            default=None,
            help="Substitute fallback models when a tier is exhausted.",
        ),
        click.option(
            "--tier-limit",
            "tier_limit_entries",
            multiple=True,
            help="TIER:LIMIT[:POLICY[:FALLBACK_MODEL]], e.g. free:50:rolling-24h:model-mini.",
        ),
        click.option("--api-key", default=None, help="API key (prompted when omitted)."),
        click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _collect_changes(
    *,
    base_url: Optional[str],
    display_name: Optional[str],
    auth_scheme: Optional[str],
    auth_header_name: Optional[str],
    response_shape: Optional[str],
    chat_path: Optional[str],
    models_path: Optional[str],
    header_entries: tuple[str, ...],
    default_tier: Optional[str],
    fallback_mode: Optional[str],
    tier_limit_entries: tuple[str, ...],
) -> Dict[str, Any]:
    changes: Dict[str, Any] = {
        "base_url": base_url,
        "display_name": display_name,
        "auth_scheme": auth_scheme,
        "auth_header_name": auth_header_name,
        "response_shape": response_shape,
        "chat_path": chat_path,
        "models_path": models_path,
        "default_tier": default_tier,
        "fallback_mode": fallback_mode,
    }
    changes = {key: value for key, value in changes.items() if value is not None}
    if header_entries:
        changes["extra_headers"] = _parse_header_entries(header_entries)
    if tier_limit_entries:
        changes["tier_limits"] = _parse_tier_limits(tier_limit_entries)
    return changes


def _print_provider_result(provider: Any, result: Any, action: str) -> None:
    console.print(f"{action} provider '{escape(provider.id)}' (status: {_status_text(result.status)})")
    if result.detail:
        console.print(f"  [dim]{escape(result.detail)}[/dim]")


@provider_group.command(name="add")
@click.argument("provider_id")
@_provider_options
@click.option("--no-credential", is_flag=True, help="Provider needs no API key (local runtimes).")
@click.pass_context
def provider_add(
    ctx: click.Context,
    provider_id: str,
    api_key: Optional[str],
    json_output: bool,
    no_credential: bool,
    **options: Any,
) -> None:
    """Register a provider and verify it."""
    changes = _collect_changes(**options)
    if "base_url" not in changes:
        raise click.UsageError("--base-url is required.")
    config: Dict[str, Any] = {"id": provider_id, **changes, "requires_credential": not no_credential}
    if api_key is None and not no_credential:
        api_key = click.prompt("API key", hide_input=True, default="", show_default=False) or None

    provider, result = _run(ctx, lambda gateway: gateway.add_provider(config, api_key), json_output=json_output)
    if json_output:
        _echo_json({"provider": provider.model_dump(mode="json"), "health": result.model_dump(mode="json")})
        return
    _print_provider_result(provider, result, "Added")


@provider_group.command(name="edit")
@click.argument("provider_id")
@_provider_options
@click.option(
    "--requires-credential/--no-credential",
    "requires_credential",
    default=None,
    help="Whether the provider needs an API key.",
)
@click.pass_context
def provider_edit(
    ctx: click.Context,
    provider_id: str,
    api_key: Optional[str],
    json_output: bool,
    requires_credential: Optional[bool],
    **options: Any,
) -> None:
    """Change a provider's settings and re-verify it."""
    changes = _collect_changes(**options)
    if requires_credential is not None:
        changes["requires_credential"] = requires_credential
    if "auth_scheme" in changes and "auth_header_name" not in changes:
        # Switching schemes resets the header name to the scheme's default.
        changes["auth_header_name"] = None
    if not changes and api_key is None:
        raise click.UsageError("Nothing to change.")

    provider, result = _run(
        ctx, lambda gateway: gateway.edit_provider(provider_id, changes, api_key), json_output=json_output
    )
    if json_output:
        _echo_json({"provider": provider.model_dump(mode="json"), "health": result.model_dump(mode="json")})
        return
    _print_provider_result(provider, result, "Updated")


@provider_group.command(name="rotate-key")
@click.argument("provider_id")
@click.option("--api-key", default=None, help="New API key (prompted when omitted).")
@click.pass_context
def provider_rotate_key(ctx: click.Context, provider_id: str, api_key: Optional[str]) -> None:
    """Replace a provider's stored API key."""
    if api_key is None:
        api_key = click.prompt("New API key", hide_input=True)
    info = _run(ctx, lambda gateway: gateway.rotate_credential(provider_id, api_key or ""))
    console.print(f"Rotated API key for '{escape(provider_id)}' ({info.masked})")


@provider_group.command(name="remove")
@click.argument("provider_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def provider_remove(ctx: click.Context, provider_id: str, yes: bool) -> None:
    """Remove a provider with its key, models, favorites and conversations."""
    if not yes:
        click.confirm(
            f"Remove provider '{provider_id}' and everything attached to it?", abort=True
        )
    _run(ctx, lambda gateway: gateway.remove_provider(provider_id))
    console.print(f"Removed provider '{escape(provider_id)}'.")


@provider_group.command(name="list")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def provider_list(ctx: click.Context, json_output: bool) -> None:
    """List configured providers."""

    async def _collect(gateway: Gateway) -> List[Dict[str, Any]]:
        rows = []
        for provider in await gateway.list_providers():
            info = await gateway.describe_credential(provider.id)
            rows.append(
                {
                    "provider": provider,
                    "credential": info.masked if info else None,
                    "credential_source": info.source if info else None,
                }
            )
        return rows

    rows = _run(ctx, _collect, json_output=json_output)
    if json_output:
        _echo_json(
            [
                {
                    **row["provider"].model_dump(mode="json"),
                    "credential": row["credential"],
                    "credential_source": row["credential_source"],
                }
                for row in rows
            ]
        )
        return
    if not rows:
        console.print("No providers configured.")
        return
    table = Table(title="Providers")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Base URL")
    table.add_column("Auth")
    table.add_column("Key")
    table.add_column("Status")
    for row in rows:
        provider = row["provider"]
        table.add_row(
            escape(provider.id),
            escape(provider.display_name),
            escape(provider.base_url),
            f"{provider.auth_scheme.value} ({escape(provider.auth_name)})",
            row["credential"] or ("-" if not provider.requires_credential else "[red]missing[/red]"),
            _status_text(provider.status),
        )
    console.print(table)


@provider_group.command(name="verify")
@click.argument("provider_id", required=False)
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def provider_verify(ctx: click.Context, provider_id: Optional[str], json_output: bool) -> None:
    """Check one provider, or all of them, for reachability and authentication."""

    async def _verify(gateway: Gateway) -> List[Any]:
        if provider_id:
            return [await gateway.verify_provider(provider_id)]
        return list((await gateway.verify_all()).values())

    results = _run(ctx, _verify, json_output=json_output)
    if json_output:
        _echo_json([result.model_dump(mode="json") for result in results])
    elif not results:
        console.print("No providers configured.")
    else:
        for result in results:
            line = f"{escape(result.provider_id)}: {_status_text(result.status)} ({result.duration_ms:.0f} ms)"
            console.print(line)
            if result.detail:
                console.print(f"  [dim]{escape(result.detail)}[/dim]")
    exit_code = max((_STATUS_EXIT_CODES[result.status] for result in results), default=EXIT_OK)
    if exit_code != EXIT_OK:
        sys.exit(exit_code)


# ----------------------------------------------------------------------
# model
# ----------------------------------------------------------------------


@cli.group(name="model")
def model_group() -> None:
    """Browse provider model catalogs."""


@model_group.command(name="list")
@click.option("--provider", "provider_id", default=None, help="Only this provider's models.")
@click.option("--refresh", is_flag=True, help="Fetch fresh listings before printing.")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def model_list(ctx: click.Context, provider_id: Optional[str], refresh: bool, json_output: bool) -> None:
    """List catalog models."""

    async def _list(gateway: Gateway) -> Any:
        warnings: List[str] = []
        if refresh:
            if provider_id:
                results = {provider_id: await gateway.refresh_models(provider_id)}
            else:
                results = await gateway.refresh_all()
            warnings = [str(result.error) for result in results.values() if result.error is not None]
        return await gateway.list_models(provider_id), warnings

    models, warnings = _run(ctx, _list, json_output=json_output)
    if json_output:
        _echo_json({"models": [model.model_dump(mode="json") for model in models], "warnings": warnings})
        return
    for warning in warnings:
        err_console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
    if not models:
        console.print("No models cached. Run with --refresh to fetch listings.")
        return
    table = Table(title="Models")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Tier")
    table.add_column("Context", justify="right")
    table.add_column("Availability")
    table.add_column("Capabilities")
    for model in models:
        table.add_row(
            escape(model.provider_id),
            escape(model.id),
            model.tier.value,
            str(model.context_window_tokens) if model.context_window_tokens else "-",
            model.availability.value,
            escape(", ".join(model.capability_tags)),
        )
    console.print(table)


# ----------------------------------------------------------------------
# favorite
# ----------------------------------------------------------------------


@cli.group(name="favorite")
def favorite_group() -> None:
    """Manage favorite models."""


@favorite_group.command(name="add")
@click.argument("provider_id")
@click.argument("model_id")
@click.pass_context
def favorite_add(ctx: click.Context, provider_id: str, model_id: str) -> None:
    entry = _run(ctx, lambda gateway: gateway.add_favorite(provider_id, model_id))
    console.print(f"Favorite #{entry.rank}: {escape(provider_id)}/{escape(model_id)}")


@favorite_group.command(name="remove")
@click.argument("provider_id")
@click.argument("model_id")
@click.pass_context
def favorite_remove(ctx: click.Context, provider_id: str, model_id: str) -> None:
    removed = _run(ctx, lambda gateway: gateway.remove_favorite(provider_id, model_id))
    if not removed:
        err_console.print(f"'{escape(provider_id)}/{escape(model_id)}' is not a favorite.")
        sys.exit(EXIT_VALIDATION)
    console.print(f"Removed favorite {escape(provider_id)}/{escape(model_id)}.")


@favorite_group.command(name="list")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def favorite_list(ctx: click.Context, json_output: bool) -> None:
    entries = _run(ctx, lambda gateway: gateway.list_favorites(), json_output=json_output)
    if json_output:
        _echo_json([entry.model_dump(mode="json") for entry in entries])
        return
    if not entries:
        console.print("No favorites yet.")
        return
    for entry in entries:
        console.print(f"{entry.rank}. {escape(entry.provider_id)}/{escape(entry.model_id)}")


# ----------------------------------------------------------------------
# conversation
# ----------------------------------------------------------------------


@cli.group(name="conversation")
def conversation_group() -> None:
    """Start and continue conversations."""


@conversation_group.command(name="new")
@click.option("--provider", "provider_id", default=None, help="Target provider.")
@click.option("--model", "model_id", default=None, help="Target model.")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def conversation_new(
    ctx: click.Context, provider_id: Optional[str], model_id: Optional[str], json_output: bool
) -> None:
    """Start a conversation and print its id."""
    conversation = _run(
        ctx, lambda gateway: gateway.start_conversation(provider_id, model_id), json_output=json_output
    )
    if json_output:
        _echo_json(conversation.model_dump(mode="json"))
        return
    click.echo(conversation.id)


@conversation_group.command(name="send")
@click.argument("conversation_id")
@click.argument("content")
@click.option("--provider", "provider_id", default=None, help="Provider (must match the binding).")
@click.option("--model", "model_id", default=None, help="Model (must match the binding).")
@click.option("--timeout", type=float, default=None, help="Give up after this many seconds.")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def conversation_send(
    ctx: click.Context,
    conversation_id: str,
    content: str,
    provider_id: Optional[str],
    model_id: Optional[str],
    timeout: Optional[float],
    json_output: bool,
) -> None:
    """Send a message and print the reply."""
    reply = _run(
        ctx,
        lambda gateway: gateway.send_message(
            conversation_id, content, provider_id=provider_id, model_id=model_id, timeout=timeout
        ),
        json_output=json_output,
    )
    if json_output:
        _echo_json(reply.model_dump(mode="json"))
        return
    if reply.substituted_from:
        err_console.print(
            f"[yellow]Quota reached for {escape(reply.substituted_from)}; "
            f"answered by {escape(reply.model_id or '')}.[/yellow]"
        )
    console.print(escape(reply.content))


@conversation_group.command(name="close")
@click.argument("conversation_id")
@click.option("--reason", default="closed by user", help="Reason recorded on the conversation.")
@click.pass_context
def conversation_close(ctx: click.Context, conversation_id: str, reason: str) -> None:
    _run(ctx, lambda gateway: gateway.close_conversation(conversation_id, reason))
    console.print(f"Closed conversation {escape(conversation_id)}.")


@conversation_group.command(name="show")
@click.argument("conversation_id")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def conversation_show(ctx: click.Context, conversation_id: str, json_output: bool) -> None:
    """Print a conversation transcript."""
    conversation = _run(ctx, lambda gateway: gateway.get_conversation(conversation_id), json_output=json_output)
    if json_output:
        _echo_json(conversation.model_dump(mode="json"))
        return
    binding = (
        f"{conversation.bound_provider_id}/{conversation.bound_model_id}"
        if conversation.bound_provider_id
        else "unbound"
    )
    console.print(f"[bold]Conversation {escape(conversation.id)}[/bold] ({conversation.state.value}, {escape(binding)})")
    if conversation.closed_reason:
        console.print(f"[dim]Closed: {escape(conversation.closed_reason)}[/dim]")
    for message in conversation.messages:
        style = {"user": "cyan", "assistant": "green", "error": "red"}.get(message.role, "white")
        suffix = f" (fallback for {message.substituted_from})" if message.substituted_from else ""
        console.print(f"[{style}]{message.role}[/{style}]{escape(suffix)}: {escape(message.content)}")


@cli.command(name="version")
def version_cmd() -> None:
    """Show version information"""
    console.print(f"modelgate version {__version__}")


def main() -> None:
    """Main entry point."""
    os.environ.setdefault(CLIENT_SOURCE_ENV, "cli")
    try:
        cli()
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except (RuntimeError, ValueError, TypeError, OSError, click.ClickException) as e:
        err_console.print(f"[red]Fatal error: {escape(str(e))}[/red]")
        logger.warning(
            "[cli] Fatal error in main CLI entrypoint: %s: %s",
            type(e).__name__,
            e,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
