"""Keyway CLI - inspect provider configuration and settings."""

from __future__ import annotations

import json
import logging
import sys

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

console = Console()


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
    )


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    envvar="KEYWAY_LOG_LEVEL",
    help="Log level",
)
def main(log_level: str):
    """Keyway - OAuth1/OAuth2/OIDC sign-in for aiohttp applications."""
    configure_logging(log_level)


@main.command()
@click.option(
    "--config",
    "-c",
    "config_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Provider config file (YAML or TOML)",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def providers(config_file: str, json_output: bool):
    """List the providers a config file registers.

    Every entry is built, so unknown types or missing endpoints are
    reported here rather than at application start.

    Examples:

        keyway providers -c providers.yaml

        keyway providers -c providers.toml --json
    """
    from keyway.config import get_settings, load_providers
    from keyway.providers import build_registry

    try:
        configs = load_providers(config_file)
        registry = build_registry(configs, timeout=get_settings().provider_timeout)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Invalid provider config:[/red] {escape(str(e))}")
        sys.exit(1)

    types = {config.name: config.type for config in configs}

    if json_output:
        click.echo(json.dumps([{"name": name, "type": types[name]} for name in registry.names()], indent=2))
        return

    if not len(registry):
        console.print("[dim]No providers configured[/dim]")
        return

    table = Table(title="Providers")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Refresh", justify="center")
    for provider in registry:
        table.add_row(
            provider.name,
            types[provider.name],
            "yes" if provider.refresh_token_available() else "no",
        )
    console.print(table)


@main.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def settings(json_output: bool):
    """Show effective settings (environment and .env applied)."""
    from keyway.config import KeywaySettings

    try:
        data = KeywaySettings().to_display_dict()
    except ValidationError as e:
        console.print(f"[red]Invalid settings:[/red] {escape(str(e))}")
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(data, indent=2))
        return

    table = Table(title="Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


@main.command()
@click.option("--bytes", "nbytes", type=click.IntRange(min=16), default=64, help="Random bytes")
def state(nbytes: int):
    """Print a fresh CSRF state token."""
    from keyway.state import generate_state

    click.echo(generate_state(nbytes))


@main.command()
def version():
    """Show version information."""
    from keyway import __version__

    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


if __name__ == "__main__":
    main()
