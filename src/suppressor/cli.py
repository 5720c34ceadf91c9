"""Maintenance alert suppressor CLI (mas).

Operational commands for replaying deliveries and inspecting state.

Usage:
    mas handle event.json            # Dispatch a saved delivery
    mas handle event.json --dry-run  # Show what would change
    mas validate event.json          # Parse and normalise a delivery
    mas resolve MAINTENANCE_ID -s SUB
    mas rule-name vm-web-01          # Deterministic rule name
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .errors import DeliveryError, EventLoadError, EventParseError
from .event_loader import load_payload
from .main import build_router, setup_logging
from .resolver import AffectedResourceResolver
from .router import parse_events
from .security import SecretlessViolationError, get_managed_identity_credential
from .suppression import rule_name

VERSION = "0.1.0"


def load_config(dry_run: bool = False) -> Config:
    """Load configuration from the environment, as click errors."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    if dry_run:
        config = dataclasses.replace(config, dry_run=True)
    return config


def read_events_file(path: Path) -> object:
    try:
        return load_payload(path)
    except EventLoadError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version=VERSION, prog_name="mas")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Maintenance alert suppressor (mas).

    Silences Azure Monitor alerts for resources under maintenance.
    """
    setup_logging(logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@click.argument("event_file", type=click.Path(path_type=Path))
@click.option("--dry-run", is_flag=True, help="Log intended rule changes without applying")
def handle(event_file: Path, dry_run: bool) -> None:
    """Dispatch the delivery stored in EVENT_FILE."""
    config = load_config(dry_run=dry_run)
    payload = read_events_file(event_file)

    try:
        router = build_router(config)
    except SecretlessViolationError as e:
        raise click.ClickException(str(e)) from e

    try:
        outcomes = asyncio.run(router.dispatch(payload))
    except EventParseError as e:
        raise click.ClickException(str(e)) from e
    except DeliveryError as e:
        click.echo(json.dumps([o.to_dict() for o in e.outcomes], indent=2))
        raise click.ClickException(str(e)) from e

    click.echo(json.dumps([o.to_dict() for o in outcomes], indent=2))


@cli.command()
@click.argument("event_file", type=click.Path(path_type=Path))
def validate(event_file: Path) -> None:
    """Parse EVENT_FILE and print the normalised events."""
    payload = read_events_file(event_file)
    try:
        events = parse_events(payload)
    except EventParseError as e:
        raise click.ClickException(str(e)) from e

    click.echo(
        json.dumps(
            [
                {
                    "kind": event.kind.value,
                    "maintenance_id": event.maintenance_id,
                    "subscription_scope": list(event.subscription_scope),
                    "correlation_id": event.correlation_id,
                }
                for event in events
            ],
            indent=2,
        )
    )
    click.secho(f"{len(events)} event(s) valid", fg="green", err=True)


@cli.command()
@click.argument("maintenance_id")
@click.option(
    "--subscription",
    "-s",
    "subscriptions",
    multiple=True,
    required=True,
    help="Subscription to search (repeatable)",
)
def resolve(maintenance_id: str, subscriptions: tuple[str, ...]) -> None:
    """List resources currently assigned to MAINTENANCE_ID."""
    config = load_config()
    try:
        credential = get_managed_identity_credential(config.managed_identity_client_id)
    except SecretlessViolationError as e:
        raise click.ClickException(str(e)) from e

    resolver = AffectedResourceResolver(credential, config)
    try:
        result = asyncio.run(resolver.resolve(maintenance_id, subscriptions))
    except ValueError as e:
        raise click.ClickException(f"Invalid maintenance ID: {e}") from e

    for resource in result.resources:
        click.echo(f"{resource.resource_id}\t{rule_name(resource.name)}")
    for error in result.scope_errors:
        click.secho(str(error), fg="red", err=True)

    if result.all_scopes_failed:
        raise click.ClickException("Resolution failed in every subscription")


@cli.command("rule-name")
@click.argument("resource_name")
def rule_name_command(resource_name: str) -> None:
    """Print the suppression rule name for RESOURCE_NAME."""
    click.echo(rule_name(resource_name))


if __name__ == "__main__":
    cli()
