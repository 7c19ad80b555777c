"""Herald CLI — create the schema, run notifiers, enqueue, inspect.

Usage:
    herald init-db                                 # Create notification tables
    herald run --notifiers 4                       # Lease and deliver until Ctrl-C
    herald enqueue bob@example.com -m smtp \\
        -l workspace=dev --title "Workspace deleted"  # Enqueue one notification
    herald stats                                   # Message counts by status

Configuration comes from HERALD_* environment variables (see herald.config).
"""

from __future__ import annotations

import asyncio
import json
import sys
import uuid
from typing import Optional

import click

from herald import __version__
from herald.config import load_settings
from herald.db.engine import create_engine, create_schema, create_session_factory
from herald.notifications.exceptions import InvalidMessageError
from herald.notifications.manager import Manager
from herald.notifications.store import NotificationStore
from herald.notifications.types import TEMPLATE_WORKSPACE_DELETED, Template
from herald.runtime import build_wake_channel, configure_logging
from herald.runtime import run as run_notifiers

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler."""
    return asyncio.run(coro)


def _settings():
    """Load settings and configure logging from them."""
    settings = load_settings()
    configure_logging(settings.debug, json_logs=settings.environment != "development")
    return settings


def _parse_labels(pairs: tuple[str, ...]) -> dict[str, str]:
    labels: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--label")
        labels[key] = value
    return labels


def _status_color(status: str) -> str:
    colors = {
        "pending": "yellow",
        "leased": "cyan",
        "sent": "green",
        "temporary_failure": "magenta",
        "permanent_failure": "red",
    }
    return colors.get(status, "white")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="herald")
def main():
    """Herald — durable notification dispatch."""


# ---------------------------------------------------------------------------
# herald init-db
# ---------------------------------------------------------------------------


@main.command("init-db")
def init_db():
    """Create the notification tables (no-op if they exist)."""
    settings = _settings()
    _run(_init_db_impl(settings.database_url))
    click.secho("Schema ready", fg="green")


async def _init_db_impl(database_url: str):
    engine = create_engine(database_url)
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# herald run
# ---------------------------------------------------------------------------


@main.command()
@click.option("--notifiers", "-n", type=int, help="Notifier count (default: HERALD_NOTIFIER_COUNT)")
def run(notifiers: Optional[int]):
    """Run notifiers until interrupted."""
    settings = _settings()
    _run(run_notifiers(settings, notifiers))


# ---------------------------------------------------------------------------
# herald enqueue
# ---------------------------------------------------------------------------


@main.command()
@click.argument("recipient")
@click.option("--method", "-m", default="smtp", show_default=True, help="Delivery method")
@click.option("--template-id", help="Template UUID (default: workspace deleted)")
@click.option("--template-name", help="Template display name")
@click.option("--label", "-l", "label_pairs", multiple=True, help="KEY=VALUE, repeatable")
@click.option("--title", default="", help="Notification title")
def enqueue(recipient: str, method: str, template_id: Optional[str],
            template_name: Optional[str], label_pairs: tuple[str, ...], title: str):
    """Enqueue a notification for RECIPIENT and print its message ID."""
    labels = _parse_labels(label_pairs)
    settings = _settings()
    template = TEMPLATE_WORKSPACE_DELETED
    if template_id or template_name:
        try:
            tid = uuid.UUID(template_id) if template_id else uuid.uuid4()
        except ValueError:
            raise click.BadParameter(f"not a UUID: {template_id}", param_hint="--template-id")
        template = Template(id=tid, name=template_name or str(tid))

    try:
        msg_id = _run(_enqueue_impl(settings, recipient, template, method, labels, title))
    except InvalidMessageError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)
    click.echo(str(msg_id))


async def _enqueue_impl(settings, recipient: str, template: Template, method: str,
                        labels: dict[str, str], title: str) -> uuid.UUID:
    engine = create_engine(settings.database_url)
    wake = build_wake_channel(settings)
    try:
        store = NotificationStore(
            create_session_factory(engine), max_attempts=settings.max_send_attempts
        )
        manager = Manager(settings, store, wake)
        return await manager.enqueue(recipient, template, method, labels, title)
    finally:
        await wake.close()
        await engine.dispose()


# ---------------------------------------------------------------------------
# herald stats
# ---------------------------------------------------------------------------


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def stats(as_json: bool):
    """Show message counts by status."""
    settings = _settings()
    counts = _run(_stats_impl(settings.database_url, settings.max_send_attempts))
    if as_json:
        click.echo(json.dumps(counts, indent=2))
        return
    for status, count in counts.items():
        click.echo(f"{click.style(status.ljust(20), fg=_status_color(status))}{count}")


async def _stats_impl(database_url: str, max_attempts: int) -> dict[str, int]:
    engine = create_engine(database_url)
    try:
        store = NotificationStore(create_session_factory(engine), max_attempts=max_attempts)
        return await store.count_by_status()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    main()
