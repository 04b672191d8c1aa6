"""
Command-line interface for the alerting engine.

Usage:
    alerting init-db                                   # Create alerting tables
    alerting trigger TRESORERIE_SEUIL -c '{"balance": 5000}'
    alerting event low_treasury -c '{"balance": 5000}'
    alerting test-send TRESORERIE_SEUIL --to email:ops@example.com
    alerting history --alert <id> --failed             # Inspect the audit trail
    alerting render-template WELCOME -v nom=Awa        # Render a stored template
    alerting health                                    # Check database and channels
"""

import asyncio
import json
import os
import sys
from typing import Any

import click

from src.config.settings import get_settings
from src.observability.logging import setup_logging


def _parse_context(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise click.BadParameter(f"invalid JSON: {e}") from e
    if not isinstance(value, dict):
        raise click.BadParameter("context must be a JSON object")
    return value


def _parse_vars(pairs: tuple[str, ...]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}")
        variables[key] = value
    return variables


def _parse_destinations(targets: tuple[str, ...]) -> list[Any] | None:
    from src.alerting.schemas import Destination

    if not targets:
        return None
    destinations = []
    for target in targets:
        channel, sep, address = target.partition(":")
        if not sep or not address:
            raise click.BadParameter(f"expected channel:address, got {target!r}")
        destinations.append(Destination(channel=channel, address=address))
    return destinations


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Emeraude alerting - rule evaluation and notification dispatch."""
    if debug:
        os.environ["LOG_LEVEL"] = "DEBUG"
        get_settings.cache_clear()

    setup_logging()


@main.command("init-db")
def init_db() -> None:
    """Initialize the alerting database schema."""
    from src.alerting.repository import AlertRepository
    from src.storage.database import Database

    async def run():
        db = Database()
        await db.connect()
        try:
            await AlertRepository(db).create_tables()
            click.echo("Database initialized successfully")
        finally:
            await db.close()

    asyncio.run(run())


@main.command()
@click.argument("code")
@click.option("--context", "-c", "raw_context", default=None, help="Alert context as a JSON object")
def trigger(code: str, raw_context: str | None) -> None:
    """Evaluate an alert's rules and deliver it if they fire."""
    from src.alerting.service import AlertEngine
    from src.observability.logging import bind_trigger_context, clear_context
    from src.storage.database import Database

    context = _parse_context(raw_context)

    async def run():
        db = Database()
        await db.connect()
        trigger_id = bind_trigger_context(code)
        try:
            engine = AlertEngine.from_database(db)
            await engine.trigger_by_code(code, context)
            click.echo(f"Trigger {trigger_id} for {code} completed")
        finally:
            clear_context()
            await db.close()

    asyncio.run(run())


@main.command()
@click.argument("event")
@click.option("--context", "-c", "raw_context", default=None, help="Alert context as a JSON object")
def event(event: str, raw_context: str | None) -> None:
    """Fire a business event (e.g. low_treasury)."""
    from src.alerting.events import AlertEvent, dispatch_alert_event
    from src.alerting.service import AlertEngine
    from src.storage.database import Database

    valid = [e.value for e in AlertEvent]
    if event not in valid:
        raise click.BadParameter(f"unknown event {event!r}, expected one of {valid}")
    context = _parse_context(raw_context)

    async def run() -> bool:
        db = Database()
        await db.connect()
        try:
            engine = AlertEngine.from_database(db)
            return await dispatch_alert_event(engine, event, context)
        finally:
            await db.close()

    ok = asyncio.run(run())
    if ok:
        click.echo(click.style(f"Event {event} dispatched", fg="green"))
    else:
        click.echo(click.style(f"Event {event} dispatch failed (see logs)", fg="red"))
        sys.exit(1)


@main.command("test-send")
@click.argument("alert_ref")
@click.option("--to", "targets", multiple=True, help="Destination as channel:address (repeatable)")
@click.option("--var", "-v", "pairs", multiple=True, help="Template variable key=value (repeatable)")
def test_send(alert_ref: str, targets: tuple[str, ...], pairs: tuple[str, ...]) -> None:
    """Send a [TEST] notification for an alert id or code."""
    from src.alerting.errors import NotFoundError
    from src.alerting.repository import NotificationRepository
    from src.alerting.service import AlertEngine
    from src.storage.database import Database

    destinations = _parse_destinations(targets)
    variables = _parse_vars(pairs)

    async def run() -> int:
        db = Database()
        await db.connect()
        try:
            engine = AlertEngine.from_database(db)
            try:
                alert = await engine.send_test(alert_ref, destinations, variables)
            except NotFoundError as e:
                click.echo(click.style(str(e), fg="red"))
                return 1

            records = await NotificationRepository(db).get_recent(
                alert_id=alert.alert_id, limit=max(len(destinations or []), 10),
            )
            click.echo(f"\nTest send for {alert.code}:")
            for r in records:
                status = click.style("sent", fg="green") if r.delivered else click.style("failed", fg="red")
                suffix = f" ({r.error})" if r.error else ""
                click.echo(f"  {r.channel}:{r.address} {status}{suffix}")
            return 0
        finally:
            await db.close()

    sys.exit(asyncio.run(run()))


@main.command()
@click.option("--alert", "alert_id", default=None, help="Filter by alert id")
@click.option("--channel", default=None, help="Filter by channel")
@click.option("--contract", "contract_id", default=None, help="Filter by contract id")
@click.option("--failed", is_flag=True, help="Only failed deliveries")
@click.option("--limit", default=20, show_default=True, help="Maximum records")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def history(
    alert_id: str | None,
    channel: str | None,
    contract_id: str | None,
    failed: bool,
    limit: int,
    as_json: bool,
) -> None:
    """Show recent delivery records."""
    from src.alerting.repository import NotificationRepository
    from src.storage.database import Database

    async def run():
        db = Database()
        await db.connect()
        try:
            records = await NotificationRepository(db).get_recent(
                alert_id=alert_id,
                channel=channel,
                contract_id=contract_id,
                delivered=False if failed else None,
                limit=limit,
            )
        finally:
            await db.close()

        if as_json:
            click.echo(json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False))
            return

        if not records:
            click.echo("No delivery records found")
            return

        click.echo(f"\n{'Created':<20} {'Channel':<8} {'Status':<7} Address")
        click.echo("-" * 72)
        for r in records:
            status = "sent" if r.delivered else "failed"
            color = "green" if r.delivered else "red"
            click.echo(
                f"{r.created_at:%Y-%m-%d %H:%M:%S}  {r.channel:<8} "
                + click.style(f"{status:<7}", fg=color)
                + f" {r.address}"
            )
            if r.error:
                click.echo(f"{'':<38}{r.error}")

    asyncio.run(run())


@main.command("render-template")
@click.argument("code")
@click.option("--var", "-v", "pairs", multiple=True, help="Template variable key=value (repeatable)")
def render_template(code: str, pairs: tuple[str, ...]) -> None:
    """Render a stored template with the given variables."""
    from src.alerting.errors import NotFoundError
    from src.alerting.repository import AlertRepository
    from src.alerting.templates import TemplateRenderer
    from src.storage.database import Database

    variables = _parse_vars(pairs)

    async def run() -> int:
        db = Database()
        await db.connect()
        try:
            renderer = TemplateRenderer(AlertRepository(db))
            try:
                subject, body = await renderer.render_from_code(code, variables)
            except NotFoundError as e:
                click.echo(click.style(str(e), fg="red"))
                return 1
        finally:
            await db.close()

        if subject is not None:
            click.echo(f"Subject: {subject}\n")
        click.echo(body)
        return 0

    sys.exit(asyncio.run(run()))


@main.command()
def health() -> None:
    """Check the database and the configuration of each channel."""
    from src.alerting.config import ChannelEnvSettings
    from src.alerting.repository import AlertRepository
    from src.alerting.schemas import Channel
    from src.observability.logging import get_logger
    from src.storage.database import Database

    logger = get_logger(__name__)

    async def check():
        results: dict[str, bool] = {}
        env = ChannelEnvSettings()
        stored: dict[Channel, Any] = {}

        db = Database()
        try:
            await db.connect()
            results["postgres"] = await db.health_check()
            repo = AlertRepository(db)
            for kind in Channel:
                stored[kind] = await repo.get_channel_config(kind)
        except Exception as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))
        finally:
            await db.close()

        env_flags = {
            Channel.EMAIL: env.email_configured,
            Channel.SMS: env.sms_configured,
            Channel.PUSH: env.push_configured,
            Channel.WEBHOOK: True,
        }
        for kind in Channel:
            row = stored.get(kind)
            if row is not None:
                results[f"{kind.value}_configured"] = bool(row.enabled)
            else:
                results[f"{kind.value}_configured"] = env_flags[kind]

        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)
        for name, status in results.items():
            icon = "✓" if status else "✗"
            color = "green" if status else "red"
            click.echo(click.style(f"  {icon} {name}: {status}", fg=color))
        click.echo("-" * 40)

        if results["postgres"]:
            click.echo(click.style("Database healthy!", fg="green"))
            sys.exit(0)
        click.echo(click.style("Database unhealthy!", fg="red"))
        sys.exit(1)

    asyncio.run(check())


if __name__ == "__main__":
    main()
