"""CLI entry point for newsrelay."""
import json
import logging
import signal
import threading

import click

from newsrelay.config import get_db_path, get_log_dir, load_config
from newsrelay.database import Database, format_timestamp
from newsrelay.errors import ConfigError, DuplicateFeed, NewsRelayError
from newsrelay.models import SummaryLevel


def get_config() -> dict:
    """Load configuration."""
    return load_config()


def get_db() -> Database:
    """Get database instance."""
    return Database(get_db_path(get_config()))


def _setup_logging(config: dict, verbose: bool) -> None:
    from newsrelay.logging_config import setup_logging

    setup_logging(get_log_dir(config), config["logging"]["retention_days"], verbose)


def _build(config: dict, dry_run: bool, **overrides):
    from newsrelay.jobs import build_runtime

    try:
        return build_runtime(config, db=get_db(), dry_run=dry_run, **overrides)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@click.group()
def cli():
    """NewsRelay - ingest feeds and deliver daily digests to subscribers."""
    pass


# === Service commands ===


@cli.command()
@click.option("--dry-run", is_flag=True, help="Log deliveries instead of sending them")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output on the console")
def serve(dry_run: bool, verbose: bool):
    """Run the scheduler until interrupted."""
    config = get_config()
    _setup_logging(config, verbose)
    logger = logging.getLogger(__name__)

    runtime = _build(config, dry_run)
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    runtime.orchestrator.start()
    logger.info("newsrelay scheduler started")
    try:
        while not stop.wait(timeout=1):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Shutting down, waiting for in-flight jobs")
        runtime.shutdown()
        logger.info("newsrelay stopped")


@cli.command()
@click.argument("job", type=click.Choice(["ingestion", "delivery", "retention"]))
@click.option("--dry-run", is_flag=True, help="Log deliveries instead of sending them")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output on the console")
def trigger(job: str, dry_run: bool, verbose: bool):
    """Run one job immediately and print its result."""
    from newsrelay.jobs import DELIVERY_JOB
    from newsrelay.transport import LoggingTransport

    config = get_config()
    _setup_logging(config, verbose)

    overrides = {}
    if job != DELIVERY_JOB:
        # Only the delivery pass talks to the transport
        overrides["transport"] = LoggingTransport()
    runtime = _build(config, dry_run, **overrides)

    try:
        result = runtime.orchestrator.trigger(job)
    except NewsRelayError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        runtime.shutdown()

    for key, value in result.to_dict().items():
        click.echo(f"{key}: {value}")


@cli.command()
def status():
    """Show store counts and the last run of each job."""
    db = get_db()

    stats = db.get_stats()
    click.echo("Store")
    for key, value in stats.items():
        click.echo(f"  {key}: {value}")

    click.echo("\nJobs")
    for name in ("ingestion", "delivery", "retention"):
        run = db.get_last_run(name)
        if not run:
            click.echo(f"  {name}: never run")
            continue
        line = f"  {name}: {run['status']} at {format_timestamp(run['started_at'])}"
        if run["error"]:
            line += f" ({run['error']})"
        click.echo(line)
        if run["result"]:
            summary = ", ".join(f"{k}={v}" for k, v in run["result"].items() if not isinstance(v, dict))
            if summary:
                click.echo(f"    {summary}")


# === Feed commands ===


@cli.group()
def feed():
    """Manage feeds."""
    pass


@feed.command("add")
@click.argument("name")
@click.argument("url")
def feed_add(name: str, url: str):
    """Register a feed."""
    db = get_db()
    try:
        created = db.upsert_feed(name, url)
    except DuplicateFeed as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Added feed {created.id}: {created.name} ({created.url})")


@feed.command("list")
def feed_list():
    """List all feeds."""
    db = get_db()
    feeds = db.list_feeds()
    if not feeds:
        click.echo("No feeds configured")
        return
    for f in feeds:
        state = "active" if f.active else "inactive"
        fetched = f.last_fetched_at.strftime("%Y-%m-%d %H:%M") if f.last_fetched_at else "never"
        click.echo(f"{f.id:>4}  {f.name}  {f.url}  [{state}, fetched {fetched}]")


@feed.command("deactivate")
@click.argument("feed_id", type=int)
def feed_deactivate(feed_id: int):
    """Stop ingesting a feed."""
    db = get_db()
    if not db.deactivate_feed(feed_id):
        click.echo(f"Error: no feed with id {feed_id}", err=True)
        raise SystemExit(1)
    click.echo(f"Deactivated feed {feed_id}")


# === Recipient commands ===


@cli.group()
def recipient():
    """Manage recipients."""
    pass


@recipient.command("add")
@click.argument("external_id")
@click.option("--name", default=None, help="Display name")
def recipient_add(external_id: str, name: str | None):
    """Register a recipient."""
    db = get_db()
    created_recipient, created = db.get_or_create_recipient(external_id, name)
    verb = "Added" if created else "Already registered:"
    click.echo(f"{verb} recipient {created_recipient.id} ({created_recipient.external_id})")


@recipient.command("list")
def recipient_list():
    """List all recipients."""
    db = get_db()
    recipients = db.list_recipients()
    if not recipients:
        click.echo("No recipients")
        return
    for r in recipients:
        state = "active" if r.active else "inactive"
        click.echo(
            f"{r.id:>4}  {r.external_id}  {r.display_name or '-'}  "
            f"{r.delivery_time} {r.timezone}  {r.summary_level}  [{state}]"
        )


@recipient.command("set")
@click.argument("external_id")
@click.option("--level", type=click.Choice(SummaryLevel.ALL), default=None, help="Summary detail level")
@click.option("--time", "delivery_time", default=None, help="Delivery time, HH:MM")
@click.option("--tz", "timezone_name", default=None, help="IANA time zone")
@click.option("--active/--inactive", default=None, help="Opt in or out of deliveries")
def recipient_set(
    external_id: str,
    level: str | None,
    delivery_time: str | None,
    timezone_name: str | None,
    active: bool | None,
):
    """Change a recipient's delivery settings."""
    db = get_db()
    try:
        updated = db.update_recipient_settings(
            external_id,
            summary_level=level,
            delivery_time=delivery_time,
            timezone_name=timezone_name,
            active=active,
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    if not updated:
        click.echo(f"Error: no recipient {external_id}", err=True)
        raise SystemExit(1)
    click.echo(f"Updated {external_id}")


@cli.command()
@click.argument("external_id")
@click.argument("feed_id", type=int)
@click.option("--remove", is_flag=True, help="Unsubscribe instead")
def subscribe(external_id: str, feed_id: int, remove: bool):
    """Subscribe a recipient to a feed."""
    db = get_db()
    target = db.get_recipient_by_external_id(external_id)
    if target is None:
        click.echo(f"Error: no recipient {external_id}", err=True)
        raise SystemExit(1)
    if remove:
        db.unsubscribe(target.id, feed_id)
        click.echo(f"Unsubscribed {external_id} from feed {feed_id}")
        return
    try:
        db.subscribe(target.id, feed_id)
    except NewsRelayError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Subscribed {external_id} to feed {feed_id}")


@cli.command()
@click.argument("payload", type=click.File("r"))
@click.option("--send", is_flag=True, help="Push replies through the configured transport")
def event(payload, send: bool):
    """Apply a webhook payload (a file, or - for stdin) and print the replies.

    Accepts either a single event object or a webhook body with an "events" list.
    """
    from newsrelay.events import handle_event, parse_event
    from newsrelay.jobs import build_transport

    try:
        body = json.load(payload)
    except json.JSONDecodeError as e:
        click.echo(f"Error: invalid JSON payload: {e}", err=True)
        raise SystemExit(1)
    raw_events = body.get("events", [body]) if isinstance(body, dict) else body

    transport = None
    if send:
        try:
            transport = build_transport(get_config())
        except ConfigError as e:
            click.echo(f"Error: {e}", err=True)
            raise SystemExit(1)

    db = get_db()
    for raw in raw_events:
        parsed = parse_event(raw)
        if parsed is None:
            click.echo(f"Ignored {raw.get('type', 'unknown')} event")
            continue
        replies = handle_event(parsed, db)
        click.echo(f"{type(parsed).__name__} from {parsed.external_id}: {len(replies)} replies")
        for reply in replies:
            click.echo(reply.text)
        if transport and replies:
            try:
                transport.send_batch(parsed.external_id, replies)
            except NewsRelayError as e:
                click.echo(f"Error: {e}", err=True)
                raise SystemExit(1)


# === Observability ===


@cli.command()
@click.option("--limit", "-n", type=int, default=20, help="Number of items to show")
def items(limit: int):
    """Show recently published enriched items."""
    db = get_db()
    recent = db.list_recent_items(limit)
    if not recent:
        click.echo("No enriched items")
        return
    for item in recent:
        published = item.published_at.strftime("%Y-%m-%d %H:%M")
        click.echo(f"{item.id:>5}  {published}  [{item.feed_name or '-'}] {item.title}")


@cli.command()
@click.option("--recipient", "external_id", default=None, help="Only this recipient")
def deliveries(external_id: str | None):
    """Show the delivery ledger."""
    db = get_db()
    recipient_id = None
    if external_id:
        target = db.get_recipient_by_external_id(external_id)
        if target is None:
            click.echo(f"Error: no recipient {external_id}", err=True)
            raise SystemExit(1)
        recipient_id = target.id

    records = db.list_delivery_records(recipient_id)
    if not records:
        click.echo("No deliveries recorded")
        return
    for record in records:
        delivered = record.delivered_at.strftime("%Y-%m-%d %H:%M")
        line = f"{delivered}  recipient={record.recipient_id} item={record.item_id} {record.status}"
        if record.error_detail:
            line += f" ({record.error_detail[:80]})"
        click.echo(line)


if __name__ == "__main__":
    cli()
