import typer

from backend.app.core.config import settings
from backend.app.core.database import Database
from backend.app.core.logging import setup_logging
from backend.app.services.credits import CreditsLedger
from backend.app.services.subscriptions import (
    SubscriptionStateMachine,
    SubscriptionStore,
    refresh_subscription_credits,
)
from backend.app.services.webhook_events import WebhookDeduplicator

app = typer.Typer(help="Maintenance jobs for the billing database (run from cron or a scheduler).")


def _open_database(database_url: str | None) -> Database:
    setup_logging()
    return Database(database_url)


@app.command("sweep-lapsed")
def sweep_lapsed(
    database_url: str = typer.Option(None, "--database-url", help="Overrides MARGIN_DATABASE_URL."),
    now: int = typer.Option(None, "--now", help="Unix timestamp to evaluate against (default: current time)."),
) -> None:
    """Downgrade subscribers whose paid period has ended."""
    db = _open_database(database_url)
    try:
        ledger = CreditsLedger(db)
        machine = SubscriptionStateMachine(
            SubscriptionStore(db, ledger),
            credits_per_month=settings.pro_credits_per_month,
        )
        settled = machine.sweep_lapsed(now)
    finally:
        db.dispose()
    typer.echo(f"Settled {settled} lapsed subscription(s)")


@app.command("refresh-credits")
def refresh_credits(
    database_url: str = typer.Option(None, "--database-url", help="Overrides MARGIN_DATABASE_URL."),
    now: int = typer.Option(None, "--now", help="Unix timestamp to evaluate against (default: current time)."),
) -> None:
    """Grant the monthly allowance to every subscriber that is due."""
    db = _open_database(database_url)
    try:
        ledger = CreditsLedger(db)
        granted = refresh_subscription_credits(ledger, SubscriptionStore(db, ledger), now)
    finally:
        db.dispose()
    typer.echo(f"Granted monthly credits to {granted} user(s)")


@app.command("prune-webhooks")
def prune_webhooks(
    database_url: str = typer.Option(None, "--database-url", help="Overrides MARGIN_DATABASE_URL."),
    retention_days: int = typer.Option(
        None,
        "--retention-days",
        min=1,
        help="Keep processed webhook ids this many days (default from settings).",
    ),
) -> None:
    """Delete processed-webhook ids that are far past the replay window."""
    days = retention_days or settings.processed_webhook_retention_days
    db = _open_database(database_url)
    try:
        removed = WebhookDeduplicator(db).prune_days(days)
    finally:
        db.dispose()
    typer.echo(f"Pruned {removed} processed webhook id(s) older than {days} day(s)")


if __name__ == "__main__":
    app()
