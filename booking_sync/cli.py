"""CLI tools for booking sync operations."""

import json
from uuid import UUID

import click

from booking_sync.core.async_utils import run_async
from booking_sync.core.exceptions import NotFoundError
from booking_sync.core.structured_logging import configure_logging
from booking_sync.db.session import SessionLocal
from booking_sync.services import audit_service, reconcile_service, sync_service
from booking_sync.services.ehr_client import build_ehr_client


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level: str | None):
    """Booking sync CLI tools."""
    configure_logging(log_level)


@cli.command()
@click.option("--appointment-id", type=click.UUID, default=None, help="Reconcile one appointment")
@click.option("--limit", type=int, default=None, help="Max appointments (default: RECONCILE_BATCH_SIZE)")
@click.option("--include-errors", is_flag=True, help="Also retry appointments in error status")
def reconcile(appointment_id: UUID | None, limit: int | None, include_errors: bool):
    """
    Re-drive appointments whose external sync did not finish.

    Example:
        booking-sync reconcile --limit 50
    """
    with SessionLocal() as db:
        try:
            summary = run_async(
                reconcile_service.reconcile_pending(
                    db,
                    build_ehr_client(),
                    limit=limit,
                    include_errors=include_errors,
                    appointment_id=appointment_id,
                )
            )
        except NotFoundError as e:
            raise click.ClickException(e.message)
    for key, value in summary.as_dict().items():
        click.echo(f"{key}: {value}")


@cli.command("sync-appointment")
@click.argument("appointment_id", type=click.UUID)
def sync_appointment(appointment_id: UUID):
    """Run external sync for one appointment now."""
    with SessionLocal() as db:
        try:
            outcome = run_async(
                sync_service.sync_appointment(db, build_ehr_client(), appointment_id)
            )
        except NotFoundError as e:
            raise click.ClickException(e.message)
    click.echo(f"status: {outcome.status}")
    click.echo(f"external_client_id: {outcome.external_client_id or '-'}")
    click.echo(f"external_appointment_id: {outcome.external_appointment_id or '-'}")
    click.echo(f"enrichment_status: {outcome.enrichment_status}")
    if outcome.error:
        click.echo(f"error: {outcome.error}")


@cli.command()
@click.argument("appointment_id", type=click.UUID)
@click.option("--limit", type=int, default=100)
def audit(appointment_id: UUID, limit: int):
    """Print the (redacted) audit trail for an appointment."""
    with SessionLocal() as db:
        entries = audit_service.list_entries(db, appointment_id=appointment_id, limit=limit)
        if not entries:
            click.echo("No audit entries")
            return
        for entry in entries:
            click.echo(
                f"{entry.created_at.isoformat()} {entry.action} {entry.status}"
                f" reason={entry.reason or '-'} attempts={entry.attempts}"
                f" http={entry.http_status or '-'}"
            )
            if entry.redacted_payload:
                click.echo(f"  payload: {json.dumps(entry.redacted_payload, sort_keys=True)}")
            if entry.redacted_response:
                click.echo(f"  response: {json.dumps(entry.redacted_response, sort_keys=True)}")
            if entry.error_message:
                click.echo(f"  error: {entry.error_message}")


@cli.command("create-tables")
def create_tables():
    """Create all tables directly (local development; use alembic elsewhere)."""
    from booking_sync.db import models  # noqa: F401
    from booking_sync.db.base import Base
    from booking_sync.db.session import engine

    Base.metadata.create_all(bind=engine)
    click.echo("✓ Tables created")


if __name__ == "__main__":
    cli()
