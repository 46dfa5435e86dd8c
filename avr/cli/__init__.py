# avr/cli/__init__.py
import click
from flask import current_app
from flask.cli import AppGroup

from avr.extensions import db
from avr.models import Donation
from avr.services.errors import PaymentError

payments_cli = AppGroup("payments", help="Payment gateway maintenance.")


@payments_cli.command("gateway-mode")
def gateway_mode():
    """Show which gateway client this process would use."""
    gw = current_app.extensions["gateway"]
    click.echo(f"mode={gw.mode} currency={gw.currency} env={current_app.config.get('ENV')}")


@payments_cli.command("sync")
@click.argument("donation_id")
def sync_donation(donation_id):
    """Pull subscription status from the gateway onto DONATION_ID."""
    donation = db.session.get(Donation, donation_id)
    if donation is None:
        raise click.ClickException(f"Donation {donation_id} not found")

    try:
        status = current_app.extensions["reconciler"].refresh_donation(donation)
    except PaymentError as e:
        raise click.ClickException(f"Sync failed: {e}") from e

    nbd = status.next_billing_date.date().isoformat() if status.next_billing_date else "-"
    click.secho(
        f"subscription={status.subscription_id} status={status.status} next_billing={nbd}",
        fg="green",
    )
