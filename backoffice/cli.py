import json

import click
from flask.cli import with_appcontext

from backoffice.extensions import db
from backoffice.models import Org, OrgBillingState, StripeEventRecord
from backoffice.services import audit, ledger


def _fmt(dt):
    return dt.isoformat() if dt else "-"


@click.group()
def webhooks():
    """Stripe webhook ledger inspection."""

@webhooks.command("pending")
@click.option("--limit", type=int, default=50, show_default=True)
@with_appcontext
def webhooks_pending(limit):
    """Events received but not finished (waiting for Stripe to redeliver)."""
    rows = ledger.pending_records(limit=limit)
    if not rows:
        click.echo("No pending events.")
        return
    for r in rows:
        click.echo(
            f"{r.stripe_event_id}  type={r.type} org_id={r.org_id or '-'} "
            f"attempts={r.attempts} claimed_at={_fmt(r.claimed_at)} notes={r.notes or '-'}"
        )

@webhooks.command("show")
@click.argument("event_id")
@with_appcontext
def webhooks_show(event_id):
    rec = db.session.query(StripeEventRecord).filter_by(stripe_event_id=event_id).one_or_none()
    if rec is None:
        raise click.ClickException(f"Event {event_id} not found")

    click.echo(f"event:        {rec.stripe_event_id}")
    click.echo(f"type:         {rec.type}")
    click.echo(f"org_id:       {rec.org_id or '-'}")
    click.echo(f"attempts:     {rec.attempts}")
    click.echo(f"processed_at: {_fmt(rec.processed_at)}")
    click.echo(f"notes:        {rec.notes or '-'}")
    entries = audit.entries_for_event(event_id)
    click.echo(f"audit entries: {len(entries)}")
    for e in entries:
        click.echo(f"  [{e.level}] {e.action} {json.dumps(e.details, sort_keys=True, default=str)}")

@click.group()
def billing():
    """Org billing state."""

@billing.command("show")
@click.option("--org-id", type=int, required=True, help="Existing org id")
@with_appcontext
def billing_show(org_id):
    org = db.session.get(Org, org_id)
    if not org:
        raise click.ClickException(f"Org id {org_id} not found")

    state = db.session.query(OrgBillingState).filter_by(org_id=org_id).one_or_none()
    click.echo(f"org:              {org.id} {org.name}")
    if state is None:
        click.echo("billing_status:   inactive (no billing record)")
        return
    click.echo(f"billing_status:   {state.billing_status}")
    click.echo(f"customer:         {state.stripe_customer_id or '-'}")
    click.echo(f"subscription:     {state.stripe_subscription_id or '-'}")
    click.echo(f"period_end:       {_fmt(state.current_period_end)}")
    click.echo(f"setup_fee_paid:   {_fmt(state.setup_fee_paid_at)}")

def register_cli(app):
    app.cli.add_command(webhooks)
    app.cli.add_command(billing)
