"""Management script for database migrations and operational tasks"""

import json

import click
from dotenv import load_dotenv
from flask.cli import FlaskGroup

load_dotenv()

from billing_reconciler import create_app  # noqa: E402
from billing_reconciler.billing.factory import build_coordinator  # noqa: E402
from billing_reconciler.errors import SweepAlreadyRunning  # noqa: E402
from billing_reconciler.extensions import db  # noqa: E402

app = create_app()
cli = FlaskGroup(create_app=lambda: app)


@cli.command("init-db")
def init_db():
    """Create all tables"""
    with app.app_context():
        db.create_all()
        click.echo("Database initialized")


@cli.command("run-sweep")
def run_sweep():
    """Expire subscriptions whose scheduled cancellation has passed"""
    with app.app_context():
        try:
            report = build_coordinator().run_sweep()
        except SweepAlreadyRunning:
            click.echo("Another sweep is running, nothing to do")
            return
        click.echo(json.dumps({
            "checked": report.checked,
            "expired": report.expired,
            "failed": report.failed,
        }))


@cli.command("reconcile-account")
@click.argument("account_id")
def reconcile_account(account_id):
    """Pull one account's subscription from Stripe"""
    with app.app_context():
        state = build_coordinator().pull(account_id)
        click.echo(json.dumps(state.to_dict()))


@cli.command("reconcile-all")
def reconcile_all():
    """Pull every linked subscription from Stripe"""
    with app.app_context():
        click.echo(json.dumps(build_coordinator().reconcile_all()))


if __name__ == "__main__":
    cli()
