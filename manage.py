"""Management script for database setup and one-off entitlement tasks"""

import click
from dotenv import load_dotenv
from flask.cli import FlaskGroup

load_dotenv()

from entitlements import create_app  # noqa: E402
from entitlements.billing.customers import cleanup_duplicate_customers  # noqa: E402
from entitlements.billing.gift_tokens import get_gift_token_store  # noqa: E402
from entitlements.billing.state_machine import get_entitlement_manager  # noqa: E402
from entitlements.billing.sweepers import BillingResumeSweeper, ExpirationSweeper  # noqa: E402
from entitlements.extensions import db  # noqa: E402
from entitlements.models import User  # noqa: E402

cli = FlaskGroup(create_app=create_app)


@cli.command("init-db")
def init_db():
    """Create all tables"""
    db.create_all()
    click.echo("Database initialized")


@cli.command("sweep-expired")
def sweep_expired():
    """Run the expiration sweep in this process"""
    report = ExpirationSweeper().run()
    click.echo(f"checked={report.checked} changed={report.changed} failed={report.failed}")


@cli.command("sweep-resume")
@click.option("--lookahead", default=60, show_default=True, help="Minutes ahead of credit expiry")
def sweep_resume(lookahead):
    """Resume paused billing for accounts whose credit is about to end"""
    report = BillingResumeSweeper(lookahead_minutes=lookahead).run()
    click.echo(f"checked={report.checked} changed={report.changed} failed={report.failed}")


@cli.command("expire-gifts")
def expire_gifts():
    """Expire overdue gift tokens"""
    click.echo(f"expired={get_gift_token_store().sweep_expired()}")


@cli.command("resync-status")
@click.argument("user_id")
def resync_status(user_id):
    """Recompute one account's stored status"""
    click.echo(get_entitlement_manager().update_subscription_status(user_id).value)


@cli.command("cleanup-customers")
@click.argument("user_id")
def cleanup_customers(user_id):
    """Merge duplicate billing customers for one account"""
    click.echo(cleanup_duplicate_customers(user_id).to_dict())


@cli.command("make-admin")
@click.argument("username")
def make_admin(username):
    """Grant the admin role"""
    user = User.query.filter_by(username=username).first()
    if user is None:
        raise click.ClickException(f"No user named {username}")
    user.role = "admin"
    db.session.commit()
    click.echo(f"{username} is now an admin")


if __name__ == "__main__":
    cli()
