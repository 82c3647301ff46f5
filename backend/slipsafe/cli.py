# Overview: Flask CLI command groups for bootstrap, ledger seeding, and fraud review.

# backend/slipsafe/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migrated deployments).
#
# Merchants:
# - python -m flask merchants create --name "Acme Hardware" --email ops@acme.test
# - python -m flask merchants add-user --merchant-id 1 --email till@acme.test --name "Till 1" --role staff
#   Prompts for the password.
# - python -m flask merchants deactivate --merchant-id 1
#
# Consumers and purchases (stand-in for the upstream receipt pipeline):
# - python -m flask users create --email alice@example.com
# - python -m flask purchases record --user-id 1 --merchant "Acme Hardware" --date 2026-10-01 --total-cents 15000
#
# Claims:
# - python -m flask claims issue --purchase-id 1 --user-id 1 --type return
# - python -m flask claims show CLAIMCODE
#
# Fraud review:
# - python -m flask fraud list [--merchant-id 1] [--open]
# - python -m flask fraud resolve 12 --by 3

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import Merchant
from .services import audit_service, auth_service, claim_service, fraud_service, purchase_service
from .services.auth_service import AccountError, PasswordValidationError
from .services.claim_service import ClaimError
from .services.fraud_service import FraudError
from .services.purchase_service import PurchaseError
from .services.signing_service import current_signer


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("Database tables created.")


@click.group('merchants')
def merchants_group():
    """Merchant and staff management."""


@merchants_group.command('create')
@click.option('--name', required=True)
@click.option('--email', required=True)
@click.option('--return-days', default=30, show_default=True)
@click.option('--warranty-months', default=12, show_default=True)
@with_appcontext
def create_merchant(name, email, return_days, warranty_months):
    try:
        merchant = auth_service.create_merchant(name, email, return_days, warranty_months)
    except AccountError as e:
        raise click.ClickException(str(e))
    click.echo(f"Created merchant {merchant.id}: {merchant.business_name}")


@merchants_group.command('add-user')
@click.option('--merchant-id', type=int, required=True)
@click.option('--email', required=True)
@click.option('--name', 'full_name', required=True)
@click.option('--role', type=click.Choice(['owner', 'manager', 'staff']), default='staff', show_default=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@with_appcontext
def add_merchant_user(merchant_id, email, full_name, role, password):
    try:
        staff = auth_service.create_merchant_user(merchant_id, email, password, full_name, role)
    except (AccountError, PasswordValidationError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Created {role} {staff.email} (id {staff.id}) for merchant {merchant_id}")


@merchants_group.command('deactivate')
@click.option('--merchant-id', type=int, required=True)
@with_appcontext
def deactivate_merchant(merchant_id):
    merchant = db.session.get(Merchant, merchant_id)
    if merchant is None:
        raise click.ClickException(f"Merchant {merchant_id} not found")
    merchant.is_active = False
    db.session.commit()
    click.echo(f"Merchant {merchant_id} deactivated; its sessions stop validating.")


@click.group('users')
def users_group():
    """Consumer account management."""


@users_group.command('create')
@click.option('--email', required=True)
@click.option('--name', 'full_name', default=None)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@with_appcontext
def create_user(email, full_name, password):
    try:
        user = auth_service.create_user(email, password, full_name)
    except (AccountError, PasswordValidationError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Created user {user.id}: {user.email}")


@click.group('purchases')
def purchases_group():
    """Purchase ledger seeding."""


@purchases_group.command('record')
@click.option('--user-id', type=int, required=True)
@click.option('--merchant', required=True)
@click.option('--date', 'purchase_date', required=True, help="YYYY-MM-DD")
@click.option('--total-cents', type=int, required=True)
@click.option('--merchant-id', type=int, default=None, help="Attribute to a registered merchant")
@with_appcontext
def record_purchase(user_id, merchant, purchase_date, total_cents, merchant_id):
    try:
        purchase = purchase_service.record_purchase(user_id, merchant, purchase_date, total_cents, merchant_id)
    except PurchaseError as e:
        raise click.ClickException(str(e))
    click.echo(f"Recorded purchase {purchase.id} ({purchase.hash[:12]}...)")


@click.group('claims')
def claims_group():
    """Claim issuance and inspection."""


@claims_group.command('issue')
@click.option('--purchase-id', type=int, required=True)
@click.option('--user-id', type=int, required=True)
@click.option('--type', 'claim_type', default='return', show_default=True)
@with_appcontext
def issue_claim(purchase_id, user_id, claim_type):
    try:
        claim, created = claim_service.issue_claim(
            purchase_id,
            user_id,
            claim_type,
            signer=current_signer(),
            verifier_url=current_app.config["CLAIM_VERIFIER_URL"],
            validity_days=current_app.config["CLAIM_VALIDITY_DAYS"],
        )
    except ClaimError as e:
        raise click.ClickException(str(e))

    click.echo(f"{'Issued' if created else 'Existing'} claim {claim.claim_code} (PIN {claim.pin})")
    click.echo(f"Expires: {claim.expires_at.isoformat()}Z")
    click.echo(f"QR payload: {claim.qr_code_data}")


@claims_group.command('show')
@click.argument('claim_code')
@with_appcontext
def show_claim(claim_code):
    claim = claim_service.get_claim_by_code(claim_code)
    if claim is None:
        raise click.ClickException(f"Claim {claim_code} not found")

    summary = claim_service.claim_summary(claim)
    click.echo(f"{summary['claim_code']}  {summary['claim_type']}  {summary['state']}  "
               f"{summary['merchant_name']}  {summary['purchase_date']}  {summary['original_amount']}")
    for attempt in audit_service.list_claim_attempts(claim.id):
        click.echo(f"  {attempt.created_at.isoformat()}  {attempt.action:<8} {attempt.status:<16} "
                   f"{attempt.result:<16} merchant={attempt.merchant_id} pin_correct={attempt.pin_correct}")


@click.group('fraud')
def fraud_group():
    """Fraud event review."""


@fraud_group.command('list')
@click.option('--merchant-id', type=int, default=None)
@click.option('--type', 'event_type', type=click.Choice(fraud_service.FRAUD_EVENT_TYPES), default=None)
@click.option('--open', 'only_open', is_flag=True, help="Unresolved events only")
@click.option('--limit', default=50, show_default=True)
@with_appcontext
def list_fraud(merchant_id, event_type, only_open, limit):
    events = fraud_service.list_fraud_events(
        merchant_id=merchant_id,
        event_type=event_type,
        resolved=False if only_open else None,
        limit=limit,
    )
    if not events:
        click.echo("No fraud events.")
        return
    for event in events:
        status = "resolved" if event.resolved else "OPEN"
        click.echo(f"[{event.id}] {event.created_at.isoformat()} {event.severity:<6} {event.event_type:<24} "
                   f"{status:<8} claim={event.claim_id} merchant={event.merchant_id}  {event.description}")


@fraud_group.command('resolve')
@click.argument('event_id', type=int)
@click.option('--by', 'resolved_by', type=int, default=None, help="Merchant user id of the reviewer")
@with_appcontext
def resolve_fraud(event_id, resolved_by):
    try:
        event = fraud_service.resolve_fraud_event(event_id, resolved_by)
    except FraudError as e:
        raise click.ClickException(str(e))
    click.echo(f"Fraud event {event.id} resolved at {event.resolved_at.isoformat()}")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(merchants_group)
    app.cli.add_command(users_group)
    app.cli.add_command(purchases_group)
    app.cli.add_command(claims_group)
    app.cli.add_command(fraud_group)
