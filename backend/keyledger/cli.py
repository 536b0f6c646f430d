# Overview: Flask CLI command groups for accounts, codes, keys, pricing and maintenance.

# backend/keyledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Accounts:
# - python -m flask accounts create --username rebrander1 --balance 500
# - python -m flask accounts list
# - python -m flask accounts adjust 1 --amount -50 --note "Chargeback"
# - python -m flask accounts history 1 --limit 20
#
# Referral codes:
# - python -m flask codes create --amount 100 --usage-limit 5 [--expires-at 2026-12-31T00:00:00Z]
# - python -m flask codes list
#
# Keys and pricing:
# - python -m flask keys list 1 [--status active]
# - python -m flask keys deactivate 9F3A0C...
# - python -m flask pricing list
#
# Maintenance:
# - python -m flask maintenance expire-keys
#   Persist is_active=False for every key past its expiry.

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import LedgerError
from .extensions import db
from .models import Account
from .services import key_service, ledger_service, referral_service
from .time_utils import parse_iso_datetime, to_utc_z


def _fail(exc: LedgerError):
    raise click.ClickException(f"{exc.kind}: {exc.message}")


def _parse_expiry(value):
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise click.BadParameter("expected an ISO-8601 datetime", param_hint="--expires-at")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm dropping all data')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        return
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('accounts')
def accounts_group():
    """Account and balance commands."""


@accounts_group.command('create')
@click.option('--username', required=True, help='Unique username')
@click.option('--balance', 'initial_balance', type=int, default=0, help='Opening balance (minor units)')
@with_appcontext
def create_account_cli(username, initial_balance):
    try:
        account = ledger_service.create_account(username, initial_balance)
    except LedgerError as exc:
        _fail(exc)
    click.echo(f"PASS Created account: {account.username} (ID: {account.id}, balance {account.balance})")


@accounts_group.command('list')
@with_appcontext
def list_accounts_cli():
    accounts = db.session.query(Account).order_by(Account.id).all()
    if not accounts:
        click.echo("No accounts found.")
        return

    click.echo("\n" + "=" * 60)
    click.echo(f"{'ID':<6} {'Username':<30} {'Balance':>10}")
    click.echo("=" * 60)
    for account in accounts:
        click.echo(f"{account.id:<6} {account.username:<30} {account.balance:>10}")
    click.echo("=" * 60 + "\n")


@accounts_group.command('adjust')
@click.argument('account_id', type=int)
@click.option('--amount', type=int, required=True, help='Positive credits, negative debits')
@click.option('--note', default=None, help='Reason recorded on the transaction')
@with_appcontext
def adjust_balance_cli(account_id, amount, note):
    try:
        txn = ledger_service.adjust_balance(account_id, amount, note)
    except LedgerError as exc:
        _fail(exc)
    click.echo(f"PASS {txn.type} {txn.amount}: balance {txn.balance_before} -> {txn.balance_after}")


@accounts_group.command('history')
@click.argument('account_id', type=int)
@click.option('--limit', type=int, default=20)
@with_appcontext
def history_cli(account_id, limit):
    try:
        rows = ledger_service.get_transaction_history(account_id, limit=limit)
    except LedgerError as exc:
        _fail(exc)
    for txn in rows:
        click.echo(
            f"{to_utc_z(txn.created_at)}  {txn.type:<6} {txn.amount:>8}  "
            f"{txn.balance_before:>8} -> {txn.balance_after:<8} {txn.reason} {txn.reference_id or ''}"
        )


@click.group('codes')
def codes_group():
    """Referral code commands."""


@codes_group.command('create')
@click.option('--amount', type=int, required=True)
@click.option('--usage-limit', type=int, default=1)
@click.option('--expires-at', default=None, help='ISO-8601 datetime')
@with_appcontext
def create_code_cli(amount, usage_limit, expires_at):
    try:
        referral = referral_service.create_referral_code(
            amount, usage_limit, _parse_expiry(expires_at), created_by="cli"
        )
    except LedgerError as exc:
        _fail(exc)
    click.echo(f"PASS Created code {referral.code} worth {referral.amount} x{referral.usage_limit}")


@codes_group.command('list')
@with_appcontext
def list_codes_cli():
    codes = referral_service.list_active_codes()
    if not codes:
        click.echo("No active referral codes.")
        return
    for referral in codes:
        click.echo(
            f"{referral.code:<14} amount={referral.amount:<6} "
            f"uses={referral.uses_consumed}/{referral.usage_limit} expires={to_utc_z(referral.expires_at) or '-'}"
        )


@click.group('keys')
def keys_group():
    """Key inspection commands."""


@keys_group.command('list')
@click.argument('account_id', type=int)
@click.option('--status', type=click.Choice(key_service.KEY_STATUS_FILTERS), default=None)
@with_appcontext
def list_keys_cli(account_id, status):
    try:
        keys = key_service.list_account_keys(account_id, status=status)
    except LedgerError as exc:
        _fail(exc)
    for key in keys:
        click.echo(
            f"{key.code:<26} {key.tier_id:<8} price={key.price:<6} "
            f"devices={key.bound_device_count}/{key.device_limit} {key.status()} "
            f"expires={to_utc_z(key.expires_at)}"
        )


@keys_group.command('deactivate')
@click.argument('key_code')
@with_appcontext
def deactivate_key_cli(key_code):
    try:
        key = key_service.deactivate_key(key_code, is_admin=True)
    except LedgerError as exc:
        _fail(exc)
    click.echo(f"PASS Key {key.code} is now {key.status()}")


@click.group('pricing')
def pricing_group():
    """Pricing catalog commands."""


@pricing_group.command('list')
@with_appcontext
def list_pricing_cli():
    catalog = current_app.extensions["pricing_catalog"]
    for tier in catalog.tiers():
        hours = tier.duration_millis // (60 * 60 * 1000)
        click.echo(f"{tier.tier_id:<10} {tier.label:<10} price={tier.price:<6} hours={hours}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('expire-keys')
@with_appcontext
def expire_keys_cli():
    expired = key_service.expire_stale_keys()
    click.echo(f"PASS Expired {expired} key(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(accounts_group)
    app.cli.add_command(codes_group)
    app.cli.add_command(keys_group)
    app.cli.add_command(pricing_group)
    app.cli.add_command(maintenance_group)
