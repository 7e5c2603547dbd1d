# Overview: Flask CLI command groups for bootstrap, inventory, receipts, and bank reconciliation.

# backend/fulfillment/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Create tables and seed order statuses, payment statuses and document sequences.
# - python -m flask system seed-statuses
#   Seed/repair the status vocabularies only.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory:
# - python -m flask inventory history 7 --change-type sale --limit 20
#   Print ledger rows for a product, newest first.
# - python -m flask inventory adjust --change-type correction --note "cycle count" -- 7 -3
#   Apply one ledger adjustment (stock never drops below zero). Use "--" before a negative delta.
#
# Stock receipts:
# - python -m flask receipts approve 12 --approver 1
# - python -m flask receipts reject 12 --approver 1 --reason "wrong supplier"
#
# Bank reconciliation:
# - python -m flask bank import statement.csv --account-id 1
#   CSV columns: external_txn_id, amount, posted_at, txn_type, currency, description
# - python -m flask bank match 5 --order-id 42 --matched-by accountant --score 0.95

import csv

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import inventory_service, receipt_service, reconciliation_service
from .services.errors import FulfillmentError
from .services.reference_service import ensure_reference_data
from .time_utils import to_utc_z


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize the database: tables plus reference vocabularies.

    Safe to run repeatedly.
    """
    click.echo("START Initializing fulfillment database...")
    db.create_all()
    ensure_reference_data()
    click.echo("PASS Tables created, statuses and document sequences seeded")


@system_group.command('seed-statuses')
@with_appcontext
def seed_statuses():
    """Seed or repair order/payment statuses and document sequences."""
    ensure_reference_data()
    click.echo("PASS Reference data seeded")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()
    ensure_reference_data()

    click.echo("PASS Database reset complete.")


@click.group('inventory')
def inventory_group():
    """Inventory ledger inspection and adjustments."""


@inventory_group.command('history')
@click.argument('product_id', type=int)
@click.option('--change-type', type=click.Choice(inventory_service.VALID_CHANGE_TYPES), help='Filter by change type')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def inventory_history(product_id, change_type, limit):
    """List ledger rows for a product, newest first."""
    try:
        stock = inventory_service.get_stock(product_id)
    except FulfillmentError as e:
        click.echo(f"FAIL {e.message}")
        return

    rows = inventory_service.list_transactions(product_id=product_id, change_type=change_type, limit=limit)

    click.echo("\n" + "="*90)
    click.echo(f"PRODUCT {product_id}  on hand: {stock}")
    click.echo("="*90)
    click.echo(f"{'ID':<6} {'CHANGE':>8} {'TYPE':<12} {'AT':<22} {'BY':<6} NOTE")
    click.echo("-"*90)
    for row in rows:
        by = row.created_by if row.created_by is not None else "-"
        click.echo(
            f"{row.id:<6} {row.quantity_change:>+8} {row.change_type:<12} "
            f"{to_utc_z(row.changed_at) or '-':<22} {by!s:<6} {row.note or ''}"
        )
    click.echo(f"\n Total: {len(rows)} rows\n")


@inventory_group.command('adjust')
@click.argument('product_id', type=int)
@click.argument('delta', type=int)
@click.option('--change-type', type=click.Choice(inventory_service.VALID_CHANGE_TYPES), default='adjustment', show_default=True)
@click.option('--note', help='Free-text note stored on the ledger row')
@click.option('--actor', type=int, help='User ID recorded as the author')
@with_appcontext
def inventory_adjust(product_id, delta, change_type, note, actor):
    """Apply one signed stock adjustment."""
    try:
        new_quantity = inventory_service.adjust_stock(
            product_id, delta, change_type=change_type, note=note, actor=actor
        )
    except FulfillmentError as e:
        click.echo(f"FAIL {e.message}")
        return
    click.echo(f"PASS Product {product_id} stock is now {new_quantity}")


@click.group('receipts')
def receipts_group():
    """Stock receipt approval commands."""


@receipts_group.command('approve')
@click.argument('receipt_id', type=int)
@click.option('--approver', type=int, required=True, help='Approving user ID')
@with_appcontext
def approve_receipt(receipt_id, approver):
    """Approve a pending receipt and post its items to inventory."""
    try:
        receipt = receipt_service.approve(receipt_id, approver)
    except FulfillmentError as e:
        click.echo(f"FAIL {e.message}")
        return
    click.echo(f"PASS Receipt {receipt.receipt_number} approved ({len(receipt.items)} items posted)")


@receipts_group.command('reject')
@click.argument('receipt_id', type=int)
@click.option('--approver', type=int, required=True, help='Rejecting user ID')
@click.option('--reason', required=True, help='Why the receipt is rejected')
@with_appcontext
def reject_receipt(receipt_id, approver, reason):
    """Reject a pending receipt. Inventory is not touched."""
    try:
        receipt = receipt_service.reject(receipt_id, approver, reason)
    except FulfillmentError as e:
        click.echo(f"FAIL {e.message}")
        return
    click.echo(f"PASS Receipt {receipt.receipt_number} rejected")


@click.group('bank')
def bank_group():
    """Bank statement import and reconciliation."""


@bank_group.command('import')
@click.argument('csv_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--account-id', type=int, required=True, help='Bank account ID')
@with_appcontext
def import_statement(csv_path, account_id):
    """Import a bank statement CSV. Already imported rows are skipped."""
    with open(csv_path, newline='', encoding='utf-8') as fh:
        rows = list(csv.DictReader(fh))

    try:
        created = reconciliation_service.import_bank_transactions(account_id, rows)
    except FulfillmentError as e:
        click.echo(f"FAIL {e.message}")
        return
    click.echo(f"PASS Imported {len(created)} of {len(rows)} rows for account {account_id}")


@bank_group.command('match')
@click.argument('bank_txn_id', type=int)
@click.option('--order-id', type=int, help='Order settled by the transaction')
@click.option('--payment-id', type=int, help='Payment settled by the transaction')
@click.option('--matched-by', required=True, help='Who made the match')
@click.option('--score', type=float, required=True, help='Confidence between 0 and 1')
@click.option('--notes', help='Free-text notes')
@with_appcontext
def match_transaction(bank_txn_id, order_id, payment_id, matched_by, score, notes):
    """Record a reconciliation for a bank transaction."""
    try:
        rec = reconciliation_service.match(
            bank_txn_id,
            order_id=order_id,
            payment_id=payment_id,
            matched_by=matched_by,
            score=score,
            notes=notes,
        )
    except FulfillmentError as e:
        click.echo(f"FAIL {e.message}")
        return
    click.echo(f"PASS Reconciliation {rec.id} recorded (order {rec.order_id}, payment {rec.payment_id})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(receipts_group)
    app.cli.add_command(bank_group)
