# Overview: Flask CLI command groups for catalog bootstrap, order inspection and maintenance.

# backend/farmapos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Pharmacies and stock:
# - python -m flask pharmacy create --name "Farmacia Centro"
#   Create a pharmacy.
# - python -m flask pharmacy stock --pharmacy-id 1 --upc 7501000000001 --units 40 [--name "Paracetamol 500mg"] [--price-cents 3500]
#   Create a medication or overwrite its on-hand units.
# - python -m flask pharmacy list
#   List pharmacies with their medication counts.
#
# Orders:
# - python -m flask orders show 42
#   Print an order with its lines and notes.
# - python -m flask orders list --status stock_error --limit 20
#   List recent orders, optionally filtered by status.
# - python -m flask orders reconcile 1234567890
#   Fetch a Mercado Pago payment and apply it, as the webhook would.
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Pharmacy, Medication, Order
from .services import order_service, stock_service
from .services.mercado_pago import GatewayError, get_gateway
from .services.order_states import OrderStatus


@click.group('pharmacy')
def pharmacy_group():
    """Pharmacy and stock maintenance commands."""


@pharmacy_group.command('create')
@click.option('--name', required=True, help='Pharmacy name')
@with_appcontext
def create_pharmacy_cli(name):
    """Create a pharmacy."""
    pharmacy = Pharmacy(name=name, is_active=True)
    db.session.add(pharmacy)
    db.session.commit()
    click.echo(f"PASS Created pharmacy: {pharmacy.name} (ID: {pharmacy.id})")


@pharmacy_group.command('stock')
@click.option('--pharmacy-id', type=int, required=True, help='Pharmacy ID')
@click.option('--upc', required=True, help='Medication UPC (the cart "sku")')
@click.option('--units', type=click.IntRange(min=0), required=True, help='Units on hand')
@click.option('--name', help='Medication name (new medications default to the UPC)')
@click.option('--price-cents', type=click.IntRange(min=0), help='Unit price in cents')
@with_appcontext
def set_stock_cli(pharmacy_id, upc, units, name, price_cents):
    """Create a medication or overwrite its on-hand units."""
    if db.session.query(Pharmacy).get(pharmacy_id) is None:
        click.echo(f"FAIL Pharmacy {pharmacy_id} not found")
        raise SystemExit(1)

    medication = stock_service.set_stock(pharmacy_id, upc, units, name=name, price_cents=price_cents)
    click.echo(f"PASS {medication.upc} ({medication.name}) at pharmacy {pharmacy_id}: {medication.units} units")


@pharmacy_group.command('list')
@with_appcontext
def list_pharmacies():
    """List all pharmacies."""
    pharmacies = db.session.query(Pharmacy).order_by(Pharmacy.id).all()
    if not pharmacies:
        click.echo("No pharmacies found.")
        return

    click.echo("\n" + "="*60)
    click.echo(f"{'ID':<6} {'Name':<32} {'Active':<8} {'Meds':<6}")
    click.echo("-"*60)
    for pharmacy in pharmacies:
        meds = db.session.query(Medication).filter_by(pharmacy_id=pharmacy.id).count()
        click.echo(f"{pharmacy.id:<6} {pharmacy.name[:32]:<32} {'yes' if pharmacy.is_active else 'no':<8} {meds:<6}")
    click.echo("="*60 + "\n")


@click.group('orders')
def orders_group():
    """Order inspection and reconciliation commands."""


@orders_group.command('show')
@click.argument('order_id', type=int)
@with_appcontext
def show_order(order_id):
    """Print an order with its lines and notes."""
    order = db.session.query(Order).get(order_id)
    if order is None:
        click.echo(f"FAIL Order {order_id} not found")
        raise SystemExit(1)

    click.echo(f"Order {order.id}  [{order.status}]  pharmacy {order.pharmacy_id}")
    click.echo(f"  method:   {order.requested_method} (confirmed: {order.confirmed_method or '-'})")
    click.echo(f"  total:    {order.total_cents / 100:.2f}")
    click.echo(f"  created:  {order.created_at}   paid: {order.paid_at or '-'}")
    if order.gateway_preference_id or order.gateway_payment_id:
        click.echo(f"  gateway:  preference {order.gateway_preference_id or '-'}, payment {order.gateway_payment_id or '-'}")

    click.echo("  lines:")
    for line in order.lines:
        click.echo(f"    {line.line_number:>3}. {line.sku} x{line.quantity} @ {line.unit_price_cents / 100:.2f}")

    if order.notes:
        click.echo("  notes:")
        for note in order.notes:
            click.echo(f"    [{note.created_at}] {note.code}: {note.message}")


@orders_group.command('list')
@click.option('--status', type=click.Choice([s.value for s in OrderStatus]), help='Filter by status')
@click.option('--limit', type=int, default=20, show_default=True, help='Max orders to show')
@with_appcontext
def list_orders(status, limit):
    """List recent orders."""
    query = db.session.query(Order)
    if status:
        query = query.filter(Order.status == status)
    orders = query.order_by(Order.id.desc()).limit(limit).all()

    if not orders:
        click.echo("No orders found.")
        return

    for order in orders:
        click.echo(
            f"{order.id:<8} {order.status:<16} {order.requested_method:<6} "
            f"{order.total_cents / 100:>10.2f}  pharmacy {order.pharmacy_id}  {order.created_at}"
        )


@orders_group.command('reconcile')
@click.argument('payment_id')
@with_appcontext
def reconcile_payment(payment_id):
    """
    Fetch a Mercado Pago payment and apply it to its order.

    Recovery path for notifications that never arrived. Applying the same
    payment twice is harmless.
    """
    try:
        details = get_gateway().get_payment(payment_id)
    except GatewayError as exc:
        click.echo(f"FAIL Payment lookup failed (HTTP {exc.status_code}): {exc}")
        raise SystemExit(1)

    click.echo(f"Payment {details.payment_id}: {details.status} (order {details.external_reference})")
    outcome = order_service.apply_gateway_payment(details)
    if outcome.action == order_service.NOTIFICATION_APPLIED:
        click.echo(f"PASS Order {outcome.order_id} -> {outcome.status}")
    else:
        click.echo(f"SKIP {outcome.action}: {outcome.reason}")
    for warning in outcome.warnings:
        click.echo(f"WARN {warning}")


@click.group('system')
def system_group():
    """System maintenance commands."""


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

    click.echo("PASS Database reset complete. Run 'python -m flask pharmacy create' to add a pharmacy.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(pharmacy_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(system_group)
