"""Flask CLI commands for the billing engine.

Usage:
    flask --app app billing run-recurring
    flask --app app billing run-recurring --date 2025-12-01
    flask --app app billing generate 12 3 4 --month 2025-11
    flask --app app billing balance 57
    flask --app app billing cancel-invoice 57
    flask --app app billing delete-invoice 58
    flask --app app billing delete-payments 8 9 10
"""

from __future__ import annotations

import sys
from typing import Optional

import click
from flask.cli import AppGroup

from services.errors import BillingError
from utils import FixedClock, parse_date, parse_month, previous_month

billing_cli = AppGroup("billing", help="Invoice generation and payment tools.")


def _fail(error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@billing_cli.command("run-recurring")
@click.option("--date", "run_date", help="Run as if today were YYYY-MM-DD.")
def run_recurring(run_date: Optional[str]):
    """Bill every active customer for the previous month."""
    from services.recurring import run_recurring_billing

    clock = None
    if run_date:
        day = parse_date(run_date)
        if day is None:
            _fail(ValueError(f"Invalid date: {run_date}"))
        clock = FixedClock(day)

    created = run_recurring_billing(clock=clock)
    click.echo(f"{created} invoice(s) created")


@billing_cli.command("generate")
@click.argument("customer_id", type=int)
@click.argument("service_ids", type=int, nargs=-1, required=True)
@click.option("--month", help="Billing month as YYYY-MM (default: previous month).")
def generate(customer_id: int, service_ids: tuple, month: Optional[str]):
    """Invoice CUSTOMER_ID for SERVICE_IDS."""
    from services.invoicing import generate_invoices
    from services.settings import get_clock

    if month:
        billing_month = parse_month(month)
        if billing_month is None:
            _fail(ValueError(f"Invalid month: {month}"))
    else:
        billing_month = previous_month(get_clock().today())

    try:
        result = generate_invoices(customer_id, service_ids, billing_month)
    except BillingError as e:
        _fail(e)
        return

    for invoice in result:
        click.echo(f"{invoice.number}  {invoice.category}  {invoice.amount}")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)


@billing_cli.command("balance")
@click.argument("invoice_id", type=int)
def balance(invoice_id: int):
    """Show the outstanding balance of INVOICE_ID."""
    from services.settlement import get_outstanding_balance

    try:
        click.echo(str(get_outstanding_balance(invoice_id)))
    except BillingError as e:
        _fail(e)


@billing_cli.command("cancel-invoice")
@click.argument("invoice_id", type=int)
def cancel_invoice_cmd(invoice_id: int):
    """Cancel a pending invoice."""
    from services.settlement import cancel_invoice

    try:
        invoice = cancel_invoice(invoice_id)
    except BillingError as e:
        _fail(e)
        return
    click.echo(f"Invoice {invoice.number} cancelled")


@billing_cli.command("delete-invoice")
@click.argument("invoice_id", type=int)
def delete_invoice_cmd(invoice_id: int):
    """Delete an invoice that has no payments."""
    from services.settlement import delete_invoice

    try:
        delete_invoice(invoice_id)
    except BillingError as e:
        _fail(e)
        return
    click.echo(f"Invoice {invoice_id} deleted")


@billing_cli.command("delete-payments")
@click.argument("payment_ids", type=int, nargs=-1, required=True)
def delete_payments_cmd(payment_ids: tuple):
    """Delete payments and re-settle their invoices."""
    from services.payments import delete_payments

    deleted, not_found = delete_payments(payment_ids)
    click.echo(f"{deleted} payment(s) deleted, {not_found} not found")
