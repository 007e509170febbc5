"""Invoice settlement state and the customer's paid-invoice counter.

    pending --(paid total >= amount)--> paid
    paid --(payment removed, paid total < amount)--> pending
    pending --(cancel_invoice)--> cancelled

The counter moves only on the pending/paid edges, so re-settling an invoice
that did not change state is a no-op.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import (
    INVOICE_CANCELLED,
    INVOICE_PAID,
    INVOICE_PENDING,
    Customer,
    Invoice,
    Payment,
    PaymentInvoice,
)
from services.audit import log_action
from services.errors import InvoiceHasLinkedPayments, InvoiceNotFound, InvoiceStateError
from services.money import ZERO, round_money, to_decimal

logger = logging.getLogger(__name__)


def paid_total(invoice_id: int) -> Decimal:
    """Direct payments plus applied link amounts recorded for *invoice_id*."""
    direct = (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(Payment.invoice_id == invoice_id)
        .scalar()
    )
    applied = (
        db.session.query(func.coalesce(func.sum(PaymentInvoice.applied_amount), 0))
        .filter(PaymentInvoice.invoice_id == invoice_id)
        .scalar()
    )
    return round_money(to_decimal(direct) + to_decimal(applied))


def outstanding_balance(invoice: Invoice) -> Decimal:
    """Amount still owed; cancelled invoices owe nothing."""
    if invoice.status == INVOICE_CANCELLED:
        return ZERO
    return round_money(to_decimal(invoice.amount) - paid_total(invoice.id))


def get_outstanding_balance(invoice_id: int) -> Decimal:
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise InvoiceNotFound(invoice_id)
    return outstanding_balance(invoice)


def has_payments(invoice_id: int) -> bool:
    return (
        Payment.query.filter_by(invoice_id=invoice_id).first() is not None
        or PaymentInvoice.query.filter_by(invoice_id=invoice_id).first() is not None
    )


def _adjust_counter(customer_id: int, delta: int) -> None:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        return
    count = (customer.paid_invoice_count or 0) + delta
    if count < 0:
        logger.warning(
            "Paid-invoice counter of customer %s would drop to %s; keeping 0",
            customer_id,
            count,
        )
        count = 0
    customer.paid_invoice_count = count


def settle_invoice(invoice: Invoice) -> str:
    """Recompute *invoice*'s state from its payments; does NOT commit.

    Returns the (possibly unchanged) status.
    """
    if invoice.status == INVOICE_CANCELLED:
        return invoice.status

    db.session.flush()
    total = paid_total(invoice.id)
    covered = total >= to_decimal(invoice.amount)

    if covered and invoice.status == INVOICE_PENDING:
        invoice.status = INVOICE_PAID
        _adjust_counter(invoice.customer_id, +1)
        logger.info("Invoice %s paid (%s of %s)", invoice.number, total, invoice.amount)
        log_action("settle", "invoice", invoice.id, f"{invoice.number} paid")
    elif not covered and invoice.status == INVOICE_PAID:
        invoice.status = INVOICE_PENDING
        _adjust_counter(invoice.customer_id, -1)
        logger.info(
            "Invoice %s reverted to pending (%s of %s)", invoice.number, total, invoice.amount
        )
        log_action("unsettle", "invoice", invoice.id, f"{invoice.number} pending")
    return invoice.status


def cancel_invoice(invoice_id: int) -> Invoice:
    """Cancel a pending invoice.  Paid or cancelled invoices are refused."""
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise InvoiceNotFound(invoice_id)
    if invoice.status != INVOICE_PENDING:
        raise InvoiceStateError(
            f"Invoice {invoice.number} is {invoice.status}; only pending invoices can be cancelled."
        )
    invoice.status = INVOICE_CANCELLED
    log_action("cancel", "invoice", invoice.id, invoice.number)
    db.session.commit()
    logger.info("Cancelled invoice %s", invoice.number)
    return invoice


def delete_invoice(invoice_id: int) -> bool:
    """Delete an invoice that has no payments applied to it."""
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise InvoiceNotFound(invoice_id)
    if has_payments(invoice_id):
        raise InvoiceHasLinkedPayments(invoice_id)

    number = invoice.number
    try:
        db.session.delete(invoice)
        log_action("delete", "invoice", invoice_id, number)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    logger.info("Deleted invoice %s", number)
    return True
