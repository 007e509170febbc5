"""Payment registration and allocation across invoices.

A payment has up to four legs: local/foreign cash (physical) and
local/foreign transfer (electronic).  Foreign legs are converted at the
payment's exchange rate, or the default rate when none is given.  Payments
created before the legs existed only carry ``amount`` + ``currency``; those
fields are still honoured when a channel has no leg amounts.

A payment either points straight at one invoice (``Payment.invoice_id``) or
is spread over several invoices through ``PaymentInvoice`` rows.  Every
invoice touched is re-settled in the same transaction.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import (
    CHANNEL_ELECTRONIC,
    CHANNEL_MIXED,
    CHANNEL_PHYSICAL,
    CURRENCY_MIXED,
    INVOICE_PENDING,
    VALID_PAYMENT_CHANNELS,
    Invoice,
    Payment,
    PaymentInvoice,
)
from services.audit import log_action
from services.errors import (
    CrossCustomerInvoiceMix,
    InvalidPayment,
    InvoiceNotFound,
    NoOutstandingBalance,
    OverAllocation,
    SuspiciousPaymentAmount,
)
from services.money import ZERO, exceeds_tolerance, round_money, to_decimal
from services.settings import (
    get_app_config,
    get_billing_config,
    get_clock,
    get_default_exchange_rate,
)
from services.settlement import outstanding_balance, settle_invoice
from utils import Clock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------

def _positive(value) -> bool:
    return value is not None and to_decimal(value) > 0


def _leg(local, foreign, rate: Decimal) -> Decimal:
    return to_decimal(local) + to_decimal(foreign) * rate


def _rate_for(payment: Payment) -> Decimal:
    if _positive(payment.exchange_rate):
        return to_decimal(payment.exchange_rate)
    return get_default_exchange_rate()


def _legacy_total(payment: Payment, rate: Decimal) -> Decimal:
    amount = to_decimal(payment.amount)
    if payment.currency and payment.currency == get_app_config().foreign_currency:
        return amount * rate
    return amount


def physical_leg(payment: Payment, rate: Optional[Decimal] = None) -> Decimal:
    rate = rate if rate is not None else _rate_for(payment)
    return _leg(payment.local_physical, payment.foreign_physical, rate)


def electronic_leg(payment: Payment, rate: Optional[Decimal] = None) -> Decimal:
    rate = rate if rate is not None else _rate_for(payment)
    return _leg(payment.local_electronic, payment.foreign_electronic, rate)


def _has_physical(payment: Payment) -> bool:
    return _positive(payment.local_physical) or _positive(payment.foreign_physical)


def _has_electronic(payment: Payment) -> bool:
    return _positive(payment.local_electronic) or _positive(payment.foreign_electronic)


def normalize_legacy_amount(payment: Payment) -> None:
    """Move a legacy ``amount`` + ``currency`` pair into the matching leg.

    ``amount`` is recomputed from the legs on save, so a stored payment is
    never converted twice.
    """
    if payment.channel not in (CHANNEL_PHYSICAL, CHANNEL_ELECTRONIC):
        return
    if _has_physical(payment) or _has_electronic(payment) or not _positive(payment.amount):
        return
    foreign = bool(payment.currency) and payment.currency == get_app_config().foreign_currency
    leg = "physical" if payment.channel == CHANNEL_PHYSICAL else "electronic"
    setattr(payment, f"{'foreign' if foreign else 'local'}_{leg}", to_decimal(payment.amount))
    payment.amount = None
    payment.currency = None


def compute_payment_total(payment: Payment) -> Decimal:
    """Total value of *payment* in local currency, rounded to cents."""
    rate = _rate_for(payment)
    if payment.channel == CHANNEL_MIXED:
        total = physical_leg(payment, rate) + electronic_leg(payment, rate)
    elif payment.channel == CHANNEL_PHYSICAL:
        if _has_physical(payment):
            total = physical_leg(payment, rate)
        else:
            total = _legacy_total(payment, rate)
    elif payment.channel == CHANNEL_ELECTRONIC:
        if _has_electronic(payment):
            total = electronic_leg(payment, rate)
        else:
            total = _legacy_total(payment, rate)
    else:
        raise InvalidPayment(f"Unknown payment channel: {payment.channel!r}.")
    return round_money(total)


def derive_currency(payment: Payment) -> str:
    """Currency label for *payment*: local code, foreign code or ``MIXED``."""
    app_cfg = get_app_config()
    if payment.channel == CHANNEL_MIXED:
        return CURRENCY_MIXED
    if payment.channel == CHANNEL_PHYSICAL:
        local, foreign = payment.local_physical, payment.foreign_physical
    else:
        local, foreign = payment.local_electronic, payment.foreign_electronic
    if _positive(local) and _positive(foreign):
        return CURRENCY_MIXED
    if _positive(foreign):
        return app_cfg.foreign_currency
    if _positive(local):
        return app_cfg.base_currency
    return payment.currency or app_cfg.base_currency


def compute_change(payment: Payment, total: Decimal) -> Optional[Decimal]:
    """Change owed to the customer for the cash part of *payment*."""
    if payment.received_amount is None:
        return None
    if payment.channel == CHANNEL_PHYSICAL:
        due = total
    elif payment.channel == CHANNEL_MIXED:
        due = physical_leg(payment)
    else:
        return None
    return max(ZERO, round_money(to_decimal(payment.received_amount) - due))


def validate_payment(payment: Payment) -> None:
    if payment.channel not in VALID_PAYMENT_CHANNELS:
        raise InvalidPayment(f"Unknown payment channel: {payment.channel!r}.")
    for field in (
        "local_physical",
        "foreign_physical",
        "local_electronic",
        "foreign_electronic",
        "received_amount",
    ):
        value = getattr(payment, field)
        if value is not None and to_decimal(value) < 0:
            raise InvalidPayment(f"{field} cannot be negative.")
    if payment.channel == CHANNEL_MIXED:
        if not _has_physical(payment):
            raise InvalidPayment("A mixed payment needs a physical amount.")
        if not _has_electronic(payment):
            raise InvalidPayment("A mixed payment needs an electronic amount.")
    if payment.channel in (CHANNEL_ELECTRONIC, CHANNEL_MIXED) and _has_electronic(payment):
        if not payment.bank:
            raise InvalidPayment("Bank is required for electronic payments.")
        if not payment.account_type:
            raise InvalidPayment("Account type is required for electronic payments.")


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------

def allocate_proportionally(total, balances: Sequence) -> list[Decimal]:
    """Split *total* over *balances* in proportion to each positive balance."""
    total = to_decimal(total)
    owed = [max(to_decimal(b), ZERO) for b in balances]
    total_balance = sum(owed, ZERO)
    if total_balance <= 0:
        raise NoOutstandingBalance()
    return [
        round_money(total * balance / total_balance) if balance > 0 else round_money(ZERO)
        for balance in owed
    ]


def _resolve_invoices(invoice_ids: list[int]) -> list[Invoice]:
    found = {inv.id: inv for inv in Invoice.query.filter(Invoice.id.in_(invoice_ids)).all()}
    missing = [i for i in invoice_ids if i not in found]
    if missing:
        raise InvoiceNotFound(missing)
    invoices = [found[i] for i in invoice_ids]
    if len({inv.customer_id for inv in invoices}) > 1:
        raise CrossCustomerInvoiceMix()
    return invoices


def _plan_single(payment: Payment, total: Decimal) -> list[Invoice]:
    cfg = get_billing_config()
    invoice = db.session.get(Invoice, payment.invoice_id)
    if not invoice:
        raise InvoiceNotFound(payment.invoice_id)
    balance = outstanding_balance(invoice)
    if balance <= 0:
        raise NoOutstandingBalance()
    if total > balance * cfg.suspicious_balance_factor:
        logger.warning(
            "Suspicious payment for invoice %s: %s vs balance %s",
            invoice.number,
            total,
            balance,
        )
        raise SuspiciousPaymentAmount(
            f"Payment {total} greatly exceeds the outstanding balance {balance} "
            f"of invoice {invoice.number}."
        )
    if total > to_decimal(invoice.amount) * cfg.suspicious_invoice_multiple:
        logger.warning(
            "Excessive payment for invoice %s: %s vs amount %s",
            invoice.number,
            total,
            invoice.amount,
        )
        raise SuspiciousPaymentAmount(
            f"Payment {total} is too high for invoice {invoice.number} ({invoice.amount})."
        )
    return [invoice]


def _plan_multiple(
    payment: Payment,
    total: Decimal,
    invoice_ids: list[int],
    applied_amounts: Optional[Sequence],
) -> tuple[list[Invoice], list[Decimal]]:
    cfg = get_billing_config()
    invoices = _resolve_invoices(invoice_ids)
    balances = [outstanding_balance(inv) for inv in invoices]

    if applied_amounts is None or len(applied_amounts) != len(invoices):
        if applied_amounts is not None:
            logger.warning(
                "Ignoring %s applied amount(s) for %s invoice(s); allocating by balance",
                len(applied_amounts),
                len(invoices),
            )
        applied = allocate_proportionally(total, balances)
    else:
        applied = [round_money(a) for a in applied_amounts]
        if any(a < 0 for a in applied):
            raise InvalidPayment("Applied amounts cannot be negative.")

    applied_total = sum(applied, ZERO)
    if exceeds_tolerance(applied_total, total, cfg.allocation_tolerance):
        raise OverAllocation(applied_total, total)

    total_balance = sum((max(b, ZERO) for b in balances), ZERO)
    if total > total_balance * cfg.suspicious_invoice_multiple:
        logger.warning(
            "High payment amount %s for %s invoice(s) with balance %s",
            total,
            len(invoices),
            total_balance,
        )
    return invoices, applied


def create_payment(
    payment: Payment,
    invoice_ids: Optional[Iterable[int]] = None,
    applied_amounts: Optional[Sequence] = None,
    clock: Optional[Clock] = None,
) -> Payment:
    """Register *payment* against one or several invoices and settle them.

    Without *invoice_ids* the payment is attached to ``payment.invoice_id``.
    With them, one ``PaymentInvoice`` row is written per invoice, using
    *applied_amounts* when it matches the invoice list, otherwise splitting
    the total in proportion to each invoice's outstanding balance.
    """
    ids = list(dict.fromkeys(invoice_ids or []))
    if not ids and not payment.invoice_id:
        raise InvalidPayment("Select at least one invoice.")

    normalize_legacy_amount(payment)
    validate_payment(payment)
    rate = _rate_for(payment)
    payment.exchange_rate = rate
    total = compute_payment_total(payment)
    if total <= 0:
        raise InvalidPayment("The payment total must be greater than zero.")

    if ids:
        invoices, applied = _plan_multiple(payment, total, ids, applied_amounts)
        payment.invoice_id = None
        payment.invoice_links = [
            PaymentInvoice(invoice_id=inv.id, applied_amount=amount)
            for inv, amount in zip(invoices, applied)
        ]
    else:
        invoices = _plan_single(payment, total)

    payment.amount = total
    payment.currency = derive_currency(payment)
    payment.change_due = compute_change(payment, total)
    if payment.created_at is None:
        payment.created_at = get_clock(clock).now()

    try:
        db.session.add(payment)
        db.session.flush()
        for invoice in invoices:
            settle_invoice(invoice)
        log_action(
            "create",
            "payment",
            payment.id,
            f"{payment.channel} {total} {payment.currency} -> "
            + ", ".join(inv.number for inv in invoices),
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info(
        "Recorded payment %s of %s (%s) for %s invoice(s)",
        payment.id,
        total,
        payment.channel,
        len(invoices),
    )
    return payment


# ---------------------------------------------------------------------------
# Reversal
# ---------------------------------------------------------------------------

def _remove(payment: Payment) -> list[Invoice]:
    """Delete *payment* (links cascade) and return the invoices it touched."""
    touched: list[Invoice] = []
    if payment.invoice is not None:
        touched.append(payment.invoice)
    touched.extend(link.invoice for link in payment.invoice_links)
    log_action("delete", "payment", payment.id, f"{payment.amount} {payment.currency}")
    db.session.delete(payment)
    return touched


def _resettle(invoices: Iterable[Invoice]) -> None:
    db.session.flush()
    seen: set[int] = set()
    for invoice in invoices:
        if invoice.id in seen:
            continue
        seen.add(invoice.id)
        settle_invoice(invoice)


def delete_payment(payment_id: int) -> bool:
    """Delete one payment and re-settle its invoices.  False when not found."""
    payment = db.session.get(Payment, payment_id)
    if not payment:
        return False
    try:
        _resettle(_remove(payment))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    logger.info("Deleted payment %s", payment_id)
    return True


def delete_payments(payment_ids: Iterable[int]) -> tuple[int, int]:
    """Delete several payments in one transaction.

    Returns ``(deleted, not_found)``.
    """
    deleted = 0
    not_found = 0
    touched: list[Invoice] = []
    try:
        for payment_id in dict.fromkeys(payment_ids or []):
            payment = db.session.get(Payment, payment_id)
            if not payment:
                not_found += 1
                continue
            touched.extend(_remove(payment))
            deleted += 1
        if deleted:
            _resettle(touched)
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    logger.info("Deleted %s payment(s), %s not found", deleted, not_found)
    return deleted, not_found


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def summarize_payments_for_day(day: datetime.date) -> dict:
    """Count and amount of the payments received on *day*, per channel."""
    start = datetime.datetime.combine(day, datetime.time())
    end = start + datetime.timedelta(days=1)
    payments = Payment.query.filter(Payment.created_at >= start, Payment.created_at < end).all()

    by_channel = {
        channel: {"count": 0, "amount": round_money(ZERO)}
        for channel in (CHANNEL_PHYSICAL, CHANNEL_ELECTRONIC, CHANNEL_MIXED)
    }
    total = ZERO
    for payment in payments:
        bucket = by_channel.setdefault(payment.channel, {"count": 0, "amount": ZERO})
        bucket["count"] += 1
        bucket["amount"] = round_money(bucket["amount"] + to_decimal(payment.amount))
        total += to_decimal(payment.amount)

    return {
        "date": day.isoformat(),
        "count": len(payments),
        "total": round_money(total),
        "by_channel": by_channel,
    }


def total_collected() -> Decimal:
    value = db.session.query(func.coalesce(func.sum(Payment.amount), 0)).scalar()
    return round_money(value)


def total_outstanding() -> Decimal:
    pending = Invoice.query.filter_by(status=INVOICE_PENDING).all()
    return round_money(sum((max(outstanding_balance(inv), ZERO) for inv in pending), ZERO))
