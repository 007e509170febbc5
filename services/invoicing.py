"""Invoice generation for a customer's subscribed services.

One routine serves both callers.  ``GenerationMode.MANUAL`` (an operator
billing a customer) reports duplicates and invalid services back and raises
when nothing could be billed; ``GenerationMode.BATCH`` (the recurring run)
skips duplicates silently and logs failures.  Each category is written in its
own savepoint so one failing category never blocks the others.
"""

from __future__ import annotations

import datetime
import enum
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import (
    CATEGORY_INTERNET,
    CATEGORY_STREAMING,
    INVOICE_CANCELLED,
    INVOICE_PENDING,
    VALID_CATEGORIES,
    Customer,
    Invoice,
    InvoiceItem,
    Service,
    Subscription,
)
from services.audit import log_action
from services.errors import (
    BillingError,
    CustomerNotFound,
    DuplicateInvoiceForPeriod,
    ServiceNotFoundOrInactive,
)
from services.money import ZERO, round_money, to_decimal
from services.numbering import next_invoice_number
from services.proration import first_invoice_amount, is_first_invoice
from utils import first_of_month

logger = logging.getLogger(__name__)


class GenerationMode(enum.Enum):
    MANUAL = "manual"
    BATCH = "batch"


@dataclass
class BillableLine:
    service: Service
    quantity: int = 1


@dataclass
class SkippedCategory:
    category: Optional[str]
    error: Exception


@dataclass
class GenerationResult:
    invoices: list = field(default_factory=list)
    skipped: list = field(default_factory=list)

    def __iter__(self):
        return iter(self.invoices)

    def __len__(self):
        return len(self.invoices)

    @property
    def warnings(self) -> list[str]:
        return [str(s.error) for s in self.skipped]


def is_billable(service: Optional[Service]) -> bool:
    return bool(service and service.is_active and service.category in VALID_CATEGORIES)


def invoice_exists(customer_id: int, category: str, billing_month: datetime.date) -> bool:
    """True when a non-cancelled invoice already covers the period."""
    return (
        Invoice.query.filter(
            Invoice.customer_id == customer_id,
            Invoice.category == category,
            Invoice.billing_month == first_of_month(billing_month),
            Invoice.status != INVOICE_CANCELLED,
        ).first()
        is not None
    )


def _line_amount(
    customer: Customer,
    line: BillableLine,
    billing_month: datetime.date,
    first_invoice: bool,
) -> tuple[Decimal, bool]:
    """Return (amount, prorated?) for one invoice line."""
    service = line.service
    if service.category == CATEGORY_STREAMING:
        return round_money(to_decimal(service.price) * line.quantity), False
    if first_invoice:
        amount = first_invoice_amount(customer, service, billing_month)
        return amount, amount != round_money(service.price)
    return round_money(service.price), False


def _create_category_invoice(
    customer: Customer,
    category: str,
    lines: list[BillableLine],
    billing_month: datetime.date,
    first_invoice: bool,
) -> Invoice:
    invoice = Invoice(
        customer_id=customer.id,
        category=category,
        billing_month=billing_month,
        status=INVOICE_PENDING,
    )
    total = ZERO
    for line in lines:
        quantity = line.quantity if category == CATEGORY_STREAMING else 1
        amount, prorated = _line_amount(
            customer, BillableLine(line.service, quantity), billing_month, first_invoice
        )
        invoice.items.append(
            InvoiceItem(
                service_id=line.service.id,
                quantity=quantity,
                unit_price=line.service.price,
                amount=amount,
                is_prorated=prorated,
            )
        )
        total += amount

    invoice.amount = round_money(total)
    invoice.number = next_invoice_number(category, customer, billing_month)
    db.session.add(invoice)
    db.session.flush()
    log_action(
        "create",
        "invoice",
        invoice.id,
        f"{invoice.number} {category} {billing_month:%m/%Y} amount={invoice.amount}",
    )
    return invoice


def bill_customer(
    customer: Customer,
    lines: Iterable[BillableLine],
    billing_month: datetime.date,
    mode: GenerationMode,
) -> GenerationResult:
    """Write one invoice per category for *customer*; does NOT commit."""
    billing_month = first_of_month(billing_month)
    result = GenerationResult()

    grouped: dict[str, list[BillableLine]] = {}
    for line in lines:
        grouped.setdefault(line.service.category, []).append(line)

    first_invoice = is_first_invoice(customer.id)

    # Internet first so proration sees the customer's first-ever invoice.
    for category in VALID_CATEGORIES:
        category_lines = grouped.get(category)
        if not category_lines:
            continue

        if invoice_exists(customer.id, category, billing_month):
            error = DuplicateInvoiceForPeriod(customer.id, category, billing_month)
            if mode is GenerationMode.MANUAL:
                logger.warning("%s", error)
                result.skipped.append(SkippedCategory(category, error))
            else:
                logger.debug("%s", error)
            continue

        try:
            with db.session.begin_nested():
                invoice = _create_category_invoice(
                    customer, category, category_lines, billing_month, first_invoice
                )
        except BillingError as exc:
            logger.warning(
                "Skipping %s invoice for customer %s: %s", category, customer.id, exc
            )
            result.skipped.append(SkippedCategory(category, exc))
            continue
        except SQLAlchemyError as exc:
            # The savepoint already undid this category; keep the others.
            logger.exception(
                "Could not create %s invoice for customer %s", category, customer.id
            )
            if mode is GenerationMode.MANUAL:
                result.skipped.append(SkippedCategory(category, exc))
            continue

        logger.info(
            "Created invoice %s for customer %s (%s, %s): %s",
            invoice.number,
            customer.id,
            category,
            billing_month.strftime("%m/%Y"),
            invoice.amount,
        )
        result.invoices.append(invoice)
        if category == CATEGORY_INTERNET:
            first_invoice = False

    return result


def _subscription_quantities(customer_id: int) -> dict[int, int]:
    """Quantity per service from the customer's active subscriptions (earliest wins)."""
    quantities: dict[int, int] = {}
    subs = (
        Subscription.query.filter_by(customer_id=customer_id, is_active=True)
        .order_by(Subscription.started_at, Subscription.id)
        .all()
    )
    for sub in subs:
        quantities.setdefault(sub.service_id, max(sub.quantity or 1, 1))
    return quantities


def generate_invoices(
    customer_id: int,
    service_ids: Iterable[int],
    billing_month: datetime.date,
    mode: GenerationMode = GenerationMode.MANUAL,
) -> GenerationResult:
    """Bill *customer_id* for *service_ids* in *billing_month*.

    In MANUAL mode the invoices are committed and the call raises the
    first recorded error (usually a ``BillingError``) when no invoice at all
    could be created.
    In BATCH mode nothing is committed; the caller owns the transaction.
    """
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise CustomerNotFound(customer_id)

    requested = list(dict.fromkeys(service_ids))
    quantities = _subscription_quantities(customer.id)
    lines: list[BillableLine] = []
    invalid: list[int] = []
    for service_id in requested:
        service = db.session.get(Service, service_id)
        if not is_billable(service):
            invalid.append(service_id)
            continue
        lines.append(BillableLine(service, quantities.get(service.id, 1)))

    if not lines:
        raise ServiceNotFoundOrInactive(requested)

    try:
        result = bill_customer(customer, lines, billing_month, mode)
        if invalid:
            error = ServiceNotFoundOrInactive(invalid)
            logger.warning("Customer %s: %s", customer.id, error)
            result.skipped.append(SkippedCategory(None, error))

        if mode is GenerationMode.MANUAL:
            if not result.invoices:
                db.session.rollback()
                raise result.skipped[0].error
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    return result
