"""First-invoice proration for the 5th-to-5th billing cycle."""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal

from models import CATEGORY_STREAMING, INVOICE_CANCELLED, Customer, Invoice, Service
from services.money import round_money, to_decimal
from services.settings import get_billing_config
from utils import add_months, first_of_month, last_of_month

logger = logging.getLogger(__name__)


def is_first_invoice(customer_id: int) -> bool:
    """True when the customer has never been billed (cancelled invoices ignored)."""
    return (
        Invoice.query.filter(
            Invoice.customer_id == customer_id,
            Invoice.status != INVOICE_CANCELLED,
        ).first()
        is None
    )


def prorated_amount(price, enrolled_on: datetime.date, billing_month: datetime.date) -> Decimal:
    """Amount owed for the cycle in which the customer enrolled.

    Full price unless enrollment falls inside *billing_month* after the
    cycle day; then the days from enrollment through the cycle day of the
    following month (inclusive) are billed at ``price / cycle_days``.
    """
    cfg = get_billing_config()
    price = round_money(price)
    month_start = first_of_month(billing_month)

    if enrolled_on > last_of_month(month_start):
        return price
    if enrolled_on < month_start:
        return price
    if enrolled_on.day <= cfg.cycle_day:
        return price

    next_month = add_months(month_start, 1)
    cycle_end = next_month.replace(day=min(cfg.cycle_day, last_of_month(next_month).day))
    billed_days = (cycle_end - enrolled_on).days + 1
    cost_per_day = price / Decimal(cfg.cycle_days)
    return min(round_money(billed_days * cost_per_day), price)


def first_invoice_amount(
    customer: Customer, service: Service, billing_month: datetime.date
) -> Decimal:
    """Line amount for an Internet service on the customer's first invoice."""
    if service.category == CATEGORY_STREAMING:
        return round_money(to_decimal(service.price))
    amount = prorated_amount(service.price, customer.enrolled_on, billing_month)
    if amount != round_money(service.price):
        logger.info(
            "Prorated %s for customer %s (enrolled %s): %s of %s",
            service.name,
            customer.id,
            customer.enrolled_on,
            amount,
            service.price,
        )
    return amount
