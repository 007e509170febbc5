"""Recurring monthly billing run.

Customers consume a month and pay for it afterwards, so a run always bills
the calendar month before the run date.  The scheduler that triggers the run
lives outside the application (``flask billing run-recurring``).
"""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import Customer, Subscription
from services.audit import log_action
from services.errors import BillingError
from services.invoicing import BillableLine, GenerationMode, bill_customer, is_billable
from services.settings import get_clock
from utils import Clock, previous_month

logger = logging.getLogger(__name__)


def billing_month_for(run_date: datetime.date) -> datetime.date:
    return previous_month(run_date)


def active_customers_with_subscriptions() -> list[Customer]:
    return (
        Customer.query.filter(Customer.is_active.is_(True))
        .join(Subscription, Subscription.customer_id == Customer.id)
        .filter(Subscription.is_active.is_(True))
        .distinct()
        .order_by(Customer.id)
        .all()
    )


def _start_key(sub: Subscription):
    started = sub.started_at
    if started is None:
        return (datetime.datetime.max, sub.id)
    # SQLite hands back naive datetimes; compare everything as naive UTC.
    return (started.replace(tzinfo=None), sub.id)


def billable_lines(customer: Customer) -> list[BillableLine]:
    """Active subscriptions collapsed to one per service (earliest start wins)."""
    subs = sorted((s for s in customer.subscriptions if s.is_active), key=_start_key)
    seen: set[int] = set()
    lines = []
    for sub in subs:
        if sub.service_id in seen:
            logger.warning(
                "Customer %s has duplicate active subscriptions to service %s; "
                "keeping the earliest",
                customer.id,
                sub.service_id,
            )
            continue
        seen.add(sub.service_id)
        if not is_billable(sub.service):
            continue
        lines.append(BillableLine(sub.service, max(sub.quantity or 1, 1)))
    return lines


def run_recurring_billing(clock: Optional[Clock] = None) -> int:
    """Bill every active customer for the previous month.

    Returns the number of invoices created.  Per-customer failures are
    logged and skipped; the invoices of the whole run are committed once.
    """
    run_date = get_clock(clock).today()
    billing_month = billing_month_for(run_date)
    logger.info("Recurring billing run for %s started", billing_month.strftime("%m/%Y"))

    created = 0
    skipped_customers = 0
    try:
        for customer in active_customers_with_subscriptions():
            lines = billable_lines(customer)
            if not lines:
                logger.debug("Customer %s has no billable subscriptions", customer.id)
                skipped_customers += 1
                continue
            try:
                result = bill_customer(customer, lines, billing_month, GenerationMode.BATCH)
            except (BillingError, SQLAlchemyError):
                logger.exception("Recurring billing failed for customer %s", customer.id)
                skipped_customers += 1
                continue
            created += len(result)

        log_action(
            "recurring_run",
            "invoice",
            None,
            f"{billing_month:%m/%Y}: {created} invoice(s) created",
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Recurring billing run for %s rolled back", billing_month)
        raise

    logger.info(
        "Recurring billing run for %s finished: %s invoice(s) created, %s customer(s) skipped",
        billing_month.strftime("%m/%Y"),
        created,
        skipped_customers,
    )
    return created
