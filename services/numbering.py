"""Per-category invoice numbering.

Numbers look like ``0179-JuanPerez-112025`` (Internet) or
``0001-JuanPerez-112025-STR`` (Streaming):

  NNNN       sequence, zero-padded to 4 digits, independent per category
  name       customer name without whitespace, at most 10 characters
  MMYYYY     billing month
  suffix     only on the streaming track

The Internet track never issues a number below its configured floor.
"""

from __future__ import annotations

import datetime
import re
from typing import Optional

from extensions import db
from models import CATEGORY_STREAMING, Customer, Invoice, NumberSequence
from services.settings import get_billing_config

_WHITESPACE_RE = re.compile(r"\s+")


def _category_suffix(category: str) -> str:
    if category == CATEGORY_STREAMING:
        return get_billing_config().streaming_number_suffix
    return ""


def _belongs_to(number: str, category: str) -> bool:
    suffix = get_billing_config().streaming_number_suffix
    is_streaming = bool(suffix) and number.endswith(suffix)
    return is_streaming == (category == CATEGORY_STREAMING)


def parse_sequence(number: Optional[str]) -> Optional[int]:
    """Return the leading numeric token of *number*, or ``None``."""
    if not number:
        return None
    try:
        return int(number.split("-", 1)[0])
    except ValueError:
        return None


def scan_max_sequence(category: str) -> int:
    """Highest sequence already used by *category* (0 when none)."""
    suffix = get_billing_config().streaming_number_suffix
    query = db.session.query(Invoice.number)
    if suffix:
        marker = Invoice.number.like(f"%{suffix}")
        query = query.filter(marker if category == CATEGORY_STREAMING else ~marker)
    highest = 0
    for (number,) in query:
        if not number or not _belongs_to(number, category):
            continue
        seq = parse_sequence(number)
        if seq is not None and seq > highest:
            highest = seq
    return highest


def _next_sequence(category: str) -> int:
    """Lock the category counter and increment it.

    A new counter row starts from the highest number already on file, so
    invoices created before the counter existed are never reused.
    """
    cfg = get_billing_config()
    seq = NumberSequence.query.filter_by(category=category).with_for_update().first()
    if not seq:
        seq = NumberSequence(category=category, last_value=scan_max_sequence(category))
        db.session.add(seq)
        db.session.flush()

    current = seq.last_value or 0
    floor = cfg.internet_number_floor if category != CATEGORY_STREAMING else 0
    value = floor if current < floor else current + 1
    seq.last_value = value
    db.session.flush()
    return value


def customer_name_token(name: Optional[str]) -> str:
    cfg = get_billing_config()
    token = _WHITESPACE_RE.sub("", name or "")[: cfg.name_token_length]
    return token or cfg.name_token_fallback


def format_invoice_number(
    sequence: int, category: str, customer_name: Optional[str], billing_month: datetime.date
) -> str:
    return (
        f"{sequence:04d}-{customer_name_token(customer_name)}-"
        f"{billing_month:%m%Y}{_category_suffix(category)}"
    )


def next_invoice_number(
    category: str, customer: Customer, billing_month: datetime.date
) -> str:
    """Allocate the next invoice number for *category*.

    Must run inside the transaction that inserts the invoice: the counter row
    stays locked until that transaction ends.
    """
    sequence = _next_sequence(category)
    return format_invoice_number(sequence, category, customer.name, billing_month)
