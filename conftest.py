"""Shared fixtures for the billing test suite."""

import datetime
import os
from decimal import Decimal

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests

from app import create_app
from extensions import db
from models import (
    CATEGORY_INTERNET,
    CATEGORY_STREAMING,
    INVOICE_PENDING,
    Customer,
    Invoice,
    Service,
    Subscription,
)
from utils import FixedClock

# Runs happen on Dec 3, 2025, so they bill November 2025.
TODAY = datetime.date(2025, 12, 3)
NOVEMBER = datetime.date(2025, 11, 1)
DECEMBER = datetime.date(2025, 12, 1)


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["BILLING_CLOCK"] = FixedClock(TODAY)
    yield application


@pytest.fixture
def sample_data(app):
    """Create customers, services and subscriptions. Returns dict of IDs."""
    with app.app_context():
        internet = Service(
            name="Internet 10 Mbps", category=CATEGORY_INTERNET, price=Decimal("600.00")
        )
        streaming = Service(
            name="Streaming Plus", category=CATEGORY_STREAMING, price=Decimal("150.00")
        )
        retired = Service(
            name="Internet 2 Mbps",
            category=CATEGORY_INTERNET,
            price=Decimal("300.00"),
            is_active=False,
        )
        router = Service(name="Router rental", category="", price=Decimal("50.00"))
        db.session.add_all([internet, streaming, retired, router])
        db.session.flush()

        juan = Customer(code="C-001", name="Juan Perez", enrolled_on=datetime.date(2025, 11, 13))
        maria = Customer(code="C-002", name="Maria Lopez", enrolled_on=datetime.date(2025, 1, 3))
        db.session.add_all([juan, maria])
        db.session.flush()

        started = datetime.datetime(2025, 11, 13, 9, 0)
        db.session.add_all(
            [
                Subscription(
                    customer_id=juan.id, service_id=internet.id, started_at=started
                ),
                Subscription(
                    customer_id=juan.id,
                    service_id=streaming.id,
                    quantity=2,
                    started_at=started,
                ),
                Subscription(
                    customer_id=maria.id,
                    service_id=internet.id,
                    started_at=datetime.datetime(2025, 1, 3, 9, 0),
                ),
            ]
        )
        db.session.commit()

        # Return IDs only (not ORM objects) to avoid DetachedInstanceError
        return {
            "juan_id": juan.id,
            "maria_id": maria.id,
            "internet_id": internet.id,
            "streaming_id": streaming.id,
            "retired_id": retired.id,
            "router_id": router.id,
        }


@pytest.fixture
def make_invoice(app):
    """Insert a pending invoice directly, bypassing generation."""

    def _make(customer_id, amount, number, category=CATEGORY_INTERNET, month=NOVEMBER):
        invoice = Invoice(
            number=number,
            customer_id=customer_id,
            category=category,
            billing_month=month,
            amount=Decimal(str(amount)),
            status=INVOICE_PENDING,
        )
        db.session.add(invoice)
        db.session.commit()
        return invoice.id

    return _make
