"""SQLAlchemy models for customers, subscriptions, invoices and payments."""

from __future__ import annotations

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Enumerations (stored as plain strings)
# ---------------------------------------------------------------------------

CATEGORY_INTERNET = "internet"
CATEGORY_STREAMING = "streaming"
VALID_CATEGORIES = (CATEGORY_INTERNET, CATEGORY_STREAMING)

INVOICE_PENDING = "pending"
INVOICE_PAID = "paid"
INVOICE_CANCELLED = "cancelled"
VALID_INVOICE_STATUSES = {INVOICE_PENDING, INVOICE_PAID, INVOICE_CANCELLED}

CHANNEL_PHYSICAL = "physical"
CHANNEL_ELECTRONIC = "electronic"
CHANNEL_MIXED = "mixed"
VALID_PAYMENT_CHANNELS = {CHANNEL_PHYSICAL, CHANNEL_ELECTRONIC, CHANNEL_MIXED}

CURRENCY_MIXED = "MIXED"


# ---------------------------------------------------------------------------
# Customers & services
# ---------------------------------------------------------------------------

class Customer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), unique=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(60))
    email = db.Column(db.String(120))
    is_active = db.Column(db.Boolean, default=True)
    enrolled_on = db.Column(db.Date, nullable=False)
    paid_invoice_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)

    subscriptions = db.relationship(
        "Subscription", backref="customer", cascade="all, delete-orphan"
    )

    __table_args__ = (
        db.Index("ix_customer_is_active", "is_active"),
    )


class Service(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255))
    category = db.Column(db.String(30), default="")
    price = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


class Subscription(db.Model):
    """A customer's subscription to a service (quantity only matters for streaming)."""
    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customer.id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("service.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, default=True)
    started_at = db.Column(db.DateTime, default=utc_now)
    ended_at = db.Column(db.DateTime)

    service = db.relationship("Service")

    __table_args__ = (
        db.Index("ix_subscription_customer_active", "customer_id", "is_active"),
        db.CheckConstraint("quantity >= 1", name="ck_subscription_quantity"),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class Invoice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(60), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customer.id"), nullable=False)
    category = db.Column(db.String(30), nullable=False)
    billing_month = db.Column(db.Date, nullable=False)
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default=INVOICE_PENDING)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    customer = db.relationship("Customer")
    items = db.relationship("InvoiceItem", backref="invoice", cascade="all, delete-orphan")
    direct_payments = db.relationship(
        "Payment", foreign_keys="Payment.invoice_id", viewonly=True
    )
    payment_links = db.relationship(
        "PaymentInvoice", foreign_keys="PaymentInvoice.invoice_id", viewonly=True
    )

    __table_args__ = (
        db.Index("ix_invoice_status", "status"),
        db.Index("ix_invoice_customer_id", "customer_id"),
        # Cancelled invoices are retained but do not block a new one.
        db.Index(
            "uq_invoice_customer_category_month",
            "customer_id",
            "category",
            "billing_month",
            unique=True,
            sqlite_where=db.text("status != 'cancelled'"),
            postgresql_where=db.text("status != 'cancelled'"),
        ),
    )


class InvoiceItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("service.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    is_prorated = db.Column(db.Boolean, default=False)

    service = db.relationship("Service")


class NumberSequence(db.Model):
    """Last invoice number issued per category; locked while numbering."""
    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(30), nullable=False, unique=True)
    last_value = db.Column(db.Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), index=True)
    channel = db.Column(db.String(20), nullable=False, default=CHANNEL_PHYSICAL)
    # Legacy single amount/currency pair; ``amount`` holds the computed total.
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)
    currency = db.Column(db.String(10))
    local_physical = db.Column(db.Numeric(10, 2, asdecimal=True))
    foreign_physical = db.Column(db.Numeric(10, 2, asdecimal=True))
    local_electronic = db.Column(db.Numeric(10, 2, asdecimal=True))
    foreign_electronic = db.Column(db.Numeric(10, 2, asdecimal=True))
    exchange_rate = db.Column(db.Numeric(10, 4, asdecimal=True))
    received_amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    change_due = db.Column(db.Numeric(10, 2, asdecimal=True))
    bank = db.Column(db.String(60))
    account_type = db.Column(db.String(60))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    invoice = db.relationship("Invoice", foreign_keys=[invoice_id])
    invoice_links = db.relationship(
        "PaymentInvoice", backref="payment", cascade="all, delete-orphan"
    )

    __table_args__ = (
        db.Index("ix_payment_created_at", "created_at"),
    )


class PaymentInvoice(db.Model):
    """Portion of one payment applied to one invoice."""
    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payment.id"), nullable=False)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False)
    applied_amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False, default=0)

    invoice = db.relationship("Invoice", foreign_keys=[invoice_id])

    __table_args__ = (
        db.Index("ix_payment_invoice_invoice_id", "invoice_id"),
        db.UniqueConstraint("payment_id", "invoice_id", name="uq_payment_invoice"),
        db.CheckConstraint("applied_amount >= 0", name="ck_payment_invoice_applied"),
    )


# ---------------------------------------------------------------------------
# Audit & settings
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )


class AppSetting(db.Model):
    """Key-value store for operator-editable settings (e.g. ``exchange_rate``)."""
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(80), nullable=False, unique=True)
    value = db.Column(db.Text)
