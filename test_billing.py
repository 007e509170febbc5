"""Tests for proration, invoice numbering, invoice generation and the recurring run."""

import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from config_models import BillingConfig
from conftest import DECEMBER, NOVEMBER
from extensions import db
from models import (
    CATEGORY_INTERNET,
    CATEGORY_STREAMING,
    INVOICE_CANCELLED,
    AuditLog,
    Customer,
    Invoice,
    NumberSequence,
    Subscription,
)
from services import invoicing, numbering
from services.errors import (
    CustomerNotFound,
    DuplicateInvoiceForPeriod,
    ServiceNotFoundOrInactive,
)
from services.invoicing import GenerationMode, generate_invoices, invoice_exists
from services.numbering import (
    customer_name_token,
    format_invoice_number,
    next_invoice_number,
    parse_sequence,
    scan_max_sequence,
)
from services.proration import is_first_invoice, prorated_amount
from services.recurring import billable_lines, billing_month_for, run_recurring_billing
from services.settlement import cancel_invoice
from utils import FixedClock

PRICE = Decimal("600.00")


# ============================================================================
# Proration
# ============================================================================


class TestProration:
    def test_enrolled_after_cycle_day(self, app):
        with app.app_context():
            amount = prorated_amount(PRICE, datetime.date(2025, 11, 13), NOVEMBER)
            assert amount == Decimal("460.00")

    def test_enrolled_on_cycle_day(self, app):
        with app.app_context():
            assert prorated_amount(PRICE, datetime.date(2025, 11, 5), NOVEMBER) == PRICE

    def test_enrolled_early_in_month(self, app):
        with app.app_context():
            assert prorated_amount(PRICE, datetime.date(2025, 11, 1), NOVEMBER) == PRICE

    def test_enrolled_before_billing_month(self, app):
        with app.app_context():
            assert prorated_amount(PRICE, datetime.date(2025, 10, 20), NOVEMBER) == PRICE

    def test_enrolled_after_billing_month(self, app):
        with app.app_context():
            assert prorated_amount(PRICE, datetime.date(2025, 12, 10), NOVEMBER) == PRICE

    def test_last_day_of_month(self, app):
        with app.app_context():
            # Nov 30 through Dec 5 is six days.
            amount = prorated_amount(PRICE, datetime.date(2025, 11, 30), NOVEMBER)
            assert amount == Decimal("120.00")

    def test_short_month(self, app):
        with app.app_context():
            amount = prorated_amount(
                PRICE, datetime.date(2025, 2, 20), datetime.date(2025, 2, 1)
            )
            assert amount == Decimal("280.00")

    def test_clamped_to_price(self, app):
        with app.app_context():
            # Jan 6 through Feb 5 is 31 days, more than a 30-day cycle.
            amount = prorated_amount(
                PRICE, datetime.date(2025, 1, 6), datetime.date(2025, 1, 1)
            )
            assert amount == PRICE

    def test_cycle_day_past_month_end(self, app):
        app.config["BILLING_CONFIG"] = BillingConfig(cycle_day=30)
        with app.app_context():
            # Jan 31 through Feb 28, the cycle day clamped to February's end.
            amount = prorated_amount(
                PRICE, datetime.date(2025, 1, 31), datetime.date(2025, 1, 1)
            )
            assert amount == Decimal("580.00")

    def test_rounds_half_up(self, app):
        with app.app_context():
            # 23 days * 100/30 = 76.666...
            amount = prorated_amount(Decimal("100"), datetime.date(2025, 11, 13), NOVEMBER)
            assert amount == Decimal("76.67")

    def test_is_first_invoice_ignores_cancelled(self, app, sample_data):
        with app.app_context():
            assert is_first_invoice(sample_data["juan_id"]) is True
            result = generate_invoices(
                sample_data["juan_id"], [sample_data["internet_id"]], NOVEMBER
            )
            assert is_first_invoice(sample_data["juan_id"]) is False
            cancel_invoice(result.invoices[0].id)
            assert is_first_invoice(sample_data["juan_id"]) is True


# ============================================================================
# Invoice numbering
# ============================================================================


class TestNumbering:
    def test_format_internet(self, app):
        with app.app_context():
            number = format_invoice_number(179, CATEGORY_INTERNET, "Juan Perez", NOVEMBER)
            assert number == "0179-JuanPerez-112025"

    def test_format_streaming(self, app):
        with app.app_context():
            number = format_invoice_number(1, CATEGORY_STREAMING, "Juan Perez", NOVEMBER)
            assert number == "0001-JuanPerez-112025-STR"

    def test_name_token_truncated(self, app):
        with app.app_context():
            assert customer_name_token("Maria Fernanda Lopez") == "MariaFerna"

    def test_name_token_fallback(self, app):
        with app.app_context():
            assert customer_name_token("   ") == "CLIENTE"
            assert customer_name_token(None) == "CLIENTE"

    def test_parse_sequence(self):
        assert parse_sequence("0179-JuanPerez-112025") == 179
        assert parse_sequence("0007-X-112025-STR") == 7
        assert parse_sequence("INV-2025") is None
        assert parse_sequence("") is None

    def test_internet_starts_at_floor(self, app, sample_data):
        with app.app_context():
            juan = db.session.get(Customer, sample_data["juan_id"])
            assert next_invoice_number(CATEGORY_INTERNET, juan, NOVEMBER).startswith("0179-")
            assert next_invoice_number(CATEGORY_INTERNET, juan, NOVEMBER).startswith("0180-")

    def test_streaming_starts_at_one(self, app, sample_data):
        with app.app_context():
            juan = db.session.get(Customer, sample_data["juan_id"])
            number = next_invoice_number(CATEGORY_STREAMING, juan, NOVEMBER)
            assert number == "0001-JuanPerez-112025-STR"

    def test_scan_continues_existing_numbers(self, app, sample_data, make_invoice):
        with app.app_context():
            make_invoice(sample_data["maria_id"], 600, "0250-Legacy-102025")
            make_invoice(
                sample_data["maria_id"],
                150,
                "0007-Legacy-102025-STR",
                category=CATEGORY_STREAMING,
            )
            assert scan_max_sequence(CATEGORY_INTERNET) == 250
            assert scan_max_sequence(CATEGORY_STREAMING) == 7

            juan = db.session.get(Customer, sample_data["juan_id"])
            assert next_invoice_number(CATEGORY_INTERNET, juan, NOVEMBER).startswith("0251-")
            assert next_invoice_number(CATEGORY_STREAMING, juan, NOVEMBER).startswith("0008-")

    def test_counter_remembers_last_value(self, app, sample_data):
        with app.app_context():
            juan = db.session.get(Customer, sample_data["juan_id"])
            next_invoice_number(CATEGORY_INTERNET, juan, NOVEMBER)
            seq = NumberSequence.query.filter_by(category=CATEGORY_INTERNET).one()
            assert seq.last_value == 179

    def test_counter_not_rescanned(self, app, sample_data, monkeypatch):
        with app.app_context():
            juan = db.session.get(Customer, sample_data["juan_id"])
            next_invoice_number(CATEGORY_INTERNET, juan, NOVEMBER)

            def fail_scan(category):
                raise AssertionError(f"{category} numbers scanned again")

            monkeypatch.setattr(numbering, "scan_max_sequence", fail_scan)
            assert next_invoice_number(CATEGORY_INTERNET, juan, NOVEMBER).startswith("0180-")

    def test_numbers_strictly_increase(self, app, sample_data):
        with app.app_context():
            for month in (NOVEMBER, DECEMBER, datetime.date(2026, 1, 1)):
                generate_invoices(
                    sample_data["juan_id"],
                    [sample_data["internet_id"], sample_data["streaming_id"]],
                    month,
                )
            for category in (CATEGORY_INTERNET, CATEGORY_STREAMING):
                numbers = [
                    parse_sequence(inv.number)
                    for inv in Invoice.query.filter_by(category=category)
                    .order_by(Invoice.id)
                    .all()
                ]
                assert numbers == sorted(set(numbers))
            internet = [
                parse_sequence(inv.number)
                for inv in Invoice.query.filter_by(category=CATEGORY_INTERNET).all()
            ]
            assert min(internet) >= 179


# ============================================================================
# Invoice generation
# ============================================================================


class TestGenerateInvoices:
    def test_first_invoices(self, app, sample_data):
        with app.app_context():
            result = generate_invoices(
                sample_data["juan_id"],
                [sample_data["internet_id"], sample_data["streaming_id"]],
                NOVEMBER,
            )
            assert len(result) == 2
            assert result.warnings == []

            internet, streaming = result.invoices
            assert internet.category == CATEGORY_INTERNET
            assert internet.amount == Decimal("460.00")
            assert internet.number == "0179-JuanPerez-112025"
            assert internet.items[0].is_prorated is True

            assert streaming.category == CATEGORY_STREAMING
            assert streaming.amount == Decimal("300.00")
            assert streaming.items[0].quantity == 2
            assert streaming.number == "0001-JuanPerez-112025-STR"

    def test_streaming_order_does_not_consume_first_invoice(self, app, sample_data):
        with app.app_context():
            result = generate_invoices(
                sample_data["juan_id"],
                [sample_data["streaming_id"], sample_data["internet_id"]],
                NOVEMBER,
            )
            amounts = {inv.category: inv.amount for inv in result}
            assert amounts[CATEGORY_INTERNET] == Decimal("460.00")

    def test_later_invoice_full_price(self, app, sample_data):
        with app.app_context():
            generate_invoices(sample_data["juan_id"], [sample_data["internet_id"]], NOVEMBER)
            result = generate_invoices(
                sample_data["juan_id"], [sample_data["internet_id"]], DECEMBER
            )
            assert result.invoices[0].amount == PRICE
            assert result.invoices[0].items[0].is_prorated is False

    def test_billing_month_normalized(self, app, sample_data):
        with app.app_context():
            result = generate_invoices(
                sample_data["maria_id"],
                [sample_data["internet_id"]],
                datetime.date(2025, 11, 20),
            )
            assert result.invoices[0].billing_month == NOVEMBER

    def test_duplicate_raises_when_nothing_created(self, app, sample_data):
        with app.app_context():
            generate_invoices(sample_data["juan_id"], [sample_data["internet_id"]], NOVEMBER)
            with pytest.raises(DuplicateInvoiceForPeriod, match="already has"):
                generate_invoices(
                    sample_data["juan_id"], [sample_data["internet_id"]], NOVEMBER
                )
            assert Invoice.query.count() == 1

    def test_duplicate_reported_as_warning(self, app, sample_data):
        with app.app_context():
            generate_invoices(sample_data["juan_id"], [sample_data["internet_id"]], NOVEMBER)
            result = generate_invoices(
                sample_data["juan_id"],
                [sample_data["internet_id"], sample_data["streaming_id"]],
                NOVEMBER,
            )
            assert [inv.category for inv in result] == [CATEGORY_STREAMING]
            assert len(result.warnings) == 1
            assert "internet" in result.warnings[0]
            assert result.skipped[0].error.code == "duplicate_invoice_for_period"

    def test_duplicate_silent_in_batch(self, app, sample_data):
        with app.app_context():
            generate_invoices(sample_data["juan_id"], [sample_data["internet_id"]], NOVEMBER)
            result = generate_invoices(
                sample_data["juan_id"],
                [sample_data["internet_id"]],
                NOVEMBER,
                mode=GenerationMode.BATCH,
            )
            assert len(result) == 0
            assert result.warnings == []

    def test_cancelled_invoice_does_not_block(self, app, sample_data):
        with app.app_context():
            first = generate_invoices(
                sample_data["juan_id"], [sample_data["internet_id"]], NOVEMBER
            )
            cancel_invoice(first.invoices[0].id)
            assert not invoice_exists(sample_data["juan_id"], CATEGORY_INTERNET, NOVEMBER)

            again = generate_invoices(
                sample_data["juan_id"], [sample_data["internet_id"]], NOVEMBER
            )
            assert again.invoices[0].number.startswith("0180-")
            assert again.invoices[0].amount == Decimal("460.00")
            assert Invoice.query.filter_by(status=INVOICE_CANCELLED).count() == 1

    def test_database_error_in_one_category_keeps_others(self, app, sample_data, monkeypatch):
        create = invoicing._create_category_invoice

        def fail_streaming(customer, category, *args):
            if category == CATEGORY_STREAMING:
                raise IntegrityError("INSERT INTO invoice", {}, Exception("duplicate"))
            return create(customer, category, *args)

        monkeypatch.setattr(invoicing, "_create_category_invoice", fail_streaming)
        with app.app_context():
            result = generate_invoices(
                sample_data["juan_id"],
                [sample_data["internet_id"], sample_data["streaming_id"]],
                NOVEMBER,
            )
            assert [inv.category for inv in result] == [CATEGORY_INTERNET]
            assert len(result.warnings) == 1
            assert result.skipped[0].category == CATEGORY_STREAMING
            assert Invoice.query.count() == 1
            assert Invoice.query.one().number == "0179-JuanPerez-112025"

    def test_database_error_raised_when_nothing_created(self, app, sample_data, monkeypatch):
        def fail(*args):
            raise IntegrityError("INSERT INTO invoice", {}, Exception("duplicate"))

        monkeypatch.setattr(invoicing, "_create_category_invoice", fail)
        with app.app_context():
            with pytest.raises(IntegrityError):
                generate_invoices(
                    sample_data["juan_id"], [sample_data["streaming_id"]], NOVEMBER
                )
            assert Invoice.query.count() == 0

    def test_inactive_service_rejected(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ServiceNotFoundOrInactive):
                generate_invoices(sample_data["juan_id"], [sample_data["retired_id"]], NOVEMBER)

    def test_uncategorized_service_rejected(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ServiceNotFoundOrInactive):
                generate_invoices(sample_data["juan_id"], [sample_data["router_id"]], NOVEMBER)

    def test_unknown_service_rejected(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ServiceNotFoundOrInactive, match="9999"):
                generate_invoices(sample_data["juan_id"], [9999], NOVEMBER)

    def test_invalid_service_reported_with_valid_one(self, app, sample_data):
        with app.app_context():
            result = generate_invoices(
                sample_data["maria_id"],
                [sample_data["internet_id"], sample_data["retired_id"]],
                NOVEMBER,
            )
            assert len(result) == 1
            assert len(result.warnings) == 1
            assert str(sample_data["retired_id"]) in result.warnings[0]

    def test_unknown_customer(self, app, sample_data):
        with app.app_context():
            with pytest.raises(CustomerNotFound):
                generate_invoices(9999, [sample_data["internet_id"]], NOVEMBER)

    def test_errors_are_value_errors(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ValueError):
                generate_invoices(9999, [sample_data["internet_id"]], NOVEMBER)

    def test_creation_is_audited(self, app, sample_data):
        with app.app_context():
            generate_invoices(sample_data["maria_id"], [sample_data["internet_id"]], NOVEMBER)
            entry = AuditLog.query.filter_by(entity_type="invoice", action="create").one()
            assert "0179-MariaLopez-112025" in entry.details


# ============================================================================
# Recurring billing run
# ============================================================================


class TestRecurringBilling:
    def test_billing_month_is_previous_month(self):
        assert billing_month_for(datetime.date(2025, 12, 3)) == NOVEMBER
        assert billing_month_for(datetime.date(2026, 1, 15)) == DECEMBER

    def test_run_bills_previous_month(self, app, sample_data):
        with app.app_context():
            assert run_recurring_billing() == 3
            invoices = Invoice.query.order_by(Invoice.id).all()
            assert {inv.billing_month for inv in invoices} == {NOVEMBER}
            assert [inv.number for inv in invoices] == [
                "0179-JuanPerez-112025",
                "0001-JuanPerez-112025-STR",
                "0180-MariaLopez-112025",
            ]
            assert invoices[0].amount == Decimal("460.00")
            assert invoices[2].amount == PRICE

    def test_rerun_creates_nothing(self, app, sample_data):
        with app.app_context():
            assert run_recurring_billing() == 3
            assert run_recurring_billing() == 0
            assert Invoice.query.count() == 3

    def test_explicit_clock(self, app, sample_data):
        with app.app_context():
            created = run_recurring_billing(clock=FixedClock(datetime.date(2026, 1, 10)))
            assert created == 3
            assert {inv.billing_month for inv in Invoice.query.all()} == {DECEMBER}

    def test_duplicate_subscriptions_collapsed(self, app, sample_data):
        with app.app_context():
            db.session.add(
                Subscription(
                    customer_id=sample_data["juan_id"],
                    service_id=sample_data["internet_id"],
                    started_at=datetime.datetime(2025, 11, 20, 9, 0),
                )
            )
            db.session.commit()

            juan = db.session.get(Customer, sample_data["juan_id"])
            lines = billable_lines(juan)
            assert [line.service.id for line in lines] == [
                sample_data["internet_id"],
                sample_data["streaming_id"],
            ]
            assert run_recurring_billing() == 3

    def test_earliest_duplicate_quantity_billed(self, app, sample_data):
        with app.app_context():
            db.session.add_all(
                [
                    Subscription(
                        customer_id=sample_data["juan_id"],
                        service_id=sample_data["streaming_id"],
                        quantity=3,
                        started_at=datetime.datetime(2025, 11, 1, 9, 0),
                    ),
                    Subscription(
                        customer_id=sample_data["juan_id"],
                        service_id=sample_data["streaming_id"],
                        quantity=5,
                        started_at=datetime.datetime(2025, 11, 25, 9, 0),
                    ),
                ]
            )
            db.session.commit()

            juan = db.session.get(Customer, sample_data["juan_id"])
            quantities = {line.service.id: line.quantity for line in billable_lines(juan)}
            assert quantities == {
                sample_data["internet_id"]: 1,
                sample_data["streaming_id"]: 3,
            }

            run_recurring_billing()
            streaming = Invoice.query.filter_by(
                customer_id=sample_data["juan_id"], category=CATEGORY_STREAMING
            ).one()
            assert streaming.items[0].quantity == 3
            assert streaming.amount == Decimal("450.00")

    def test_skips_inactive_customers(self, app, sample_data):
        with app.app_context():
            maria = db.session.get(Customer, sample_data["maria_id"])
            maria.is_active = False
            db.session.commit()
            assert run_recurring_billing() == 2

    def test_skips_customers_without_billable_services(self, app, sample_data):
        with app.app_context():
            pedro = Customer(name="Pedro Ruiz", enrolled_on=datetime.date(2025, 6, 1))
            db.session.add(pedro)
            db.session.flush()
            db.session.add_all(
                [
                    Subscription(customer_id=pedro.id, service_id=sample_data["router_id"]),
                    Subscription(customer_id=pedro.id, service_id=sample_data["retired_id"]),
                ]
            )
            db.session.commit()

            assert run_recurring_billing() == 3
            assert Invoice.query.filter_by(customer_id=pedro.id).count() == 0

    def test_inactive_subscription_not_billed(self, app, sample_data):
        with app.app_context():
            sub = Subscription.query.filter_by(
                customer_id=sample_data["juan_id"], service_id=sample_data["streaming_id"]
            ).one()
            sub.is_active = False
            db.session.commit()
            assert run_recurring_billing() == 2

    def test_manual_invoice_not_duplicated(self, app, sample_data):
        with app.app_context():
            generate_invoices(sample_data["maria_id"], [sample_data["internet_id"]], NOVEMBER)
            assert run_recurring_billing() == 2
            assert Invoice.query.filter_by(customer_id=sample_data["maria_id"]).count() == 1

    def test_run_is_audited(self, app, sample_data):
        with app.app_context():
            run_recurring_billing()
            entry = AuditLog.query.filter_by(action="recurring_run").one()
            assert entry.details == "11/2025: 3 invoice(s) created"
