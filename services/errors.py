"""Errors raised by the billing and payment services.

Every error is a ``ValueError`` so callers that only care about "the request
was invalid" can keep catching that; ``code`` is a stable identifier for
anything that needs to branch on the specific kind.
"""

from __future__ import annotations


class BillingError(ValueError):
    code = "billing_error"


class CustomerNotFound(BillingError):
    code = "customer_not_found"

    def __init__(self, customer_id):
        super().__init__(f"Customer {customer_id} does not exist.")
        self.customer_id = customer_id


class ServiceNotFoundOrInactive(BillingError):
    code = "service_not_found_or_inactive"

    def __init__(self, service_ids):
        ids = ", ".join(str(s) for s in service_ids)
        super().__init__(f"No active, categorized service among: {ids}.")
        self.service_ids = list(service_ids)


class DuplicateInvoiceForPeriod(BillingError):
    code = "duplicate_invoice_for_period"

    def __init__(self, customer_id, category, billing_month):
        super().__init__(
            f"Customer {customer_id} already has a {category} invoice "
            f"for {billing_month:%m/%Y}."
        )
        self.customer_id = customer_id
        self.category = category
        self.billing_month = billing_month


class InvoiceNotFound(BillingError):
    code = "invoice_not_found"

    def __init__(self, invoice_ids):
        if isinstance(invoice_ids, int):
            invoice_ids = [invoice_ids]
        ids = ", ".join(str(i) for i in invoice_ids)
        super().__init__(f"Invoice(s) not found: {ids}.")
        self.invoice_ids = list(invoice_ids)


class CrossCustomerInvoiceMix(BillingError):
    code = "cross_customer_invoice_mix"

    def __init__(self):
        super().__init__("All selected invoices must belong to the same customer.")


class NoOutstandingBalance(BillingError):
    code = "no_outstanding_balance"

    def __init__(self):
        super().__init__("The selected invoices have no outstanding balance.")


class OverAllocation(BillingError):
    code = "over_allocation"

    def __init__(self, applied_total, payment_total):
        super().__init__(
            f"Applied amounts ({applied_total}) exceed the payment total "
            f"({payment_total})."
        )
        self.applied_total = applied_total
        self.payment_total = payment_total


class InvoiceHasLinkedPayments(BillingError):
    code = "invoice_has_linked_payments"

    def __init__(self, invoice_id):
        super().__init__(
            f"Invoice {invoice_id} has payments applied and cannot be deleted."
        )
        self.invoice_id = invoice_id


class InvoiceStateError(BillingError):
    code = "invoice_state_error"


class InvalidPayment(BillingError):
    code = "invalid_payment"


class SuspiciousPaymentAmount(BillingError):
    code = "suspicious_payment_amount"
