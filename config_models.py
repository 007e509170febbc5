from dataclasses import dataclass
from decimal import Decimal


@dataclass
class AppConfig:
    name: str
    base_currency: str
    foreign_currency: str


@dataclass
class BillingConfig:
    cycle_day: int = 5
    cycle_days: int = 30
    internet_number_floor: int = 179
    streaming_number_suffix: str = "-STR"
    name_token_length: int = 10
    name_token_fallback: str = "CLIENTE"
    default_exchange_rate: Decimal = Decimal("36.80")
    # Business heuristics carried over from the cashier screens; pending
    # product-owner confirmation.
    allocation_tolerance: Decimal = Decimal("0.01")
    suspicious_balance_factor: Decimal = Decimal("1.10")
    suspicious_invoice_multiple: Decimal = Decimal("10")
