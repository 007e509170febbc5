"""Runtime settings for the billing services: config, clock, exchange rate."""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from flask import current_app

from config_models import AppConfig, BillingConfig
from models import AppSetting
from utils import Clock

logger = logging.getLogger(__name__)

EXCHANGE_RATE_KEY = "exchange_rate"


def get_billing_config() -> BillingConfig:
    return current_app.config.get("BILLING_CONFIG") or BillingConfig()


def get_app_config() -> AppConfig:
    return current_app.config["APP_CONFIG"]


def get_clock(clock: Optional[Clock] = None) -> Clock:
    """Return *clock*, else the app's ``BILLING_CLOCK``, else the wall clock."""
    if clock is not None:
        return clock
    return current_app.config.get("BILLING_CLOCK") or Clock()


def _get_setting(key: str, default: str = "") -> str:
    row = AppSetting.query.filter_by(key=key).first()
    return row.value if row and row.value else default


def get_default_exchange_rate() -> Decimal:
    """Return the operator-set exchange rate, falling back to the configured one."""
    fallback = get_billing_config().default_exchange_rate
    raw = _get_setting(EXCHANGE_RATE_KEY)
    if not raw:
        return fallback
    try:
        rate = Decimal(raw.strip().replace(",", "."))
    except (InvalidOperation, ValueError):
        logger.warning("Invalid exchange_rate setting %r, using %s", raw, fallback)
        return fallback
    if rate <= 0:
        logger.warning("Non-positive exchange_rate setting %r, using %s", raw, fallback)
        return fallback
    return rate
