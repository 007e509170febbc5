"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
from decimal import Decimal, InvalidOperation

import yaml

from config_models import AppConfig, BillingConfig

logger = logging.getLogger(__name__)


def _env_int(name: str, fallback) -> int:
    raw = os.environ.get(name, fallback)
    try:
        return int(raw)
    except (ValueError, TypeError):
        logger.warning("Invalid integer for %s: %r, using %s", name, raw, fallback)
        return int(fallback)


def _env_decimal(name: str, fallback) -> Decimal:
    raw = os.environ.get(name, fallback)
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Invalid decimal for %s: %r, using %s", name, raw, fallback)
        return Decimal(str(fallback))


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    billing_cfg = raw.get("billing", {})
    db_cfg = raw.get("database", {})
    defaults = BillingConfig()

    return (
        AppConfig(
            name=os.environ.get("APP_NAME", app_cfg.get("name", "Subscriber Billing")),
            base_currency=os.environ.get(
                "BASE_CURRENCY", app_cfg.get("base_currency", "NIO")
            ),
            foreign_currency=os.environ.get(
                "FOREIGN_CURRENCY", app_cfg.get("foreign_currency", "USD")
            ),
        ),
        BillingConfig(
            cycle_day=_env_int(
                "BILLING_CYCLE_DAY", billing_cfg.get("cycle_day", defaults.cycle_day)
            ),
            cycle_days=_env_int(
                "BILLING_CYCLE_DAYS", billing_cfg.get("cycle_days", defaults.cycle_days)
            ),
            internet_number_floor=_env_int(
                "BILLING_INTERNET_NUMBER_FLOOR",
                billing_cfg.get("internet_number_floor", defaults.internet_number_floor),
            ),
            streaming_number_suffix=os.environ.get(
                "BILLING_STREAMING_SUFFIX",
                billing_cfg.get("streaming_number_suffix", defaults.streaming_number_suffix),
            ),
            name_token_length=_env_int(
                "BILLING_NAME_TOKEN_LENGTH",
                billing_cfg.get("name_token_length", defaults.name_token_length),
            ),
            name_token_fallback=os.environ.get(
                "BILLING_NAME_TOKEN_FALLBACK",
                billing_cfg.get("name_token_fallback", defaults.name_token_fallback),
            ),
            default_exchange_rate=_env_decimal(
                "BILLING_EXCHANGE_RATE",
                billing_cfg.get("default_exchange_rate", defaults.default_exchange_rate),
            ),
            allocation_tolerance=_env_decimal(
                "BILLING_ALLOCATION_TOLERANCE",
                billing_cfg.get("allocation_tolerance", defaults.allocation_tolerance),
            ),
            suspicious_balance_factor=_env_decimal(
                "BILLING_SUSPICIOUS_BALANCE_FACTOR",
                billing_cfg.get(
                    "suspicious_balance_factor", defaults.suspicious_balance_factor
                ),
            ),
            suspicious_invoice_multiple=_env_decimal(
                "BILLING_SUSPICIOUS_INVOICE_MULTIPLE",
                billing_cfg.get(
                    "suspicious_invoice_multiple", defaults.suspicious_invoice_multiple
                ),
            ),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///billing.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def enable_sqlite_transactions(dbapi_conn, _connection_record):
    """Stop pysqlite from managing BEGIN itself (see ``emit_sqlite_begin``)."""
    dbapi_conn.isolation_level = None


def emit_sqlite_begin(conn):
    """Start every SQLAlchemy transaction with an explicit BEGIN."""
    conn.exec_driver_sql("BEGIN")
