"""Constants shared across StockFlow modules.

Centralises the storage keys, CSV wire headers, and domain enumerations so
that the persistence adapter, the ledger engine, and the command-line front
end rely on a single source of truth.
"""

from __future__ import annotations

from enum import Enum


# Schema version expected in ``config.ini`` before any mutation is allowed.
EXPECTED_SCHEMA_VERSION = "1.0.0"

PRODUCTS_KEY = "stockflow-products"
WITHDRAWALS_KEY = "stockflow-withdrawals"

MIN_PRODUCT_NAME_LENGTH = 3
# Threshold given to products first seen in an imported CSV file.
IMPORT_LOW_STOCK_THRESHOLD = 10

IMPORT_HEADERS: tuple[str, ...] = (
    "ProductName",
    "Type",
    "Quantity",
    "PricePerUnit",
    "Date",
)

EXPORT_HEADERS: tuple[str, ...] = (
    "ProductName",
    "TransactionID",
    "Type",
    "Quantity",
    "PricePerUnit",
    "TotalCost",
    "Date",
)

MONTH_ABBREVIATIONS: tuple[str, ...] = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


class TransactionType(str, Enum):
    """Enumerate the transaction types recorded against a product."""

    SALE = "sale"
    PURCHASE = "purchase"


class OutcomeKind(str, Enum):
    """Variant of the notification produced by a ledger operation."""

    SUCCESS = "success"
    FAILURE = "failure"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PRODUCTS_KEY",
    "WITHDRAWALS_KEY",
    "MIN_PRODUCT_NAME_LENGTH",
    "IMPORT_LOW_STOCK_THRESHOLD",
    "IMPORT_HEADERS",
    "EXPORT_HEADERS",
    "MONTH_ABBREVIATIONS",
    "TransactionType",
    "OutcomeKind",
]
