"""Error taxonomy for the StockFlow ledger."""

from __future__ import annotations


class InventoryError(Exception):
    """Raised when a requested operation violates a ledger constraint."""


class ValidationError(InventoryError):
    """Raised when caller input is malformed before any mutation happens."""


class NotFoundError(InventoryError):
    """Raised when a referenced product does not exist."""


class InsufficientStockError(InventoryError):
    """Raised when a sale would drive a product's stock below zero."""


class FormatError(InventoryError):
    """Raised when a CSV feed violates its structural or field contract."""
