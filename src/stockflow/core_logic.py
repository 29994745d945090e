"""Business logic layer for StockFlow.

This module contains the ledger engine that owns the product and withdrawal
collections. Mutations replace entities as whole immutable values, so a
partial update is never observable. Each operation reports a structured
:class:`Outcome` instead of raising into the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Set, Union

from . import csv_io, data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, MIN_PRODUCT_NAME_LENGTH, OutcomeKind, TransactionType
from .data_manager import Product, Transaction, Withdrawal
from .exceptions import InsufficientStockError, InventoryError, NotFoundError, ValidationError


@dataclass(frozen=True)
class Outcome:
    """Result of a ledger operation, rendered by the caller as a notification."""

    kind: OutcomeKind
    title: str
    message: str
    value: Any = None
    error: Optional[InventoryError] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(cls, title: str, message: str, value: Any = None) -> "Outcome":
        return cls(kind=OutcomeKind.SUCCESS, title=title, message=message, value=value)

    @classmethod
    def failure(cls, title: str, error: InventoryError) -> "Outcome":
        return cls(kind=OutcomeKind.FAILURE, title=title, message=str(error), error=error)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier such as ``txn-20240101120000123456``.

    Microsecond precision keeps identifiers chronological;
    :meth:`InventoryStore._allocate_id` resolves the rare collision.
    """

    when = when or _resolve_timestamp(None)
    return f"{prefix}-{when.strftime('%Y%m%d%H%M%S%f')}"


def _to_decimal(value: Union[Decimal, int, float, str], field_name: str) -> Decimal:
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"{field_name} must be a number, got {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number, got {value!r}")
    return result


def _require_product_name(name: str) -> str:
    cleaned = (name or "").strip()
    if len(cleaned) < MIN_PRODUCT_NAME_LENGTH:
        raise ValidationError(
            f"Product name must be at least {MIN_PRODUCT_NAME_LENGTH} characters."
        )
    return cleaned


def _require_whole_number(value: int, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be a whole number, got {value!r}")


def _require_non_negative(value: int, label: str) -> None:
    _require_whole_number(value, label)
    if value < 0:
        raise ValidationError(f"{label} cannot be negative.")


class InventoryStore:
    """Authoritative in-memory ledger of products and withdrawals.

    The store is an ordinary object: callers create one (usually through
    :func:`load_runtime_context`) and pass it to whatever needs it. Collections
    are exposed as tuples; the only way to change them is through the
    operation methods, each of which returns exactly one :class:`Outcome`.

    When a blob store is attached, both collections are written back in full
    after every successful mutation.
    """

    def __init__(
        self,
        products: Sequence[Product] = (),
        withdrawals: Sequence[Withdrawal] = (),
        *,
        blob_store: Optional[data_manager.DirectoryBlobStore] = None,
    ) -> None:
        self._products: List[Product] = list(products)
        self._withdrawals: List[Withdrawal] = list(withdrawals)
        self.blob_store = blob_store
        self._issued_ids: Set[str] = set()
        for product in self._products:
            self._issued_ids.add(product.id)
            self._issued_ids.update(txn.id for txn in product.transactions)
        self._issued_ids.update(w.id for w in self._withdrawals)

    @classmethod
    def from_blob_store(cls, blob_store: data_manager.DirectoryBlobStore) -> "InventoryStore":
        products = data_manager.load_products(blob_store)
        withdrawals = data_manager.load_withdrawals(blob_store)
        log.info("Loaded %d products and %d withdrawals", len(products), len(withdrawals))
        return cls(products, withdrawals, blob_store=blob_store)

    @property
    def products(self) -> tuple[Product, ...]:
        return tuple(self._products)

    @property
    def withdrawals(self) -> tuple[Withdrawal, ...]:
        return tuple(self._withdrawals)

    def get_product(self, product_id: str) -> Product:
        """Resolve a product by identifier.

        Raises:
            NotFoundError: If no product carries ``product_id``.
        """
        return self._products[self._index_of(product_id)]

    def find_product_by_name(self, name: str) -> Optional[Product]:
        """Return the first product whose name matches case-insensitively."""
        wanted = name.strip().casefold()
        for product in self._products:
            if product.name.casefold() == wanted:
                return product
        return None

    def _index_of(self, product_id: str) -> int:
        for index, product in enumerate(self._products):
            if product.id == product_id:
                return index
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Product not found: {product_id}")

    def _allocate_id(self, prefix: str) -> str:
        base = generate_id(prefix)
        candidate = base
        suffix = 1
        while candidate in self._issued_ids:
            candidate = f"{base}-{suffix}"
            suffix += 1
        self._issued_ids.add(candidate)
        return candidate

    def _sync(self) -> None:
        """Write both collections to the blob store, if one is attached.

        Writes are fire-and-forget: a failure is logged and the in-memory
        mutation stands.
        """
        if self.blob_store is None:
            return
        try:
            data_manager.save_state(self.blob_store, self._products, self._withdrawals)
        except OSError as exc:
            log.error("Failed to persist ledger to '%s': %s", self.blob_store.directory, exc)

    def _attempt(self, failure_title: str, operation: Callable[..., Outcome], *args: Any, **kwargs: Any) -> Outcome:
        try:
            outcome = operation(*args, **kwargs)
        except InventoryError as exc:
            log.warning("%s: %s", failure_title, exc)
            return Outcome.failure(failure_title, exc)
        self._sync()
        return outcome

    def create_product(
        self,
        name: str,
        initial_stock: int,
        low_stock_threshold: int,
        purchase_price: Union[Decimal, int, float, str, None] = Decimal("0"),
        *,
        timestamp: Optional[datetime] = None,
    ) -> Outcome:
        """Add a product, seeding a purchase for any initial stock.

        When ``initial_stock`` is positive and ``purchase_price`` is given, a
        purchase of that quantity at that price is recorded so the product's
        history explains its stock. Passing ``purchase_price=None`` sets the
        stock without a seed transaction.

        Returns:
            Outcome: Success carries the new :class:`Product` as ``value``;
                failure wraps a :class:`ValidationError`.
        """
        return self._attempt(
            "Product Not Added",
            self._create_product,
            name,
            initial_stock,
            low_stock_threshold,
            purchase_price,
            timestamp,
        )

    def _create_product(
        self,
        name: str,
        initial_stock: int,
        low_stock_threshold: int,
        purchase_price: Union[Decimal, int, float, str, None],
        timestamp: Optional[datetime],
    ) -> Outcome:
        cleaned_name = _require_product_name(name)
        _require_non_negative(initial_stock, "Initial stock")
        _require_non_negative(low_stock_threshold, "Low stock threshold")
        price = _to_decimal(purchase_price, "Purchase price") if purchase_price is not None else None

        transactions: tuple[Transaction, ...] = ()
        if initial_stock > 0 and price is not None and price >= 0:
            transactions = (
                Transaction(
                    id=self._allocate_id("txn"),
                    type=TransactionType.PURCHASE,
                    quantity=initial_stock,
                    price_per_unit=price,
                    date=_resolve_timestamp(timestamp),
                ),
            )

        product = Product(
            id=self._allocate_id("prod"),
            name=cleaned_name,
            stock=initial_stock,
            low_stock_threshold=low_stock_threshold,
            transactions=transactions,
        )
        self._products.append(product)
        log.info(
            "Created product '%s' (%s) with stock=%d threshold=%d",
            product.name,
            product.id,
            product.stock,
            product.low_stock_threshold,
        )
        return Outcome.success(
            "Product Added",
            f"{product.name} has been added to your inventory.",
            product,
        )

    def edit_product(self, product_id: str, name: str, low_stock_threshold: int) -> Outcome:
        """Rename a product and/or change its threshold; stock is untouched."""
        return self._attempt("Update Failed", self._edit_product, product_id, name, low_stock_threshold)

    def _edit_product(self, product_id: str, name: str, low_stock_threshold: int) -> Outcome:
        index = self._index_of(product_id)
        cleaned_name = _require_product_name(name)
        _require_non_negative(low_stock_threshold, "Low stock threshold")
        updated = replace(self._products[index], name=cleaned_name, low_stock_threshold=low_stock_threshold)
        self._products[index] = updated
        log.info("Updated product '%s' (name='%s', threshold=%d)", product_id, cleaned_name, low_stock_threshold)
        return Outcome.success("Product Updated", f"{updated.name} has been updated.", updated)

    def delete_product(self, product_id: str) -> Outcome:
        """Remove a product together with its entire history."""
        return self._attempt("Delete Failed", self._delete_product, product_id)

    def _delete_product(self, product_id: str) -> Outcome:
        index = self._index_of(product_id)
        removed = self._products.pop(index)
        log.info(
            "Deleted product '%s' (%s) and %d transactions",
            removed.name,
            removed.id,
            len(removed.transactions),
        )
        return Outcome.success("Product Deleted", f"{removed.name} has been removed from your inventory.", removed)

    def record_transaction(
        self,
        product_id: str,
        transaction_type: Union[TransactionType, str],
        quantity: int,
        price_per_unit: Union[Decimal, int, float, str],
        *,
        timestamp: Optional[datetime] = None,
    ) -> Outcome:
        """Append a purchase or sale and adjust stock in one step.

        Sales larger than the current stock are rejected with
        :class:`InsufficientStockError` and leave the ledger unchanged.

        Returns:
            Outcome: Success carries the new :class:`Transaction` as
                ``value``.
        """
        return self._attempt(
            "Transaction Failed",
            self._record_transaction,
            product_id,
            transaction_type,
            quantity,
            price_per_unit,
            timestamp,
        )

    def _record_transaction(
        self,
        product_id: str,
        transaction_type: Union[TransactionType, str],
        quantity: int,
        price_per_unit: Union[Decimal, int, float, str],
        timestamp: Optional[datetime],
    ) -> Outcome:
        index = self._index_of(product_id)
        product = self._products[index]
        try:
            kind = TransactionType(transaction_type)
        except ValueError as exc:
            raise ValidationError(f"Unsupported transaction type: {transaction_type}") from exc
        _require_whole_number(quantity, "Quantity")
        if quantity <= 0:
            raise ValidationError("Quantity must be a positive number.")
        price = _to_decimal(price_per_unit, "Price per unit")
        if price < 0:
            raise ValidationError("Price per unit cannot be negative.")
        if kind is TransactionType.SALE and quantity > product.stock:
            raise InsufficientStockError(
                f"Not enough stock for {product.name}. Available: {product.stock}, Required: {quantity}."
            )

        transaction = Transaction(
            id=self._allocate_id("txn"),
            type=kind,
            quantity=quantity,
            price_per_unit=price,
            date=_resolve_timestamp(timestamp),
        )
        self._products[index] = replace(
            product,
            stock=product.stock + transaction.stock_delta,
            transactions=product.transactions + (transaction,),
        )
        log.info(
            "Recorded %s '%s' for product '%s' (quantity=%d, price=%s)",
            kind.value,
            transaction.id,
            product_id,
            quantity,
            price,
        )
        return Outcome.success(
            "Transaction Recorded",
            f"A new {kind.value} for {product.name} has been recorded.",
            transaction,
        )

    def record_withdrawal(
        self,
        amount: Union[Decimal, int, float, str],
        notes: Optional[str] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> Outcome:
        """Append a cash withdrawal."""
        return self._attempt("Withdrawal Failed", self._record_withdrawal, amount, notes, timestamp)

    def _record_withdrawal(
        self,
        amount: Union[Decimal, int, float, str],
        notes: Optional[str],
        timestamp: Optional[datetime],
    ) -> Outcome:
        value = _to_decimal(amount, "Withdrawal amount")
        if value <= 0:
            raise ValidationError("Withdrawal amount must be positive.")
        withdrawal = Withdrawal(
            id=self._allocate_id("wd"),
            amount=value,
            notes=(notes or None),
            date=_resolve_timestamp(timestamp),
        )
        self._withdrawals.append(withdrawal)
        log.info("Recorded withdrawal '%s' (amount=%s)", withdrawal.id, value)
        return Outcome.success("Withdrawal Recorded", f"Withdrawal of ${value:.2f} has been recorded.", withdrawal)

    def import_csv(self, text: str) -> Outcome:
        """Import a transaction feed atomically.

        Returns:
            Outcome: Success carries the number of imported rows as
                ``value``; on failure the product collection is untouched.
        """
        return self._attempt("Import Failed", self._import_csv, text)

    def _import_csv(self, text: str) -> Outcome:
        rows = csv_io.parse_import(text)
        working, count = csv_io.apply_import(self._products, rows, self._allocate_id)
        self._products = working
        log.info("Imported %d transactions from CSV", count)
        return Outcome.success("Import Successful", f"Successfully imported {count} transactions.", count)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the ledger used by the front end."""

    settings: data_manager.ConfigSettings
    store: InventoryStore


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and the persisted ledger.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upward
            from the current working directory.

    Returns:
        RuntimeContext: Settings plus a store attached to the configured blob
            store.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    blob_store = data_manager.open_blob_store(settings.data_dir)
    store = InventoryStore.from_blob_store(blob_store)
    log.info("Loaded runtime context for data directory '%s'", settings.data_dir)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate data compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Data schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Data schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)
