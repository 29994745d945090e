"""Data access layer for StockFlow.

This module provides the ledger entities and the low-level helpers that read
them from and write them to the key-value blob store. Business logic belongs
elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Blob store lifecycle: resolving the data directory and reading or writing
   whole JSON documents under fixed keys.
3. Entity (de)serialization: converting products, transactions, and
   withdrawals to and from their JSON representation, with a seed dataset for
   first start.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from . import log
from .constants import PRODUCTS_KEY, WITHDRAWALS_KEY, TransactionType


CONFIG_FILE_NAME = "config.ini"
DEFAULT_REORDER_TIMEOUT = 30.0


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_dir: Path
    store_name: str
    schema_version: str
    reorder_endpoint: Optional[str] = None
    reorder_timeout: float = DEFAULT_REORDER_TIMEOUT


@dataclass(frozen=True)
class Transaction:
    """A single purchase or sale recorded against a product."""

    id: str
    type: TransactionType
    quantity: int
    price_per_unit: Decimal
    date: datetime

    @property
    def total(self) -> Decimal:
        return self.price_per_unit * self.quantity

    @property
    def stock_delta(self) -> int:
        """Signed change this transaction applies to its product's stock."""
        return self.quantity if self.type is TransactionType.PURCHASE else -self.quantity


@dataclass(frozen=True)
class Product:
    """A stocked product together with its append-only transaction history."""

    id: str
    name: str
    stock: int
    low_stock_threshold: int
    transactions: tuple[Transaction, ...] = field(default_factory=tuple)

    @property
    def is_low_stock(self) -> bool:
        return self.stock <= self.low_stock_threshold


@dataclass(frozen=True)
class Withdrawal:
    """Cash removed from the business, independent of any product."""

    id: str
    amount: Decimal
    date: datetime
    notes: Optional[str] = None


class DirectoryBlobStore:
    """Key-value blob store keeping one JSON document per key in a directory.

    Keys map to ``<directory>/<key>.json``. Values are opaque strings; the
    store never interprets them.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory).expanduser().resolve()

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        # Write through a sibling file so a crash never leaves half a document.
        staging = path.with_suffix(".json.tmp")
        staging.write_text(value, encoding="utf-8")
        staging.replace(path)

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. The ``[Reorder]`` section is optional;
    without it the reorder suggestion feature reports itself as unconfigured.
    Relative ``DataDir`` entries are anchored to ``base_path`` (or the current
    working directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataDir``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``TimeoutSeconds`` is not a number.
    """

    try:
        data_dir_raw = parser.get("System", "DataDir")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_dir = Path(data_dir_raw)
    if not data_dir.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_dir = (base_path / data_dir).resolve()

    reorder_endpoint = parser.get("Reorder", "Endpoint", fallback=None) or None
    reorder_timeout = parser.getfloat(
        "Reorder", "TimeoutSeconds", fallback=DEFAULT_REORDER_TIMEOUT)

    return ConfigSettings(
        data_dir=data_dir,
        store_name=store_name,
        schema_version=schema_version,
        reorder_endpoint=reorder_endpoint,
        reorder_timeout=reorder_timeout,
    )


def open_blob_store(data_dir: Path) -> DirectoryBlobStore:
    """Return the blob store rooted at ``data_dir``, creating the directory."""

    store = DirectoryBlobStore(data_dir)
    store.directory.mkdir(parents=True, exist_ok=True)
    return store


def load_products(blob_store: DirectoryBlobStore, *, now: Optional[datetime] = None) -> List[Product]:
    """Read the product collection, falling back to the seed dataset.

    A missing key, malformed JSON, or a document whose records cannot be
    deserialized all yield :func:`seed_products` rather than an error, so the
    application always starts with a usable ledger.
    """

    raw = blob_store.get(PRODUCTS_KEY)
    if raw is None:
        log.info("No stored products under '%s'; using seed dataset", PRODUCTS_KEY)
        return seed_products(now)
    try:
        return [deserialize_product(record) for record in json.loads(raw)]
    except (ValueError, TypeError, KeyError, InvalidOperation) as exc:
        log.warning("Stored products under '%s' are corrupt (%s); using seed dataset", PRODUCTS_KEY, exc)
        return seed_products(now)


def load_withdrawals(blob_store: DirectoryBlobStore) -> List[Withdrawal]:
    """Read the withdrawal collection, falling back to an empty list."""

    raw = blob_store.get(WITHDRAWALS_KEY)
    if raw is None:
        return []
    try:
        return [deserialize_withdrawal(record) for record in json.loads(raw)]
    except (ValueError, TypeError, KeyError, InvalidOperation) as exc:
        log.warning("Stored withdrawals under '%s' are corrupt (%s); starting empty", WITHDRAWALS_KEY, exc)
        return []


def save_state(
    blob_store: DirectoryBlobStore,
    products: Iterable[Product],
    withdrawals: Iterable[Withdrawal],
) -> None:
    """Rewrite both storage keys in full."""

    blob_store.set(PRODUCTS_KEY, json.dumps([serialize_product(p) for p in products]))
    blob_store.set(WITHDRAWALS_KEY, json.dumps([serialize_withdrawal(w) for w in withdrawals]))


def serialize_transaction(record: Transaction) -> dict[str, Any]:
    """Convert a transaction into its JSON document form.

    Decimals are written as strings so that prices survive the round trip
    without binary floating point drift.
    """

    return {
        "id": record.id,
        "type": record.type.value,
        "quantity": record.quantity,
        "pricePerUnit": str(record.price_per_unit),
        "date": record.date.isoformat(),
    }


def serialize_product(record: Product) -> dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "stock": record.stock,
        "lowStockThreshold": record.low_stock_threshold,
        "transactions": [serialize_transaction(t) for t in record.transactions],
    }


def serialize_withdrawal(record: Withdrawal) -> dict[str, Any]:
    return {
        "id": record.id,
        "amount": str(record.amount),
        "notes": record.notes,
        "date": record.date.isoformat(),
    }


def deserialize_transaction(raw: Mapping[str, Any]) -> Transaction:
    """Convert a JSON mapping into a strongly typed transaction.

    Prices are accepted either as strings or as JSON numbers (older documents
    stored plain numbers) and normalized through ``str`` into ``Decimal``.
    """

    return Transaction(
        id=str(raw["id"]),
        type=TransactionType(raw["type"]),
        quantity=int(raw["quantity"]),
        price_per_unit=Decimal(str(raw["pricePerUnit"])),
        date=parse_timestamp(raw["date"]),
    )


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    return Product(
        id=str(raw["id"]),
        name=str(raw["name"]),
        stock=int(raw["stock"]),
        low_stock_threshold=int(raw["lowStockThreshold"]),
        transactions=tuple(deserialize_transaction(t) for t in raw.get("transactions", ())),
    )


def deserialize_withdrawal(raw: Mapping[str, Any]) -> Withdrawal:
    notes = raw.get("notes")
    return Withdrawal(
        id=str(raw["id"]),
        amount=Decimal(str(raw["amount"])),
        notes=str(notes) if notes is not None else None,
        date=parse_timestamp(raw["date"]),
    )


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive or ``Z`` values as UTC."""

    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def _seed_transaction(txn_id: str, kind: TransactionType, quantity: int, price: str, when: datetime) -> Transaction:
    return Transaction(
        id=txn_id,
        type=kind,
        quantity=quantity,
        price_per_unit=Decimal(price),
        date=when,
    )


def seed_products(now: Optional[datetime] = None) -> List[Product]:
    """Return the starter catalogue used when no product data is stored.

    Transaction dates are expressed relative to ``now`` so the seed history
    always looks recent.
    """

    now = now or datetime.now(UTC)

    def days_ago(days: int) -> datetime:
        return now - timedelta(days=days)

    purchase, sale = TransactionType.PURCHASE, TransactionType.SALE
    seed: Sequence[tuple[str, str, int, int, tuple[Transaction, ...]]] = (
        ("prod-1", "Organic Green Tea", 85, 20, (
            _seed_transaction("txn-1", purchase, 100, "5.50", days_ago(20)),
            _seed_transaction("txn-2", sale, 10, "12.00", days_ago(15)),
            _seed_transaction("txn-3", sale, 5, "12.50", days_ago(5)),
        )),
        ("prod-2", "Artisanal Coffee Beans", 40, 15, (
            _seed_transaction("txn-4", purchase, 50, "15.00", days_ago(30)),
            _seed_transaction("txn-5", sale, 5, "25.00", days_ago(20)),
            _seed_transaction("txn-6", sale, 5, "25.00", days_ago(10)),
        )),
        ("prod-3", "Premium Chocolate Bar", 120, 30, (
            _seed_transaction("txn-7", purchase, 150, "2.50", days_ago(25)),
            _seed_transaction("txn-8", sale, 20, "5.00", days_ago(12)),
            _seed_transaction("txn-9", sale, 10, "5.25", days_ago(3)),
        )),
        ("prod-4", "Stainless Steel Water Bottle", 8, 10, (
            _seed_transaction("txn-10", purchase, 50, "8.00", days_ago(40)),
            _seed_transaction("txn-11", sale, 42, "18.00", days_ago(7)),
        )),
    )
    return [
        Product(id=pid, name=name, stock=stock, low_stock_threshold=threshold, transactions=history)
        for pid, name, stock, threshold, history in seed
    ]
