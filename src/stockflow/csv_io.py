"""CSV import parser and export serializers for the transaction log.

The import side turns a ``ProductName,Type,Quantity,PricePerUnit,Date`` feed
into an updated product collection without touching the caller's data: rows
are validated first, then applied to a working copy that only replaces the
live collection when every row succeeded.

The export side renders a filtered transaction view as CSV text, as an
``openpyxl`` workbook, or as an import-compatible feed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .constants import EXPORT_HEADERS, IMPORT_HEADERS, IMPORT_LOW_STOCK_THRESHOLD, TransactionType
from .data_manager import Product, Transaction
from .exceptions import FormatError, InsufficientStockError
from .reporting import DateRange, iter_transactions


LINE_SPLIT = re.compile(r"\r?\n")
ISO_DATE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}", re.ASCII)
WHOLE_NUMBER = re.compile(r"[0-9]+", re.ASCII)
PLAIN_DECIMAL = re.compile(r"[0-9]+(?:\.[0-9]+)?|\.[0-9]+", re.ASCII)
BYTE_ORDER_MARK = "\ufeff"

IdFactory = Callable[[str], str]


@dataclass(frozen=True)
class ImportRow:
    """One validated data row of an import feed."""

    row_number: int
    product_name: str
    type: TransactionType
    quantity: int
    price_per_unit: Decimal
    date: datetime


@dataclass(frozen=True)
class ExportResult:
    """Rendered export; ``row_count == 0`` signals that nothing matched."""

    text: str
    row_count: int

    @property
    def is_empty(self) -> bool:
        return self.row_count == 0


def parse_import(text: str) -> List[ImportRow]:
    """Validate the structure and fields of an import feed.

    Args:
        text (str): Raw CSV content.

    Returns:
        list[ImportRow]: Typed rows in file order.

    Raises:
        FormatError: On the first structural or field violation. Row numbers
            in messages count the header as row 1.
    """

    lines = [line.strip() for line in LINE_SPLIT.split(text.lstrip(BYTE_ORDER_MARK).strip())]
    if len(lines) < 2:
        raise FormatError("CSV file must contain a header row and at least one data row.")

    expected_header = ",".join(IMPORT_HEADERS)
    if lines[0] != expected_header:
        raise FormatError(f"Invalid CSV header. Expected: {expected_header}")

    rows: List[ImportRow] = []
    for index, line in enumerate(lines[1:]):
        if not line:
            continue
        rows.append(parse_import_line(line, row_number=index + 2))

    if not rows:
        raise FormatError("CSV file must contain a header row and at least one data row.")
    return rows


def parse_import_line(line: str, *, row_number: int) -> ImportRow:
    fields = [value.strip() for value in line.split(",")]
    if len(fields) != len(IMPORT_HEADERS):
        raise FormatError(
            f"Row {row_number}: expected {len(IMPORT_HEADERS)} columns but found {len(fields)}."
        )
    name, type_raw, quantity_raw, price_raw, date_raw = fields

    if not name:
        raise FormatError(f"Row {row_number}: ProductName must not be empty.")

    try:
        kind = TransactionType(type_raw)
    except ValueError as exc:
        raise FormatError(
            f"Row {row_number}: Invalid Type '{type_raw}'. Must be 'sale' or 'purchase'."
        ) from exc

    if not WHOLE_NUMBER.fullmatch(quantity_raw) or int(quantity_raw) <= 0:
        raise FormatError(
            f"Row {row_number}: Invalid Quantity '{quantity_raw}'. Must be a positive whole number."
        )
    quantity = int(quantity_raw)

    # Plain decimal notation only: no sign, exponent or digit separators.
    if not PLAIN_DECIMAL.fullmatch(price_raw):
        raise FormatError(
            f"Row {row_number}: Invalid PricePerUnit '{price_raw}'. Must be a non-negative number."
        )
    price = Decimal(price_raw)

    return ImportRow(
        row_number=row_number,
        product_name=name,
        type=kind,
        quantity=quantity,
        price_per_unit=price,
        date=_parse_import_date(date_raw, row_number),
    )


def _parse_import_date(value: str, row_number: int) -> datetime:
    message = f"Row {row_number}: Invalid Date '{value}'. Must be a valid date in YYYY-MM-DD format."
    if not ISO_DATE.fullmatch(value):
        raise FormatError(message)
    try:
        day = date.fromisoformat(value)
    except ValueError as exc:
        raise FormatError(message) from exc
    return datetime(day.year, day.month, day.day, tzinfo=UTC)


def apply_import(
    products: Sequence[Product],
    rows: Iterable[ImportRow],
    new_id: IdFactory,
) -> Tuple[List[Product], int]:
    """Apply validated rows to a working copy of ``products``.

    Products are matched by case-insensitive name; unknown names become new
    products with the import low-stock threshold and zero stock. Sales are
    checked against the running stock accumulated so far in this import.

    Args:
        products (Sequence[Product]): Current collection; never modified.
        rows (Iterable[ImportRow]): Rows from :func:`parse_import`.
        new_id (Callable[[str], str]): Allocates a fresh unique identifier for
            the given prefix (``"prod"`` or ``"txn"``).

    Returns:
        tuple[list[Product], int]: Replacement collection and rows applied.

    Raises:
        InsufficientStockError: If a sale exceeds the running stock.
    """

    working: List[Product] = list(products)
    index_by_name: Dict[str, int] = {}
    for position, product in enumerate(working):
        index_by_name.setdefault(product.name.casefold(), position)

    applied = 0
    for row in rows:
        key = row.product_name.casefold()
        position = index_by_name.get(key)
        if position is None:
            working.append(
                Product(
                    id=new_id("prod"),
                    name=row.product_name,
                    stock=0,
                    low_stock_threshold=IMPORT_LOW_STOCK_THRESHOLD,
                )
            )
            position = len(working) - 1
            index_by_name[key] = position
            log.debug("Import row %d introduces product '%s'", row.row_number, row.product_name)

        product = working[position]
        if row.type is TransactionType.SALE and row.quantity > product.stock:
            raise InsufficientStockError(
                f"Row {row.row_number}: Insufficient stock for '{product.name}'. "
                f"Available: {product.stock}, Required: {row.quantity}."
            )

        transaction = Transaction(
            id=new_id("txn"),
            type=row.type,
            quantity=row.quantity,
            price_per_unit=row.price_per_unit,
            date=row.date,
        )
        working[position] = replace(
            product,
            stock=product.stock + transaction.stock_delta,
            transactions=product.transactions + (transaction,),
        )
        applied += 1

    return working, applied


def format_decimal(value: Decimal) -> str:
    """Render a decimal without trailing zeros or exponent notation."""

    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def format_timestamp(moment: datetime) -> str:
    """Render ``moment`` as a UTC ISO timestamp with millisecond precision."""

    utc = moment.astimezone(UTC) if moment.tzinfo is not None else moment
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def export_rows(
    products: Iterable[Product],
    *,
    product_id: Optional[str] = None,
    date_range: Optional[DateRange] = None,
) -> List[Tuple[str, Transaction]]:
    """Return ``(product_name, transaction)`` pairs selected for export."""

    return [
        (product.name, txn)
        for product, txn in iter_transactions(products, date_range=date_range, product_id=product_id)
    ]


def export_transactions(
    products: Iterable[Product],
    *,
    product_id: Optional[str] = None,
    date_range: Optional[DateRange] = None,
) -> ExportResult:
    """Render the filtered transaction view as CSV text."""

    rows = export_rows(products, product_id=product_id, date_range=date_range)
    if not rows:
        return ExportResult(text="", row_count=0)

    lines = [",".join(EXPORT_HEADERS)]
    for name, txn in rows:
        lines.append(
            ",".join(
                [
                    quote(name),
                    txn.id,
                    txn.type.value,
                    str(txn.quantity),
                    format_decimal(txn.price_per_unit),
                    format_decimal(txn.total),
                    quote(format_timestamp(txn.date)),
                ]
            )
        )
    log.info("Exported %d transactions to CSV", len(rows))
    return ExportResult(text="\n".join(lines), row_count=len(rows))


def export_import_feed(
    products: Iterable[Product],
    *,
    product_id: Optional[str] = None,
    date_range: Optional[DateRange] = None,
) -> ExportResult:
    """Render the filtered view in the five-column import format.

    Dates are reduced to their UTC calendar day. Product names containing a
    comma cannot be represented in the unquoted import format.

    Raises:
        FormatError: If a selected product name contains a comma.
    """

    rows = export_rows(products, product_id=product_id, date_range=date_range)
    if not rows:
        return ExportResult(text="", row_count=0)

    lines = [",".join(IMPORT_HEADERS)]
    for name, txn in rows:
        if "," in name:
            raise FormatError(f"Product name '{name}' contains a comma and cannot be exported as an import feed.")
        day = txn.date.astimezone(UTC).date() if txn.date.tzinfo is not None else txn.date.date()
        lines.append(
            ",".join([name, txn.type.value, str(txn.quantity), format_decimal(txn.price_per_unit), day.isoformat()])
        )
    return ExportResult(text="\n".join(lines), row_count=len(rows))


def build_export_workbook(
    products: Iterable[Product],
    *,
    product_id: Optional[str] = None,
    date_range: Optional[DateRange] = None,
) -> Optional[Workbook]:
    """Build a single-sheet workbook mirroring the CSV export.

    Returns ``None`` when no transaction matches the filters.
    """

    rows = export_rows(products, product_id=product_id, date_range=date_range)
    if not rows:
        return None

    wb = openpyxl.Workbook()
    sheet = wb.active
    sheet.title = "Transactions"
    bold_font = Font(bold=True)
    for col_idx, column_name in enumerate(EXPORT_HEADERS, 1):
        cell = sheet.cell(row=1, column=col_idx)
        cell.value = column_name
        cell.font = bold_font

    for name, txn in rows:
        sheet.append(
            [
                name,
                txn.id,
                txn.type.value,
                txn.quantity,
                txn.price_per_unit,
                txn.total,
                format_timestamp(txn.date),
            ]
        )
    return wb


def export_workbook(
    products: Iterable[Product],
    destination: Path,
    *,
    product_id: Optional[str] = None,
    date_range: Optional[DateRange] = None,
) -> int:
    """Write the filtered view to ``destination`` as ``.xlsx``.

    Returns:
        int: Number of transactions written; ``0`` means no file was created.
    """

    wb = build_export_workbook(products, product_id=product_id, date_range=date_range)
    if wb is None:
        return 0
    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    wb.save(dest)
    row_count = wb.active.max_row - 1
    log.info("Exported %d transactions to workbook '%s'", row_count, dest)
    return row_count
