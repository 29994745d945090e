"""Aggregation engine for StockFlow reports and statistics.

Every function here is pure: it reads product and withdrawal collections and
returns derived figures without touching the store. Optional filters narrow
the view to an inclusive day window and/or a single product.

Profit follows the shop's established rule
``sales + stock value - purchases - withdrawals``. Unsold stock valued at the
last purchase price counts toward profit, and withdrawals are subtracted
directly. This is not accrual accounting and must not be "corrected" here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from . import log
from .constants import MONTH_ABBREVIATIONS, TransactionType
from .data_manager import Product, Transaction, Withdrawal


ZERO = Decimal("0")


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar-day window.

    ``start`` begins at 00:00:00 and ``end`` finishes at 23:59:59.999999,
    both in local time unless ``tz`` is supplied. Leaving ``end`` unset
    selects the single day ``start``.
    """

    start: date
    end: Optional[date] = None
    tz: Optional[tzinfo] = None

    def __post_init__(self) -> None:
        if self.end is not None and self.end < self.start:
            raise ValueError(f"Date range ends ({self.end}) before it starts ({self.start})")

    @property
    def last_day(self) -> date:
        return self.end if self.end is not None else self.start

    def contains(self, moment: datetime) -> bool:
        local = self.localize(moment)
        lower = datetime.combine(self.start, time.min)
        upper = datetime.combine(self.last_day, time.max)
        return lower <= local <= upper

    def localize(self, moment: datetime) -> datetime:
        """Return ``moment`` as a naive datetime in the window's timezone."""
        if moment.tzinfo is None:
            return moment
        return moment.astimezone(self.tz).replace(tzinfo=None)


@dataclass(frozen=True)
class ProductProfit:
    """Per-product profit breakdown; withdrawals are business-wide only."""

    product_id: str
    product_name: str
    total_revenue: Decimal
    total_cost: Decimal
    stock_value: Decimal

    @property
    def profit(self) -> Decimal:
        return self.total_revenue + self.stock_value - self.total_cost


@dataclass
class MonthlyVolume:
    """Units sold and purchased in one calendar month."""

    month: str
    sales: int = 0
    purchases: int = 0


@dataclass(frozen=True)
class StatisticsSummary:
    total_sales_amount: Decimal
    total_purchase_amount: Decimal
    total_stock_value: Decimal
    total_withdrawals: Decimal
    total_profit: Decimal
    profit_per_product: Tuple[ProductProfit, ...]


def select_products(products: Iterable[Product], product_id: Optional[str] = None) -> List[Product]:
    """Return ``products`` narrowed to ``product_id`` when one is given."""

    if product_id is None:
        return list(products)
    return [product for product in products if product.id == product_id]


def iter_transactions(
    products: Iterable[Product],
    *,
    date_range: Optional[DateRange] = None,
    product_id: Optional[str] = None,
) -> Iterator[Tuple[Product, Transaction]]:
    """Yield ``(product, transaction)`` pairs matching the optional filters.

    Products are visited in collection order and each history in insertion
    order.
    """

    for product in select_products(products, product_id):
        for transaction in product.transactions:
            if date_range is None or date_range.contains(transaction.date):
                yield product, transaction


def _sum_amount(
    products: Iterable[Product],
    kind: TransactionType,
    date_range: Optional[DateRange],
    product_id: Optional[str],
) -> Decimal:
    return sum(
        (txn.total for _, txn in iter_transactions(products, date_range=date_range, product_id=product_id)
         if txn.type is kind),
        ZERO,
    )


def total_sales_amount(
    products: Iterable[Product],
    date_range: Optional[DateRange] = None,
    product_id: Optional[str] = None,
) -> Decimal:
    """Sum ``quantity * price_per_unit`` over matching sales."""

    return _sum_amount(products, TransactionType.SALE, date_range, product_id)


def total_purchase_amount(
    products: Iterable[Product],
    date_range: Optional[DateRange] = None,
    product_id: Optional[str] = None,
) -> Decimal:
    """Sum ``quantity * price_per_unit`` over matching purchases."""

    return _sum_amount(products, TransactionType.PURCHASE, date_range, product_id)


def last_purchase_price(product: Product) -> Decimal:
    """Return the unit price of the product's most recent purchase.

    The lookup always spans the full history regardless of any reporting
    window. Products that were never purchased are valued at zero.
    """

    purchases = [txn for txn in product.transactions if txn.type is TransactionType.PURCHASE]
    if not purchases:
        return ZERO
    return max(purchases, key=lambda txn: txn.date).price_per_unit


def current_stock_value(product: Product) -> Decimal:
    return product.stock * last_purchase_price(product)


def total_stock_value(products: Iterable[Product], product_id: Optional[str] = None) -> Decimal:
    return sum((current_stock_value(p) for p in select_products(products, product_id)), ZERO)


def total_withdrawals(withdrawals: Iterable[Withdrawal], date_range: Optional[DateRange] = None) -> Decimal:
    return sum(
        (w.amount for w in withdrawals if date_range is None or date_range.contains(w.date)),
        ZERO,
    )


def total_profit(
    products: Sequence[Product],
    withdrawals: Iterable[Withdrawal],
    date_range: Optional[DateRange] = None,
) -> Decimal:
    """Business-wide profit: sales + stock value - purchases - withdrawals."""

    return (
        total_sales_amount(products, date_range)
        + total_stock_value(products)
        - total_purchase_amount(products, date_range)
        - total_withdrawals(withdrawals, date_range)
    )


def profit_per_product(
    products: Iterable[Product],
    date_range: Optional[DateRange] = None,
) -> List[ProductProfit]:
    breakdown = []
    for product in products:
        breakdown.append(
            ProductProfit(
                product_id=product.id,
                product_name=product.name,
                total_revenue=total_sales_amount([product], date_range),
                total_cost=total_purchase_amount([product], date_range),
                stock_value=current_stock_value(product),
            )
        )
    return breakdown


def build_statistics(
    products: Sequence[Product],
    withdrawals: Sequence[Withdrawal],
    date_range: Optional[DateRange] = None,
) -> StatisticsSummary:
    """Collect the headline figures shown on the statistics view."""

    summary = StatisticsSummary(
        total_sales_amount=total_sales_amount(products, date_range),
        total_purchase_amount=total_purchase_amount(products, date_range),
        total_stock_value=total_stock_value(products),
        total_withdrawals=total_withdrawals(withdrawals, date_range),
        total_profit=total_profit(products, withdrawals, date_range),
        profit_per_product=tuple(profit_per_product(products, date_range)),
    )
    log.debug(
        "Calculated statistics: sales=%s purchases=%s stock=%s withdrawals=%s profit=%s",
        summary.total_sales_amount,
        summary.total_purchase_amount,
        summary.total_stock_value,
        summary.total_withdrawals,
        summary.total_profit,
    )
    return summary


def month_label(moment: datetime, tz: Optional[tzinfo] = None) -> str:
    """Render the ``MMM YYYY`` bucket label, e.g. ``Jan 2024``."""

    local = moment.astimezone(tz) if moment.tzinfo is not None else moment
    return f"{MONTH_ABBREVIATIONS[local.month - 1]} {local.year}"


def parse_month_label(label: str) -> date:
    abbreviation, year = label.split(" ")
    return date(int(year), MONTH_ABBREVIATIONS.index(abbreviation) + 1, 1)


def monthly_volume(
    products: Iterable[Product],
    date_range: Optional[DateRange] = None,
    product_id: Optional[str] = None,
) -> List[MonthlyVolume]:
    """Bucket matching transactions by calendar month.

    Buckets appear in the order their month is first encountered while
    walking the products and their histories; use
    :func:`sort_months_chronologically` for a timeline.
    """

    tz = date_range.tz if date_range is not None else None
    buckets: Dict[str, MonthlyVolume] = {}
    for _, txn in iter_transactions(products, date_range=date_range, product_id=product_id):
        label = month_label(txn.date, tz)
        bucket = buckets.setdefault(label, MonthlyVolume(month=label))
        if txn.type is TransactionType.SALE:
            bucket.sales += txn.quantity
        else:
            bucket.purchases += txn.quantity
    return list(buckets.values())


def sort_months_chronologically(buckets: Iterable[MonthlyVolume]) -> List[MonthlyVolume]:
    return sorted(buckets, key=lambda bucket: parse_month_label(bucket.month))


def derived_stock(product: Product, opening_stock: int = 0) -> int:
    """Recompute stock from history; must agree with ``product.stock``."""

    return opening_stock + sum(txn.stock_delta for txn in product.transactions)


def low_stock_products(products: Iterable[Product]) -> List[Product]:
    return [product for product in products if product.is_low_stock]
