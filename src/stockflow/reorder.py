"""Client for the AI reorder-quantity suggestion service.

The service is an external text-generation flow reached over HTTP/JSON. This
module builds the request from a product's history, posts it, validates the
reply, and converts every failure into a user-facing message. It never
touches the ledger.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests

from . import log
from .constants import OutcomeKind, TransactionType
from .data_manager import Product, Transaction


INVALID_INPUT_MESSAGE = "Invalid input provided."
UPSTREAM_FAILURE_MESSAGE = "Failed to get reorder suggestion from AI."
BUSY_MESSAGE = "A suggestion is already being generated."


class ReorderError(Exception):
    """Raised when a suggestion cannot be produced."""


@dataclass(frozen=True)
class ReorderRequest:
    product_name: str
    past_sales_data: str
    past_purchase_data: str
    current_stock_level: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "productName": self.product_name,
            "pastSalesData": self.past_sales_data,
            "pastPurchaseData": self.past_purchase_data,
            "currentStockLevel": self.current_stock_level,
        }


@dataclass(frozen=True)
class ReorderSuggestion:
    reorder_quantity: float
    reasoning: str


@dataclass(frozen=True)
class SuggestionResult:
    """Outcome of a suggestion request as shown in the dialog."""

    kind: OutcomeKind
    message: str
    suggestion: Optional[ReorderSuggestion] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


def _format_day(txn: Transaction) -> str:
    moment = txn.date.astimezone()
    return f"{moment.month}/{moment.day}/{moment.year}"


def summarize_history(product: Product, kind: TransactionType) -> str:
    """Render one product's sales or purchases as readable text.

    Example: ``Sold 10 at $12.00 on 1/5/2024, Sold 5 at $12.50 on 2/1/2024``.
    """

    verb = "Sold" if kind is TransactionType.SALE else "Purchased"
    entries = [
        f"{verb} {txn.quantity} at ${txn.price_per_unit:.2f} on {_format_day(txn)}"
        for txn in product.transactions
        if txn.type is kind
    ]
    if not entries:
        return "No sales data" if kind is TransactionType.SALE else "No purchase data"
    return ", ".join(entries)


def build_reorder_request(product: Product) -> ReorderRequest:
    return ReorderRequest(
        product_name=product.name,
        past_sales_data=summarize_history(product, TransactionType.SALE),
        past_purchase_data=summarize_history(product, TransactionType.PURCHASE),
        current_stock_level=product.stock,
    )


def validate_request(request: ReorderRequest) -> None:
    """Check field types before anything is sent.

    Raises:
        ReorderError: With :data:`INVALID_INPUT_MESSAGE` on any mismatch.
    """

    text_fields = (request.product_name, request.past_sales_data, request.past_purchase_data)
    if not all(isinstance(value, str) for value in text_fields):
        raise ReorderError(INVALID_INPUT_MESSAGE)
    stock = request.current_stock_level
    if isinstance(stock, bool) or not isinstance(stock, (int, float)):
        raise ReorderError(INVALID_INPUT_MESSAGE)


def parse_suggestion(data: Mapping[str, Any]) -> ReorderSuggestion:
    """Validate the service reply.

    Some flow runners wrap the reply as ``{"result": {...}}``; both shapes
    are accepted.
    """

    if isinstance(data, Mapping) and isinstance(data.get("result"), Mapping):
        data = data["result"]
    if not isinstance(data, Mapping):
        raise ReorderError(UPSTREAM_FAILURE_MESSAGE)
    quantity = data.get("reorderQuantity")
    reasoning = data.get("reasoning")
    if isinstance(quantity, bool) or not isinstance(quantity, (int, float)) or not isinstance(reasoning, str):
        raise ReorderError(UPSTREAM_FAILURE_MESSAGE)
    return ReorderSuggestion(reorder_quantity=quantity, reasoning=reasoning)


class ReorderSuggestionClient:
    """Posts reorder requests to the configured suggestion endpoint."""

    def __init__(self, endpoint_url: str, *, timeout: float = 30.0, session: Optional[requests.Session] = None) -> None:
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def suggest(self, request: ReorderRequest) -> ReorderSuggestion:
        """Return the service's suggestion for ``request``.

        Raises:
            ReorderError: On invalid input, transport errors, non-2xx replies,
                or a reply that does not match the expected shape.
        """
        validate_request(request)
        try:
            response = self.session.post(self.endpoint_url, json=request.to_payload(), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            log.error("Error getting reorder suggestion for '%s': %s", request.product_name, exc)
            raise ReorderError(UPSTREAM_FAILURE_MESSAGE) from exc
        except ValueError as exc:
            log.error("Reorder service returned a non-JSON reply for '%s': %s", request.product_name, exc)
            raise ReorderError(UPSTREAM_FAILURE_MESSAGE) from exc
        suggestion = parse_suggestion(data)
        log.info(
            "Received reorder suggestion for '%s': quantity=%s",
            request.product_name,
            suggestion.reorder_quantity,
        )
        return suggestion


class ReorderSuggestionSession:
    """One suggestion dialog: at most one request in flight at a time.

    A second request while one is pending is rejected instead of queued.
    Closing the dialog while a request is pending discards its result.
    """

    def __init__(self, client: ReorderSuggestionClient, product: Product) -> None:
        self.client = client
        self.product = product
        self.suggestion: Optional[ReorderSuggestion] = None
        self._in_flight = threading.Lock()
        self._closed = False

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    def close(self) -> None:
        self._closed = True
        self.suggestion = None

    def generate(self) -> SuggestionResult:
        if not self._in_flight.acquire(blocking=False):
            return SuggestionResult(OutcomeKind.FAILURE, BUSY_MESSAGE)
        try:
            request = build_reorder_request(self.product)
            suggestion = self.client.suggest(request)
        except ReorderError as exc:
            self.suggestion = None
            return SuggestionResult(OutcomeKind.FAILURE, str(exc))
        finally:
            self._in_flight.release()

        if self._closed:
            log.info("Discarding reorder suggestion for closed dialog on '%s'", self.product.name)
            return SuggestionResult(OutcomeKind.FAILURE, "Suggestion dialog was closed.")
        self.suggestion = suggestion
        return SuggestionResult(
            OutcomeKind.SUCCESS,
            f"Suggested reorder quantity for {self.product.name}: {suggestion.reorder_quantity}",
            suggestion,
        )
