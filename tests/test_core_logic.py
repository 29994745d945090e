"""Unit tests verifying the ledger engine and its outcome reporting."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from stockflow import constants, core_logic, data_manager, reporting
from stockflow.constants import OutcomeKind, TransactionType
from stockflow.exceptions import InsufficientStockError, NotFoundError, ValidationError


MOMENT = datetime(2024, 3, 15, 9, 30, 0, 123456, tzinfo=UTC)


def _add(store: core_logic.InventoryStore, name: str = "Widget", stock: int = 10, threshold: int = 5, price: str = "2.00"):
    outcome = store.create_product(name, stock, threshold, Decimal(price))
    assert outcome.ok, outcome.message
    return outcome.value


# ---------------------------------------------------------------------------
# Identifiers and outcomes
# ---------------------------------------------------------------------------


def test_generate_id_uses_prefix_and_microsecond_timestamp():
    """Identifiers should embed the prefix and a sortable timestamp."""

    assert core_logic.generate_id("txn", when=MOMENT) == "txn-20240315093000123456"


def test_allocated_ids_stay_unique_under_a_frozen_clock(store, set_fixed_datetime):
    """Many mutations within the same microsecond must still get distinct ids."""

    set_fixed_datetime(MOMENT)
    for index in range(5):
        _add(store, name=f"Product {index}")

    product_ids = [p.id for p in store.products]
    txn_ids = [t.id for p in store.products for t in p.transactions]
    assert len(set(product_ids)) == 5
    assert len(set(txn_ids)) == 5
    assert not set(product_ids) & set(txn_ids)


def test_allocated_ids_skip_identifiers_already_loaded(set_fixed_datetime):
    """Ids present in loaded data should never be issued again."""

    set_fixed_datetime(MOMENT)
    taken = core_logic.generate_id("prod", when=MOMENT)
    existing = data_manager.Product(id=taken, name="Existing", stock=0, low_stock_threshold=0)
    store = core_logic.InventoryStore([existing])

    product = _add(store, name="Newcomer", stock=0)

    assert product.id != taken


def test_failure_outcome_carries_error_and_message(store):
    """Failure outcomes expose the error instance and its message."""

    outcome = store.delete_product("missing")

    assert outcome.kind is OutcomeKind.FAILURE
    assert not outcome.ok
    assert isinstance(outcome.error, NotFoundError)
    assert outcome.message == "Product not found: missing"


# ---------------------------------------------------------------------------
# create_product
# ---------------------------------------------------------------------------


def test_create_product_seeds_purchase_for_initial_stock(store, set_fixed_datetime):
    """Initial stock should be explained by a seed purchase dated now."""

    set_fixed_datetime(MOMENT)
    outcome = store.create_product("Widget", 10, 5, Decimal("2.00"))

    assert outcome.ok
    assert outcome.title == "Product Added"
    assert outcome.message == "Widget has been added to your inventory."
    product = outcome.value
    assert product.stock == 10
    assert product.low_stock_threshold == 5
    assert len(product.transactions) == 1
    seed = product.transactions[0]
    assert seed.type is TransactionType.PURCHASE
    assert seed.quantity == 10
    assert seed.price_per_unit == Decimal("2.00")
    assert seed.date == MOMENT
    assert store.products == (product,)


def test_create_product_without_initial_stock_has_empty_history(store):
    """No seed purchase should be synthesized for zero initial stock."""

    product = _add(store, stock=0)

    assert product.stock == 0
    assert product.transactions == ()


def test_create_product_without_purchase_price_skips_seed(store):
    """Passing no purchase price sets stock without a transaction."""

    outcome = store.create_product("Loose Stock", 4, 1, None)

    assert outcome.ok
    assert outcome.value.stock == 4
    assert outcome.value.transactions == ()


def test_create_product_strips_name(store):
    """Surrounding whitespace should not be stored."""

    product = _add(store, name="  Teapot  ", stock=0)

    assert product.name == "Teapot"


@pytest.mark.parametrize(
    ("name", "initial_stock", "threshold"),
    [
        ("ab", 1, 1),
        ("   ab  ", 1, 1),
        ("Widget", -1, 1),
        ("Widget", 1, -1),
    ],
)
def test_create_product_rejects_invalid_input(store, name, initial_stock, threshold):
    """Short names and negative counts should fail validation without side effects."""

    outcome = store.create_product(name, initial_stock, threshold, Decimal("1.00"))

    assert not outcome.ok
    assert outcome.title == "Product Not Added"
    assert isinstance(outcome.error, ValidationError)
    assert store.products == ()


def test_create_product_rejects_non_numeric_price(store):
    """A purchase price that is not a number is a validation error."""

    outcome = store.create_product("Widget", 1, 1, "cheap")

    assert isinstance(outcome.error, ValidationError)
    assert store.products == ()


# ---------------------------------------------------------------------------
# edit_product / delete_product
# ---------------------------------------------------------------------------


def test_edit_product_updates_name_and_threshold_only(store):
    """Editing should leave stock and history untouched."""

    product = _add(store)

    outcome = store.edit_product(product.id, "Super Widget", 2)

    assert outcome.ok
    edited = store.get_product(product.id)
    assert edited.name == "Super Widget"
    assert edited.low_stock_threshold == 2
    assert edited.stock == product.stock
    assert edited.transactions == product.transactions


def test_edit_product_unknown_id_reports_not_found(store):
    """Unknown ids should not change state."""

    _add(store)
    before = store.products

    outcome = store.edit_product("nope", "Whatever", 1)

    assert isinstance(outcome.error, NotFoundError)
    assert store.products == before


def test_edit_product_rejects_short_name(store):
    """Edits re-validate the product name."""

    product = _add(store)

    outcome = store.edit_product(product.id, "x", 1)

    assert isinstance(outcome.error, ValidationError)
    assert store.get_product(product.id).name == "Widget"


def test_delete_product_removes_product_and_history(store):
    """Deleting discards the product together with its transactions."""

    keep = _add(store, name="Keeper")
    drop = _add(store, name="Dropper")

    outcome = store.delete_product(drop.id)

    assert outcome.ok
    assert outcome.value == drop
    assert store.products == (keep,)


def test_delete_product_twice_reports_not_found(store):
    """A second delete is a reported no-op."""

    product = _add(store)
    store.delete_product(product.id)

    outcome = store.delete_product(product.id)

    assert isinstance(outcome.error, NotFoundError)
    assert store.products == ()


def test_record_transaction_after_delete_reports_not_found(store):
    """Deleted products can no longer receive transactions."""

    product = _add(store)
    store.delete_product(product.id)

    outcome = store.record_transaction(product.id, TransactionType.PURCHASE, 1, Decimal("1.00"))

    assert isinstance(outcome.error, NotFoundError)


# ---------------------------------------------------------------------------
# record_transaction
# ---------------------------------------------------------------------------


def test_record_purchase_increases_stock(store):
    """A purchase should append a transaction and add to stock."""

    product = _add(store)

    outcome = store.record_transaction(product.id, TransactionType.PURCHASE, 5, Decimal("2.10"))

    assert outcome.ok
    assert outcome.title == "Transaction Recorded"
    assert outcome.message == "A new purchase for Widget has been recorded."
    updated = store.get_product(product.id)
    assert updated.stock == 15
    assert updated.transactions[-1] == outcome.value


def test_record_sale_accepts_string_type(store):
    """String transaction types should be accepted and normalized."""

    product = _add(store)

    outcome = store.record_transaction(product.id, "sale", 3, "5.00")

    assert outcome.ok
    assert outcome.value.type is TransactionType.SALE
    assert outcome.value.price_per_unit == Decimal("5.00")
    assert store.get_product(product.id).stock == 7


def test_record_sale_of_entire_stock_is_allowed(store):
    """Selling exactly the available stock should leave zero."""

    product = _add(store)

    outcome = store.record_transaction(product.id, TransactionType.SALE, 10, Decimal("3.00"))

    assert outcome.ok
    assert store.get_product(product.id).stock == 0


def test_record_sale_exceeding_stock_leaves_state_unchanged(store):
    """Oversized sales must be rejected without touching products."""

    product = _add(store)
    before = store.products

    outcome = store.record_transaction(product.id, TransactionType.SALE, 11, Decimal("5.00"))

    assert isinstance(outcome.error, InsufficientStockError)
    assert outcome.title == "Transaction Failed"
    assert "Available: 10" in outcome.message
    assert "Required: 11" in outcome.message
    assert store.products == before


@pytest.mark.parametrize(
    ("transaction_type", "quantity", "price"),
    [
        ("refund", 1, "1.00"),
        (TransactionType.PURCHASE, 0, "1.00"),
        (TransactionType.PURCHASE, -2, "1.00"),
        (TransactionType.SALE, 1, "-0.01"),
        (TransactionType.SALE, 1, "NaN"),
    ],
)
def test_record_transaction_validates_input(store, transaction_type, quantity, price):
    """Unknown types, non-positive quantities, and bad prices are rejected."""

    product = _add(store)
    before = store.products

    outcome = store.record_transaction(product.id, transaction_type, quantity, price)

    assert isinstance(outcome.error, ValidationError)
    assert store.products == before


@pytest.mark.parametrize("quantity", [2.5, 3.0, "3", True, Decimal("2")])
def test_record_transaction_requires_whole_quantity(store, quantity):
    """Quantities must be real integers; floats, strings, and booleans are rejected."""

    product = _add(store)
    before = store.products

    outcome = store.record_transaction(product.id, TransactionType.PURCHASE, quantity, "1")

    assert isinstance(outcome.error, ValidationError)
    assert "whole number" in outcome.message
    assert store.products == before


@pytest.mark.parametrize(
    ("initial_stock", "threshold"),
    [
        (2.5, 1),
        (2, 1.5),
        (False, 1),
        ("10", 1),
    ],
)
def test_create_product_requires_whole_counts(store, initial_stock, threshold):
    outcome = store.create_product("Widget", initial_stock, threshold, Decimal("1.00"))

    assert isinstance(outcome.error, ValidationError)
    assert store.products == ()


def test_edit_product_requires_whole_threshold(store):
    product = _add(store)

    outcome = store.edit_product(product.id, "Widget", 2.5)

    assert isinstance(outcome.error, ValidationError)
    assert store.get_product(product.id).low_stock_threshold == 5


def test_stock_matches_history_for_mixed_sequence(store):
    """Stock should always equal the sum of transaction deltas and stay non-negative."""

    product = _add(store, stock=0)
    script = [
        (TransactionType.PURCHASE, 7),
        (TransactionType.SALE, 3),
        (TransactionType.SALE, 5),  # rejected: only 4 left
        (TransactionType.PURCHASE, 2),
        (TransactionType.SALE, 6),
        (TransactionType.SALE, 1),  # rejected: nothing left
        (TransactionType.PURCHASE, 10),
    ]
    for kind, quantity in script:
        store.record_transaction(product.id, kind, quantity, Decimal("1.50"))
        current = store.get_product(product.id)
        assert current.stock >= 0
        assert current.stock == reporting.derived_stock(current)

    final = store.get_product(product.id)
    assert final.stock == 10
    assert len(final.transactions) == 5


# ---------------------------------------------------------------------------
# record_withdrawal
# ---------------------------------------------------------------------------


def test_record_withdrawal_appends(store, set_fixed_datetime):
    """Withdrawals are appended with the current timestamp."""

    set_fixed_datetime(MOMENT)

    outcome = store.record_withdrawal(Decimal("25.00"), "Owner draw")

    assert outcome.ok
    withdrawal = outcome.value
    assert withdrawal.amount == Decimal("25.00")
    assert withdrawal.notes == "Owner draw"
    assert withdrawal.date == MOMENT
    assert store.withdrawals == (withdrawal,)


@pytest.mark.parametrize("amount", ["0", "-5", "abc"])
def test_record_withdrawal_requires_positive_amount(store, amount):
    """Zero, negative, or non-numeric amounts are rejected."""

    outcome = store.record_withdrawal(amount)

    assert isinstance(outcome.error, ValidationError)
    assert store.withdrawals == ()


# ---------------------------------------------------------------------------
# import_csv
# ---------------------------------------------------------------------------


def test_import_csv_reports_row_count(store):
    """Successful imports report how many rows were applied."""

    text = "ProductName,Type,Quantity,PricePerUnit,Date\nTea,purchase,100,5.50,2024-01-01\nTea,sale,4,9.00,2024-01-02\n"

    outcome = store.import_csv(text)

    assert outcome.ok
    assert outcome.value == 2
    assert outcome.message == "Successfully imported 2 transactions."
    assert store.find_product_by_name("tea").stock == 96


def test_import_csv_failure_changes_nothing(store):
    """A bad second row must leave the ledger exactly as it was."""

    _add(store, name="Tea", stock=1)
    before = store.products
    text = "ProductName,Type,Quantity,PricePerUnit,Date\nTea,purchase,100,5.50,2024-01-01\nTea,sell,1,1,2024-01-02"

    outcome = store.import_csv(text)

    assert not outcome.ok
    assert outcome.title == "Import Failed"
    assert "Row 3" in outcome.message
    assert store.products == before


# ---------------------------------------------------------------------------
# Persistence synchronisation
# ---------------------------------------------------------------------------


def test_successful_mutation_writes_both_keys(persisted_store, blob_store):
    """Every successful mutation rewrites products and withdrawals."""

    _add(persisted_store)

    products = json.loads(blob_store.get(constants.PRODUCTS_KEY))
    withdrawals = json.loads(blob_store.get(constants.WITHDRAWALS_KEY))
    assert [p["name"] for p in products] == ["Widget"]
    assert withdrawals == []


def test_failed_mutation_does_not_write(persisted_store, blob_store):
    """Rejected operations leave the blob store untouched."""

    persisted_store.create_product("x", 1, 1)

    assert blob_store.get(constants.PRODUCTS_KEY) is None


def test_persistence_failure_is_logged_not_raised(persisted_store, monkeypatch):
    """Write errors are fire-and-forget; the mutation still succeeds."""

    monkeypatch.setattr(data_manager, "save_state", Mock(side_effect=OSError("disk full")))

    outcome = persisted_store.create_product("Widget", 1, 1)

    assert outcome.ok
    assert len(persisted_store.products) == 1


def test_from_blob_store_round_trips_saved_state(persisted_store, blob_store):
    """A store reloaded from the blob store sees the same entities."""

    product = _add(persisted_store)
    persisted_store.record_transaction(product.id, TransactionType.SALE, 3, Decimal("5.00"))
    persisted_store.record_withdrawal("12.50")

    reloaded = core_logic.InventoryStore.from_blob_store(blob_store)

    assert reloaded.products == persisted_store.products
    assert reloaded.withdrawals == persisted_store.withdrawals


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_attaches_blob_store(runtime_context, config_file):
    """The context store should persist to the configured data directory."""

    assert runtime_context.store.blob_store is not None
    assert runtime_context.store.blob_store.directory == runtime_context.settings.data_dir
    assert runtime_context.store.products == ()


def test_load_runtime_context_uses_seed_data_on_first_start(config_factory):
    """A fresh data directory starts with the seed catalogue."""

    bundle = config_factory(empty_ledger=False)

    context = core_logic.load_runtime_context(bundle.config_path)

    assert len(context.store.products) == 4
    assert context.store.withdrawals == ()


def test_ensure_schema_version_rejects_mismatch(runtime_context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(runtime_context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, store=runtime_context.store)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)
