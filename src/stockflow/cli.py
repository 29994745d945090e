"""Command-line entry points for the StockFlow inventory tracker.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into ledger calls, and rendering the resulting
outcomes and reports. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any other front end.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO

from . import core_logic, csv_io, log, reporting
from .constants import TransactionType
from .exceptions import InventoryError, ValidationError
from .reorder import ReorderSuggestionClient, ReorderSuggestionSession


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockflow",
        description="Command-line tools for the StockFlow inventory tracker.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and imports."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "edit-product": register_edit_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "sale": register_transaction_command(subparsers, TransactionType.SALE),
        "purchase": register_transaction_command(subparsers, TransactionType.PURCHASE),
        "withdraw": register_withdraw_command(subparsers),
        "import": register_import_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and exports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "stats": register_stats_command(subparsers),
        "report": register_report_command(subparsers),
        "export": register_export_command(subparsers),
        "reorder": register_reorder_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_date_range_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--from", dest="date_from", type=date.fromisoformat, default=None,
                        help="First day of the window (YYYY-MM-DD).")
    parser.add_argument("--to", dest="date_to", type=date.fromisoformat, default=None,
                        help="Last day of the window (YYYY-MM-DD); defaults to --from.")


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a new product, optionally with initial stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--initial-stock", type=int, default=0)
        parser.add_argument("--low-stock-threshold", type=int, default=0)
        parser.add_argument("--purchase-price", default="0",
                            help="Unit price of the seed purchase recorded for the initial stock.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_edit_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-product``."""
    name = "edit-product"
    help_text = "Change a product's name and low-stock threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--low-stock-threshold", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Delete a product and its transaction history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    transaction_type: TransactionType,
) -> CommandSpec:
    """Register the parser and executor for ``sale`` or ``purchase``."""
    name = transaction_type.value
    help_text = f"Record a {transaction_type.value} transaction."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--price-per-unit", required=True)
        parser.set_defaults(command=name, transaction_type=transaction_type.value)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transaction)


def register_withdraw_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``withdraw``."""
    name = "withdraw"
    help_text = "Record a cash withdrawal from the business."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_withdraw)


def register_import_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import``."""
    name = "import"
    help_text = "Import transactions from a CSV file (all-or-nothing)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("csv_file", type=Path)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low-only", action="store_true", help="Only list products at or below their threshold.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Display revenue, cost, stock value, and profit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats_report)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display monthly sale and purchase volume."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None)
        _add_date_range_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_monthly_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export transactions as CSV, an import feed, or an Excel workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--format", dest="export_format", choices=["csv", "feed", "xlsx"], default="csv")
        parser.add_argument("--output", type=Path, default=None,
                            help="Destination file; CSV output goes to stdout when omitted.")
        parser.add_argument("--product-id", default=None)
        _add_date_range_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def register_reorder_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reorder``."""
    name = "reorder"
    help_text = "Ask the AI service for a reorder quantity suggestion."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reorder)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def date_range_from_args(args: argparse.Namespace) -> Optional[reporting.DateRange]:
    """Translate ``--from``/``--to`` into a window; no dates means all time.

    Raises:
        ValidationError: If ``--to`` is given without ``--from`` or precedes it.
    """
    start = getattr(args, "date_from", None)
    end = getattr(args, "date_to", None)
    if start is None:
        if end is not None:
            raise ValidationError("--to requires --from.")
        return None
    try:
        return reporting.DateRange(start=start, end=end)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def render_outcome(outcome: core_logic.Outcome, stream: Optional[TextIO] = None) -> int:
    """Print an outcome notification and map it to an exit code."""
    stream = stream or sys.stdout
    print(f"{outcome.title}: {outcome.message}", file=stream)
    return 0 if outcome.ok else 2


def format_money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    outcome = context.store.create_product(
        args.name,
        args.initial_stock,
        args.low_stock_threshold,
        args.purchase_price,
    )
    return render_outcome(outcome)


def run_edit_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-product workflow."""
    outcome = context.store.edit_product(args.product_id, args.name, args.low_stock_threshold)
    return render_outcome(outcome)


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow."""
    return render_outcome(context.store.delete_product(args.product_id))


def run_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale or purchase workflow."""
    outcome = context.store.record_transaction(
        args.product_id,
        args.transaction_type,
        args.quantity,
        args.price_per_unit,
    )
    return render_outcome(outcome)


def run_withdraw(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the withdrawal workflow."""
    return render_outcome(context.store.record_withdrawal(args.amount, args.notes))


def run_import(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Read the CSV file and import it through the ledger."""
    text = Path(args.csv_file).expanduser().read_text(encoding="utf-8-sig")
    return render_outcome(context.store.import_csv(text))


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per product with its stock and low-stock flag."""
    products = context.store.products
    if getattr(args, "low_only", False):
        products = tuple(reporting.low_stock_products(products))
    for product in products:
        flag = "  LOW" if product.is_low_stock else ""
        print(f"{product.id}\t{product.name}\t{product.stock}\t(threshold {product.low_stock_threshold}){flag}")
    return 0


def run_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the headline statistics and the per-product breakdown."""
    summary = reporting.build_statistics(
        context.store.products,
        context.store.withdrawals,
        date_range_from_args(args),
    )
    print(f"Total sales:       {format_money(summary.total_sales_amount)}")
    print(f"Total purchases:   {format_money(summary.total_purchase_amount)}")
    print(f"Stock value:       {format_money(summary.total_stock_value)}")
    print(f"Withdrawals:       {format_money(summary.total_withdrawals)}")
    print(f"Total profit:      {format_money(summary.total_profit)}")
    for item in summary.profit_per_product:
        print(
            f"{item.product_name}\trevenue {format_money(item.total_revenue)}"
            f"\tcost {format_money(item.total_cost)}\tprofit {format_money(item.profit)}"
        )
    return 0


def run_monthly_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print monthly volume in chronological order."""
    buckets = reporting.monthly_volume(
        context.store.products,
        date_range_from_args(args),
        args.product_id,
    )
    if not buckets:
        print("No transaction data to display for the selected period.")
        return 0
    for bucket in reporting.sort_months_chronologically(buckets):
        print(f"{bucket.month}\tsales {bucket.sales}\tpurchases {bucket.purchases}")
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Export the filtered transaction view in the requested format."""
    products = context.store.products
    date_range = date_range_from_args(args)
    if args.export_format == "xlsx":
        destination = args.output or Path("stockflow_export.xlsx")
        count = csv_io.export_workbook(products, destination, product_id=args.product_id, date_range=date_range)
        if count == 0:
            print("No Data Found: There are no transactions matching your selected criteria.")
            return 2
        print(f"Export Successful: {count} records have been exported.")
        return 0

    render = csv_io.export_import_feed if args.export_format == "feed" else csv_io.export_transactions
    result = render(products, product_id=args.product_id, date_range=date_range)
    if result.is_empty:
        print("No Data Found: There are no transactions matching your selected criteria.")
        return 2
    if args.output is None:
        print(result.text)
        return 0
    Path(args.output).expanduser().write_text(result.text, encoding="utf-8")
    print(f"Export Successful: {result.row_count} records have been exported.")
    return 0


def run_reorder(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Request and print an AI reorder suggestion for one product."""
    endpoint = context.settings.reorder_endpoint
    if not endpoint:
        log.error("No reorder endpoint configured; add [Reorder] Endpoint to config.ini")
        print("Error: No reorder endpoint configured. Add [Reorder] Endpoint to config.ini.")
        return 2
    product = context.store.get_product(args.product_id)
    client = ReorderSuggestionClient(endpoint, timeout=context.settings.reorder_timeout)
    result = ReorderSuggestionSession(client, product).generate()
    if not result.ok:
        print(f"Error: {result.message}")
        return 2
    print(f"Reorder quantity: {result.suggestion.reorder_quantity}")
    print(f"Reasoning: {result.suggestion.reasoning}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, InventoryError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
