"""Command-line entry points for BarStock.

The CLI only wires argparse and turns arguments into the commands consumed by
the business layer; read commands print plain-text tables. Keeping it thin
lets tests, scripts or any other front end reuse the same parser setup.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, reports
from .constants import UNKNOWN_ITEM_NAME
from .store import StoreFailure


SubParsers = argparse._SubParsersAction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="barstock",
        description="Point-of-sale and stock reconciliation tools for the bar workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _simple_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    add_arguments: Callable[[argparse.ArgumentParser], None],
) -> CommandSpec:
    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _add_day_argument(parser: argparse.ArgumentParser, *, allow_all: bool) -> None:
    parser.add_argument("--date", dest="day", type=date.fromisoformat, default=None, help="Day as YYYY-MM-DD (default: today).")
    if allow_all:
        parser.add_argument("--all", dest="all_days", action="store_true", help="Include every day.")


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and restocks."""

    def item_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)

    def add_item_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--opening", default="0", help="Units on hand when the item is added.")

    def update_item_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--price", default=None)

    def quantity_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--quantity", required=True)

    def count_args(parser: argparse.ArgumentParser) -> None:
        quantity_args(parser)
        _add_day_argument(parser, allow_all=False)

    def edit_sale_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--item-id", default=None)
        parser.add_argument("--quantity", default=None)

    def sale_id_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)

    def shortage_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--staff", required=True, help="Staff member as listed in [Staff] Roster.")
        parser.add_argument("--amount", required=True)

    def shortage_id_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--shortage-id", required=True)

    specs = {
        "add-item": _simple_command("add-item", "Add an item to the catalog.", run_add_item, add_item_args),
        "update-item": _simple_command("update-item", "Rename or reprice an item.", run_update_item, update_item_args),
        "delete-item": _simple_command("delete-item", "Delete an item and its stock records.", run_delete_item, item_args),
        "sale": _simple_command("sale", "Record a sale.", run_sale, quantity_args),
        "edit-sale": _simple_command("edit-sale", "Change the item or quantity of a sale.", run_edit_sale, edit_sale_args),
        "delete-sale": _simple_command("delete-sale", "Delete a sale and restore its stock.", run_delete_sale, sale_id_args),
        "restock": _simple_command("restock", "Add delivered units to an item's stock.", run_restock, quantity_args),
        "set-opening": _simple_command("set-opening", "Set the opening stock of an item for a day.", run_set_opening, count_args),
        "count-closing": _simple_command("count-closing", "Record the counted closing stock of an item.", run_count_closing, count_args),
        "shortage": _simple_command("shortage", "Log a cash shortage for a staff member.", run_shortage, shortage_args),
        "delete-shortage": _simple_command("delete-shortage", "Delete a logged shortage.", run_delete_shortage, shortage_id_args),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""

    def no_args(parser: argparse.ArgumentParser) -> None:
        return None

    def day_or_all(parser: argparse.ArgumentParser) -> None:
        _add_day_argument(parser, allow_all=True)

    def day_only(parser: argparse.ArgumentParser) -> None:
        _add_day_argument(parser, allow_all=False)

    specs = {
        "items": _simple_command("items", "List the catalog with current stock.", run_items_report, no_args),
        "sales": _simple_command("sales", "List sales and per-item totals.", run_sales_report, day_or_all),
        "stock": _simple_command("stock", "Reconcile opening stock, sales and closing counts.", run_stock_report, day_only),
        "dashboard": _simple_command("dashboard", "Show revenue, items sold and best seller.", run_dashboard_report, day_or_all),
        "shortages": _simple_command("shortages", "List logged cash shortages.", run_shortages_report, day_or_all),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


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


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def parse_quantity(raw: Optional[str]) -> Optional[int]:
    """Convert a CLI quantity into ``int``.

    Raises:
        core_logic.ValidationError: If ``raw`` is not a whole number.
    """
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise core_logic.ValidationError(f"Quantity must be a whole number, got {raw!r}") from exc


def parse_money(raw: Optional[str]) -> Optional[Decimal]:
    """Convert a CLI amount into ``Decimal``.

    Raises:
        core_logic.ValidationError: If ``raw`` is not a number.
    """
    if raw is None:
        return None
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise core_logic.ValidationError(f"Amount must be a number, got {raw!r}") from exc


def translate_add_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-item request."""
    return {
        "name": args.name,
        "unit_price": parse_money(args.price),
        "opening_quantity": parse_quantity(args.opening),
    }


def translate_update_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an update-item request."""
    return {"name": args.name, "unit_price": parse_money(args.price)}


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(item_id=args.item_id, quantity=parse_quantity(args.quantity))


def translate_edit_sale(args: argparse.Namespace) -> core_logic.SaleEditCommand:
    """Translate CLI args into a sale edit command object."""
    return core_logic.SaleEditCommand(item_id=args.item_id, quantity=parse_quantity(args.quantity))


def translate_restock(args: argparse.Namespace) -> core_logic.RestockCommand:
    """Translate CLI args into a restock command object."""
    return core_logic.RestockCommand(item_id=args.item_id, quantity=parse_quantity(args.quantity))


def translate_shortage(args: argparse.Namespace) -> core_logic.ShortageCommand:
    """Translate CLI args into a shortage command object."""
    return core_logic.ShortageCommand(staff_name=args.staff, amount=parse_money(args.amount))


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.add_item(context, **translate_add_item(args))
    print(f"Added {item.name} as {item.item_id}")
    return 0


def run_update_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.update_item(context, args.item_id, **translate_update_item(args))
    print(f"Updated {item.item_id}: {item.name} at {item.unit_price}")
    return 0


def run_delete_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.delete_item(context, args.item_id)
    print(f"Deleted {item.name} ({item.item_id})")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.record_sale(context, translate_sale(args))
    print(f"Recorded sale {sale.sale_id}: {sale.quantity} x {sale.item_id}")
    return 0


def run_edit_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = core_logic.update_sale(context, args.sale_id, translate_edit_sale(args))
    print(f"Updated sale {sale.sale_id}: {sale.quantity} x {sale.item_id}")
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = core_logic.delete_sale(context, args.sale_id)
    if sale is None:
        print(f"Sale {args.sale_id} not found; nothing deleted")
    else:
        print(f"Deleted sale {sale.sale_id}")
    return 0


def run_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restock workflow via the BLL."""
    level = core_logic.restock(context, translate_restock(args))
    print(f"Stock of {level.item_id} is now {level.quantity}")
    return 0


def run_set_opening(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.set_opening_stock(context, args.item_id, parse_quantity(args.quantity), args.day)
    print(f"Opening stock of {record.item_id} on {record.day.isoformat()} is {record.opening_stock}")
    return 0


def run_count_closing(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.record_closing_count(context, args.item_id, parse_quantity(args.quantity), args.day)
    print(f"Closing count of {record.item_id} on {record.day.isoformat()} is {record.closing_stock}")
    return 0


def run_shortage(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    shortage = core_logic.record_shortage(context, translate_shortage(args))
    print(f"Logged shortage {shortage.shortage_id}: {shortage.amount} for {shortage.staff_name}")
    return 0


def run_delete_shortage(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    shortage = core_logic.delete_shortage(context, args.shortage_id)
    if shortage is None:
        print(f"Shortage {args.shortage_id} not found; nothing deleted")
    else:
        print(f"Deleted shortage {shortage.shortage_id}")
    return 0


def format_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> str:
    """Render ``rows`` as left-aligned, space-padded columns."""
    cells = [[str(h) for h in headers]] + [["" if v is None else str(v) for v in row] for row in rows]
    widths = [max(len(row[i]) for row in cells) for i in range(len(headers))]
    lines = ["  ".join(value.ljust(width) for value, width in zip(row, widths)).rstrip() for row in cells]
    lines.insert(1, "  ".join("-" * width for width in widths))
    return "\n".join(lines)


def run_items_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    levels = {level.item_id: level.quantity for level in core_logic.list_stock_levels(context)}
    rows = [(i.item_id, i.name, i.unit_price, levels.get(i.item_id, 0)) for i in core_logic.list_items(context)]
    print(format_table(("ItemID", "Name", "UnitPrice", "InStock"), rows))
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    day = None if args.all_days else (args.day or context.today())
    names = {item.item_id: item.name for item in core_logic.list_items(context)}
    sales = core_logic.list_sales(context, day=day)
    print(
        format_table(
            ("SaleID", "Time", "Item", "Quantity"),
            (
                (s.sale_id, s.sale_date.astimezone(context.tz).strftime("%Y-%m-%d %H:%M"), names.get(s.item_id, UNKNOWN_ITEM_NAME), s.quantity)
                for s in sales
            ),
        )
    )
    print()
    summaries = core_logic.sales_summary(context, day, all_days=args.all_days)
    print(format_table(("Item", "Sold", "Revenue"), ((s.name, s.quantity_sold, s.total_revenue) for s in summaries)))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reconciliation report."""
    rows = core_logic.stock_summary(context, args.day)
    print(
        format_table(
            ("Item", "Opening", "Sold", "Expected", "Closing", "Discrepancy"),
            ((r.name, r.opening, r.sold, r.expected, r.closing, r.discrepancy) for r in rows),
        )
    )
    print(f"\nTotal discrepancy: {reports.total_discrepancy(rows)}")
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    totals = core_logic.dashboard(context, args.day, all_days=args.all_days)
    best = totals.best_seller.name if totals.best_seller is not None else "N/A"
    print(f"{context.settings.bar_name}")
    print(f"Total revenue:    {totals.total_revenue}")
    print(f"Total items sold: {totals.total_items_sold}")
    print(f"Best seller:      {best}")
    return 0


def run_shortages_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    day = None if args.all_days else (args.day or context.today())
    shortages = core_logic.list_shortages(context, day=day)
    print(
        format_table(
            ("ShortageID", "Time", "Staff", "Amount"),
            (
                (s.shortage_id, s.shortage_date.astimezone(context.tz).strftime("%Y-%m-%d %H:%M"), s.staff_name, s.amount)
                for s in shortages
            ),
        )
    )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, StoreFailure):
        log.error("Store failure: %s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise StoreFailure(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
