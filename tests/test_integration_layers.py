"""Integration tests running business flows against a real workbook file."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import Mock

import openpyxl
import pytest

from barstock import core_logic
from barstock.core_logic import RestockCommand, SaleCommand, SaleEditCommand, ShortageCommand
from barstock.store import WorkbookStore


def _reopen(context: core_logic.RuntimeContext, clock) -> core_logic.RuntimeContext:
    """Fresh context reading the workbook back from disk."""

    return core_logic.RuntimeContext(
        settings=context.settings,
        store=WorkbookStore(context.settings.data_file, clock=clock),
    )


def test_sale_lifecycle_flow(workbook_context, clock):
    """Sales, edits and deletes keep the counter and the sheet in step."""

    beer = core_logic.add_item(workbook_context, "Beer", Decimal("6.50"), 10)
    sale = core_logic.record_sale(workbook_context, SaleCommand(beer.item_id, 4))

    with pytest.raises(core_logic.InsufficientStockError, match="Only 6 available"):
        core_logic.record_sale(workbook_context, SaleCommand(beer.item_id, 10))

    reopened = _reopen(workbook_context, clock)
    assert core_logic.get_stock_level(reopened, beer.item_id).quantity == 6
    [stored] = core_logic.list_sales(reopened)
    assert (stored.sale_id, stored.quantity, stored.sale_date) == (sale.sale_id, 4, clock.now)
    assert stored.unit_price == Decimal("6.50")

    core_logic.update_sale(reopened, sale.sale_id, SaleEditCommand(quantity=5))
    core_logic.delete_sale(reopened, sale.sale_id)

    final = _reopen(workbook_context, clock)
    assert core_logic.get_stock_level(final, beer.item_id).quantity == 10
    assert core_logic.list_sales(final) == []


def test_daily_reconciliation_flow(workbook_context, clock):
    """A two-day shift: restock, closing count, then rollover to the next day."""

    beer = core_logic.add_item(workbook_context, "Beer", Decimal("6.50"), 10)
    wine = core_logic.add_item(workbook_context, "Wine", Decimal("9.00"), 4)
    core_logic.record_sale(workbook_context, SaleCommand(beer.item_id, 3))
    core_logic.restock(workbook_context, RestockCommand(beer.item_id, 6))
    core_logic.record_sale(workbook_context, SaleCommand(wine.item_id, 1))
    core_logic.record_closing_count(workbook_context, beer.item_id, 12)

    rows = {row.item_id: row for row in core_logic.stock_summary(workbook_context)}
    assert (rows[beer.item_id].opening, rows[beer.item_id].sold, rows[beer.item_id].expected) == (16, 3, 13)
    assert rows[beer.item_id].discrepancy == -1
    assert (rows[wine.item_id].expected, rows[wine.item_id].closing) == (3, None)

    clock.advance(days=1)
    next_day = _reopen(workbook_context, clock)
    records = {r.item_id: r for r in core_logic.ensure_daily_stock(next_day)}
    assert records[beer.item_id].day == date(2024, 5, 11)
    assert (records[beer.item_id].opening_stock, records[wine.item_id].opening_stock) == (13, 3)

    workbook = openpyxl.load_workbook(workbook_context.settings.data_file)
    assert workbook["DailyStock"].max_row == 5


def test_delete_item_flow(workbook_context, clock):
    beer = core_logic.add_item(workbook_context, "Beer", Decimal("6.50"), 10)
    core_logic.record_sale(workbook_context, SaleCommand(beer.item_id, 2))

    core_logic.delete_item(workbook_context, beer.item_id)

    reopened = _reopen(workbook_context, clock)
    assert core_logic.list_items(reopened) == []
    assert core_logic.list_stock_levels(reopened) == []
    totals = core_logic.dashboard(reopened)
    assert (totals.total_items_sold, totals.total_revenue) == (2, Decimal("0"))
    assert totals.best_seller.name == "Unknown"


def test_shortage_flow(workbook_context, clock):
    shortage = core_logic.record_shortage(workbook_context, ShortageCommand("Bola", Decimal("7.25")))

    reopened = _reopen(workbook_context, clock)
    [stored] = core_logic.list_shortages(reopened, day=date(2024, 5, 10))
    assert (stored.shortage_id, stored.staff_name, stored.amount) == (shortage.shortage_id, "Bola", Decimal("7.25"))

    core_logic.delete_shortage(reopened, shortage.shortage_id)
    assert core_logic.list_shortages(_reopen(workbook_context, clock)) == []


def test_live_dashboard_over_workbook(workbook_context):
    beer = core_logic.add_item(workbook_context, "Beer", Decimal("2.00"), 5)
    on_update = Mock()
    live = core_logic.LiveDashboard(workbook_context, on_update)

    core_logic.record_sale(workbook_context, SaleCommand(beer.item_id, 2))

    assert on_update.call_args.args[0].total_revenue == Decimal("4.00")
    assert live.stock_levels[beer.item_id] == 3
    live.close()


def test_refresh_context_drops_unsaved_changes(workbook_context, clock):
    store = WorkbookStore(workbook_context.settings.data_file, autosave=False, clock=clock)
    context = core_logic.RuntimeContext(settings=workbook_context.settings, store=store)
    core_logic.add_item(context, "Beer", Decimal("6.50"), 10)

    refreshed = core_logic.refresh_context(context)

    assert core_logic.list_items(refreshed) == []
    core_logic.persist_context(context)
    assert [i.name for i in core_logic.list_items(core_logic.refresh_context(context))] == ["Beer"]
