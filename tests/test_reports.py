"""Tests for the pure reconciliation engine."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal

from barstock import reports
from barstock.data_manager import DailyStockRow, ItemRow, SaleRow, StockLevelRow


EVENING = datetime(2024, 5, 10, 20, 0, tzinfo=UTC)


def _sale(sale_id: str, item_id: str, quantity: int, *, at: datetime = EVENING, price: str | None = None) -> SaleRow:
    return SaleRow(sale_id, item_id, quantity, at, Decimal(price) if price is not None else None)


# ---------------------------------------------------------------------------
# Sales aggregation
# ---------------------------------------------------------------------------


def test_summarize_sales_by_item_adds_quantity_and_revenue():
    items = [ItemRow("a", "Ale", Decimal("5"))]
    sales = [_sale("S1", "a", 2), _sale("S2", "a", 3)]

    [summary] = reports.summarize_sales_by_item(items, sales)

    assert summary.quantity_sold == 5
    assert summary.total_revenue == Decimal("25")


def test_snapshot_price_wins_over_current_catalog_price():
    """Repricing an item does not rewrite the revenue of earlier sales."""

    items = [ItemRow("a", "Ale", Decimal("6"))]
    sales = [_sale("S1", "a", 2, price="5"), _sale("S2", "a", 1)]

    [summary] = reports.summarize_sales_by_item(items, sales)

    assert summary.total_revenue == Decimal("16")


def test_unknown_items_are_reported_without_raising():
    items = [ItemRow("a", "Ale", Decimal("5"))]
    sales = [_sale("S1", "ghost", 4, price="9"), _sale("S2", "a", 1)]

    summaries = reports.summarize_sales_by_item(items, sales)
    totals = reports.dashboard_totals(items, sales)

    assert [(s.item_id, s.name, s.quantity_sold, s.total_revenue) for s in summaries] == [
        ("ghost", "Unknown", 4, Decimal("0")),
        ("a", "Ale", 1, Decimal("5")),
    ]
    assert totals.total_items_sold == 5
    assert totals.total_revenue == Decimal("5")


def test_dashboard_totals_without_sales():
    totals = reports.dashboard_totals([ItemRow("a", "Ale", Decimal("5"))], [])
    assert totals.total_revenue == Decimal("0")
    assert totals.total_items_sold == 0
    assert totals.best_seller is None


def test_best_seller_tie_break_is_first_seen():
    items = [ItemRow("a", "Ale", Decimal("5")), ItemRow("b", "Bitter", Decimal("4"))]
    sales = [_sale("S1", "b", 2), _sale("S2", "a", 1), _sale("S3", "a", 1)]

    results = {reports.dashboard_totals(items, sales).best_seller.item_id for _ in range(20)}

    assert results == {"b"}


def test_best_seller_has_strictly_highest_quantity():
    items = [ItemRow("a", "Ale", Decimal("5")), ItemRow("b", "Bitter", Decimal("4"))]
    sales = [_sale("S1", "a", 1), _sale("S2", "b", 3)]

    best = reports.dashboard_totals(items, sales).best_seller

    assert (best.item_id, best.quantity_sold, best.total_revenue) == ("b", 3, Decimal("12"))


# ---------------------------------------------------------------------------
# Day boundaries
# ---------------------------------------------------------------------------


def test_sales_on_day_uses_half_open_bounds_in_the_zone():
    plus_one = timezone(timedelta(hours=1))
    day = date(2024, 5, 10)
    start, end = reports.day_bounds(day, plus_one)
    sales = [
        _sale("before", "a", 1, at=start - timedelta(microseconds=1)),
        _sale("first", "a", 1, at=start),
        _sale("last", "a", 1, at=end - timedelta(microseconds=1)),
        _sale("next", "a", 1, at=end),
    ]

    assert [s.sale_id for s in reports.sales_on_day(sales, day, plus_one)] == ["first", "last"]
    assert start == datetime(2024, 5, 9, 23, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Stock reconciliation
# ---------------------------------------------------------------------------


def test_summarize_stock_against_counters():
    items = [ItemRow("a", "Ale", Decimal("5")), ItemRow("b", "Bitter", Decimal("4"))]
    stock = [StockLevelRow("K1", "a", 10)]
    sales = [_sale("S1", "a", 3)]

    rows = reports.summarize_stock(items, sales, stock)

    assert [(r.name, r.opening, r.sold, r.expected, r.closing, r.discrepancy) for r in rows] == [
        ("Ale", 10, 3, 7, None, 0),
        ("Bitter", 0, 0, 0, None, 0),
    ]


def test_summarize_stock_for_a_day_reports_discrepancy():
    day = date(2024, 5, 10)
    items = [ItemRow("a", "Ale", Decimal("5"))]
    stock = [DailyStockRow("D-a-2024-05-10", "a", day, 12, closing_stock=7)]
    sales = [
        _sale("S1", "a", 4),
        _sale("S2", "a", 9, at=EVENING - timedelta(days=1)),
    ]

    [row] = reports.summarize_stock(items, sales, stock, as_of=day)

    assert (row.opening, row.sold, row.expected, row.closing, row.discrepancy) == (12, 4, 8, 7, -1)
    assert reports.total_discrepancy([row]) == -1


def test_summarize_stock_keeps_records_of_deleted_items():
    rows = reports.summarize_stock([], [_sale("S1", "gone", 2)], [StockLevelRow("K1", "gone", 5)])
    assert [(r.item_id, r.name, r.expected) for r in rows] == [("gone", "Unknown", 3)]


def test_dashboard_totals_accepts_a_generator():
    items = [ItemRow("a", "Ale", Decimal("5"))]
    sales = (_sale(f"S{n}", "a", 2) for n in range(3))

    totals = reports.dashboard_totals(items, sales)

    assert (totals.total_items_sold, totals.total_revenue) == (6, Decimal("30"))
