"""Reconciliation reports computed from snapshots of the bar's collections.

Everything here is a pure function over lists of records: no store access, no
logging side effects and no exceptions for dangling references. A sale or
stock record whose item no longer exists is reported under
:data:`~barstock.constants.UNKNOWN_ITEM_NAME` with zero revenue, because sales
and catalog deletions are not coupled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .constants import UNKNOWN_ITEM_NAME
from .data_manager import DailyStockRow, ItemRow, SaleRow, ShortageRow, StockLevelRow


StockRecord = Union[StockLevelRow, DailyStockRow]


@dataclass(frozen=True)
class ItemSalesSummary:
    """Quantity and revenue sold for one item id."""

    item_id: str
    name: str
    quantity_sold: int
    total_revenue: Decimal


@dataclass(frozen=True)
class StockSummaryRow:
    """Opening, sold, expected and counted stock for one item."""

    item_id: str
    name: str
    opening: int
    sold: int
    expected: int
    closing: Optional[int]
    discrepancy: int


@dataclass(frozen=True)
class DashboardTotals:
    """Headline figures for the dashboard."""

    total_revenue: Decimal
    total_items_sold: int
    best_seller: Optional[ItemSalesSummary]


def day_bounds(day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Return ``[start, end)`` of ``day`` in ``tz`` as aware datetimes."""

    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def sales_on_day(sales: Iterable[SaleRow], day: date, tz: tzinfo) -> List[SaleRow]:
    """Keep the sales whose ``sale_date`` falls on ``day`` in ``tz``."""

    start, end = day_bounds(day, tz)
    return [sale for sale in sales if start <= sale.sale_date < end]


def shortages_on_day(shortages: Iterable[ShortageRow], day: date, tz: tzinfo) -> List[ShortageRow]:
    """Keep the shortages logged on ``day`` in ``tz``."""

    start, end = day_bounds(day, tz)
    return [shortage for shortage in shortages if start <= shortage.shortage_date < end]


def sale_revenue(sale: SaleRow, item: Optional[ItemRow]) -> Decimal:
    """Revenue of one sale.

    The price captured on the sale wins over the current catalog price; a
    sale whose item is gone is worth nothing.
    """

    if item is None:
        return Decimal("0")
    price = sale.unit_price if sale.unit_price is not None else item.unit_price
    return price * sale.quantity


def summarize_sales_by_item(items: Sequence[ItemRow], sales: Iterable[SaleRow]) -> List[ItemSalesSummary]:
    """Group ``sales`` by item id, in the order item ids are first seen."""

    by_id = {item.item_id: item for item in items}
    quantities: Dict[str, int] = {}
    revenue: Dict[str, Decimal] = {}
    for sale in sales:
        item = by_id.get(sale.item_id)
        quantities[sale.item_id] = quantities.get(sale.item_id, 0) + sale.quantity
        revenue[sale.item_id] = revenue.get(sale.item_id, Decimal("0")) + sale_revenue(sale, item)

    summaries = []
    for item_id, quantity in quantities.items():
        item = by_id.get(item_id)
        summaries.append(
            ItemSalesSummary(
                item_id=item_id,
                name=item.name if item is not None else UNKNOWN_ITEM_NAME,
                quantity_sold=quantity,
                total_revenue=revenue[item_id],
            )
        )
    return summaries


def summarize_stock(
    items: Sequence[ItemRow],
    sales: Iterable[SaleRow],
    stock: Iterable[StockRecord],
    as_of: Optional[date] = None,
    tz: Optional[tzinfo] = None,
) -> List[StockSummaryRow]:
    """Reconcile stock records against the sales log.

    ``opening`` comes from ``StockLevelRow.quantity`` or
    ``DailyStockRow.opening_stock``; items without a record open at 0. With
    ``as_of`` only that day's sales count as sold (day boundaries in ``tz``,
    UTC when omitted). ``discrepancy`` is ``closing - expected`` when a
    closing count was entered and 0 otherwise.

    Rows follow catalog order; stock records for unknown items come last.
    """

    if as_of is not None:
        sales = sales_on_day(sales, as_of, tz or UTC)

    sold: Dict[str, int] = {}
    for sale in sales:
        sold[sale.item_id] = sold.get(sale.item_id, 0) + sale.quantity

    records: Dict[str, StockRecord] = {}
    for record in stock:
        records.setdefault(record.item_id, record)

    rows = [_stock_row(item.item_id, item.name, records.get(item.item_id), sold.get(item.item_id, 0)) for item in items]
    known = {item.item_id for item in items}
    for item_id, record in records.items():
        if item_id not in known:
            rows.append(_stock_row(item_id, UNKNOWN_ITEM_NAME, record, sold.get(item_id, 0)))
    return rows


def _stock_row(item_id: str, name: str, record: Optional[StockRecord], sold: int) -> StockSummaryRow:
    closing: Optional[int] = None
    if record is None:
        opening = 0
    elif isinstance(record, DailyStockRow):
        opening = record.opening_stock
        closing = record.closing_stock
    else:
        opening = record.quantity
    expected = opening - sold
    return StockSummaryRow(
        item_id=item_id,
        name=name,
        opening=opening,
        sold=sold,
        expected=expected,
        closing=closing,
        discrepancy=closing - expected if closing is not None else 0,
    )


def dashboard_totals(items: Iterable[ItemRow], sales: Iterable[SaleRow]) -> DashboardTotals:
    """Total revenue, items sold and best seller for ``sales``.

    The best seller is the first item (by first sale seen) with the highest
    quantity, so equal input order always yields the same answer.
    """

    sales = list(sales)
    summaries = summarize_sales_by_item(items, sales)
    best: Optional[ItemSalesSummary] = None
    for summary in summaries:
        if best is None or summary.quantity_sold > best.quantity_sold:
            best = summary
    return DashboardTotals(
        total_revenue=sum((s.total_revenue for s in summaries), Decimal("0")),
        total_items_sold=sum(sale.quantity for sale in sales),
        best_seller=best,
    )


def total_discrepancy(rows: Iterable[StockSummaryRow]) -> int:
    return sum(row.discrepancy for row in rows)
