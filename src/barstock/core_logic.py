"""Business logic layer for BarStock.

This module owns every rule that mutates the bar's stock: sales are only
recorded when enough stock is on hand, and a sale and its stock movement are
always committed in one atomic store write. Reads, catalog administration,
daily stock rollover, closing counts and cash shortages live here too, so the
CLI (or any other front end) never talks to the store directly.

The stock counter of an item follows

    quantity(t) = quantity(t-1) - sold + restored by deleted sales + restocked

and only the functions in this module write it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, timedelta, tzinfo
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from . import data_manager, log, reports
from .constants import EXPECTED_SCHEMA_VERSION, IdPrefix, SheetName
from .data_manager import DailyStockRow, ItemRow, SaleRow, ShortageRow, StockLevelRow
from .store import SERVER_TIMESTAMP, DocumentStore, Filter, Subscription, WorkbookStore, WriteOp


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when a request fails a rule checked before any write."""


class InsufficientStockError(ValidationError):
    """Raised when a sale asks for more than the stock on hand."""

    def __init__(self, item_name: str, requested: int, available: int) -> None:
        self.item_name = item_name
        self.requested = requested
        self.available = available
        super().__init__(f"Only {available} available for '{item_name}' (requested {requested})")


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced item, sale or shortage is unknown."""


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration plus the store every business function works against."""

    settings: data_manager.ConfigSettings
    store: DocumentStore
    _tz: Dict[str, tzinfo] = field(default_factory=dict, repr=False, compare=False)

    @property
    def tz(self) -> tzinfo:
        """Zone used for calendar-day boundaries."""

        if "zone" not in self._tz:
            self._tz["zone"] = data_manager.resolve_timezone(self.settings.timezone)
        return self._tz["zone"]

    def today(self) -> date:
        """Current calendar day in the bar's zone, by the store clock."""

        return self.store.server_timestamp().astimezone(self.tz).date()


@dataclass(frozen=True)
class SaleCommand:
    """Staff intent to sell ``quantity`` units of an item."""

    item_id: str
    quantity: int


@dataclass(frozen=True)
class SaleEditCommand:
    """Correction of a logged sale; ``None`` keeps the current value."""

    item_id: Optional[str] = None
    quantity: Optional[int] = None


@dataclass(frozen=True)
class RestockCommand:
    """Manual addition to an item's stock."""

    item_id: str
    quantity: int


@dataclass(frozen=True)
class ShortageCommand:
    """Cash shortage to log against a staff member."""

    staff_name: str
    amount: Decimal


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration and open the workbook-backed store.

    Args:
        config_path (Path | None): Optional override for ``config.ini``. When
            omitted the data layer searches upwards from the working directory.

    Returns:
        RuntimeContext: Context ready for the business functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = WorkbookStore(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work against a workbook declared with another schema version.

    Raises:
        RuntimeError: If ``config.ini`` declares a version other than
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Flush the store to its backing file, if it has one."""

    context.store.flush()
    log.info("Persisted store for '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a new context whose store is reopened from disk.

    Unsaved changes held by the previous store are dropped.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    store = WorkbookStore(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=store)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def list_items(context: RuntimeContext) -> List[ItemRow]:
    """Return the catalog in workbook order."""
    return context.store.get_all(SheetName.ITEMS)


def get_item(context: RuntimeContext, item_id: str) -> ItemRow:
    """Resolve an item by id.

    Raises:
        MissingReferenceError: If the catalog has no such item.
    """
    item = context.store.get(SheetName.ITEMS, item_id)
    if item is None:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown item id: {item_id}")
    return item


def list_sales(context: RuntimeContext, *, day: Optional[date] = None) -> List[SaleRow]:
    """Return logged sales, optionally only those made on ``day``."""
    sales = context.store.get_all(SheetName.SALES)
    if day is None:
        return sales
    return reports.sales_on_day(sales, day, context.tz)


def get_sale(context: RuntimeContext, sale_id: str) -> SaleRow:
    """Resolve a sale by id.

    Raises:
        MissingReferenceError: If no such sale is logged.
    """
    sale = context.store.get(SheetName.SALES, sale_id)
    if sale is None:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}")
    return sale


def list_stock_levels(context: RuntimeContext) -> List[StockLevelRow]:
    return context.store.get_all(SheetName.STOCK_LEVELS)


def get_stock_level(context: RuntimeContext, item_id: str) -> Optional[StockLevelRow]:
    """Return the running counter of ``item_id``, or ``None`` if it has none."""
    levels = context.store.get_all(SheetName.STOCK_LEVELS, [Filter("item_id", "==", item_id)])
    return levels[0] if levels else None


def list_daily_stock(context: RuntimeContext, day: Optional[date] = None) -> List[DailyStockRow]:
    """Return the daily stock records of ``day`` (today by default)."""
    day = day or context.today()
    return context.store.get_all(SheetName.DAILY_STOCK, [Filter("day", "==", day)])


def list_shortages(context: RuntimeContext, *, day: Optional[date] = None) -> List[ShortageRow]:
    """Return logged shortages, optionally only those of ``day``."""
    shortages = context.store.get_all(SheetName.SHORTAGES)
    if day is None:
        return shortages
    return reports.shortages_on_day(shortages, day, context.tz)


def daily_stock_id(item_id: str, day: date) -> str:
    """Deterministic id of the daily record of ``item_id`` on ``day``."""
    return f"{IdPrefix.DAILY_STOCK.value}-{item_id}-{day.isoformat()}"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: object) -> int:
    """Validate that a quantity is a whole number of at least 1.

    Raises:
        ValidationError: If ``quantity`` is not an integer or is below 1.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r is not a whole number", quantity)
        raise ValidationError(f"Quantity must be a whole number, got {quantity!r}")
    if quantity < 1:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be at least 1")
    return quantity


def require_stock_count(count: object) -> int:
    """Validate a manual stock count (whole number, zero allowed).

    Raises:
        ValidationError: If ``count`` is not a non-negative integer.
    """
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        log.error("Stock count validation failed: %r", count)
        raise ValidationError(f"Stock count must be a whole number of at least 0, got {count!r}")
    return count


def require_positive_money(amount: object, *, label: str = "Amount") -> Decimal:
    """Validate a strictly positive monetary value and return it as ``Decimal``.

    Raises:
        ValidationError: If ``amount`` is not a number greater than zero.
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        log.error("%s validation failed: %r", label, amount)
        raise ValidationError(f"{label} must be a number, got {amount!r}") from exc
    if not value.is_finite() or value <= Decimal("0"):
        log.error("%s validation failed: %s", label, value)
        raise ValidationError(f"{label} must be greater than 0")
    return value


# ---------------------------------------------------------------------------
# Transaction coordinator
# ---------------------------------------------------------------------------


def record_sale(context: RuntimeContext, command: SaleCommand) -> SaleRow:
    """Log a sale and take its quantity off the item's stock counter.

    The sale is created (stamped with the store's commit time and the item's
    current price) in the same atomic write that decrements the counter. The
    counter update carries the value it was validated against, so a
    concurrent sale that got there first makes this write fail instead of
    overselling.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (SaleCommand): Item and quantity to sell.

    Returns:
        SaleRow: The committed sale.

    Raises:
        ValidationError: If the quantity is not a whole number of at least 1.
        MissingReferenceError: If the item does not exist.
        InsufficientStockError: If ``quantity`` exceeds the stock on hand. No
            write happens.
        StoreFailure: If the store rejects or cannot persist the write.
    """
    require_positive_quantity(command.quantity)
    item = get_item(context, command.item_id)
    level = get_stock_level(context, item.item_id)
    available = level.quantity if level is not None else 0
    if level is None or command.quantity > available:
        log.error(
            "Rejected sale of %s x '%s': only %s available",
            command.quantity,
            item.item_id,
            available,
        )
        raise InsufficientStockError(item.name, command.quantity, available)

    sale = SaleRow(
        sale_id=context.store.new_id(IdPrefix.SALE.value),
        item_id=item.item_id,
        quantity=command.quantity,
        sale_date=SERVER_TIMESTAMP,
        unit_price=item.unit_price,
    )
    commit_time = context.store.run_atomic_write(
        [
            WriteOp.create(SheetName.SALES, sale),
            WriteOp.update(
                SheetName.STOCK_LEVELS,
                level.stock_id,
                quantity=available - command.quantity,
                expect={"quantity": available},
            ),
        ]
    )
    recorded = replace(sale, sale_date=commit_time)
    log.info(
        "Recorded sale '%s' of %s x '%s' (stock %s -> %s)",
        recorded.sale_id,
        recorded.quantity,
        item.item_id,
        available,
        available - command.quantity,
    )
    return recorded


def delete_sale(context: RuntimeContext, sale_id: str) -> Optional[SaleRow]:
    """Delete a sale and give its quantity back to the item's stock counter.

    Deleting an id that is not logged (for example a second delete of the
    same sale) is a no-op and returns ``None``. When the item no longer has
    a stock counter the sale is removed without restoring anything.

    Returns:
        SaleRow | None: The deleted sale, or ``None`` when nothing was deleted.

    Raises:
        StoreFailure: If the store rejects or cannot persist the write, for
            instance because another session deleted the sale first.
    """
    sale = context.store.get(SheetName.SALES, sale_id)
    if sale is None:
        log.warning("Sale '%s' not found; nothing to delete", sale_id)
        return None

    ops = [
        WriteOp.delete(
            SheetName.SALES,
            sale.sale_id,
            expect={"item_id": sale.item_id, "quantity": sale.quantity},
        )
    ]
    level = get_stock_level(context, sale.item_id)
    if level is None:
        log.warning(
            "No stock counter for item '%s'; deleting sale '%s' without restoring stock",
            sale.item_id,
            sale.sale_id,
        )
    else:
        ops.append(
            WriteOp.update(
                SheetName.STOCK_LEVELS,
                level.stock_id,
                quantity=level.quantity + sale.quantity,
                expect={"quantity": level.quantity},
            )
        )
    context.store.run_atomic_write(ops)
    log.info("Deleted sale '%s' (%s x '%s')", sale.sale_id, sale.quantity, sale.item_id)
    return sale


def update_sale(context: RuntimeContext, sale_id: str, command: SaleEditCommand) -> SaleRow:
    """Change the item or quantity of a logged sale.

    Behaves like deleting the old sale and recording the new one, in a single
    atomic write: the old quantity goes back to the old item, the new quantity
    is checked against the new item's stock (counting that give-back when the
    item is unchanged) and taken off it. The sale keeps its id and date; the
    price snapshot is retaken only when the item changes.

    Raises:
        MissingReferenceError: If the sale or the new item is unknown.
        ValidationError: If the new quantity is invalid.
        InsufficientStockError: If the new quantity exceeds available stock.
        StoreFailure: If the store rejects or cannot persist the write.
    """
    sale = get_sale(context, sale_id)
    new_item_id = command.item_id or sale.item_id
    new_quantity = command.quantity if command.quantity is not None else sale.quantity
    require_positive_quantity(new_quantity)
    new_item = get_item(context, new_item_id)
    same_item = new_item_id == sale.item_id

    old_level = get_stock_level(context, sale.item_id)
    new_level = old_level if same_item else get_stock_level(context, new_item_id)
    give_back = sale.quantity if same_item and old_level is not None else 0
    available = new_level.quantity + give_back if new_level is not None else 0
    if new_level is None or new_quantity > available:
        log.error(
            "Rejected edit of sale '%s' to %s x '%s': only %s available",
            sale.sale_id,
            new_quantity,
            new_item_id,
            available,
        )
        raise InsufficientStockError(new_item.name, new_quantity, available)

    ops = [
        WriteOp.update(
            SheetName.SALES,
            sale.sale_id,
            item_id=new_item_id,
            quantity=new_quantity,
            unit_price=sale.unit_price if same_item else new_item.unit_price,
            expect={"item_id": sale.item_id, "quantity": sale.quantity},
        )
    ]
    if same_item:
        ops.append(
            WriteOp.update(
                SheetName.STOCK_LEVELS,
                new_level.stock_id,
                quantity=available - new_quantity,
                expect={"quantity": new_level.quantity},
            )
        )
    else:
        if old_level is None:
            log.warning(
                "No stock counter for item '%s'; not restoring %s unit(s) from sale '%s'",
                sale.item_id,
                sale.quantity,
                sale.sale_id,
            )
        else:
            ops.append(
                WriteOp.update(
                    SheetName.STOCK_LEVELS,
                    old_level.stock_id,
                    quantity=old_level.quantity + sale.quantity,
                    expect={"quantity": old_level.quantity},
                )
            )
        ops.append(
            WriteOp.update(
                SheetName.STOCK_LEVELS,
                new_level.stock_id,
                quantity=new_level.quantity - new_quantity,
                expect={"quantity": new_level.quantity},
            )
        )
    context.store.run_atomic_write(ops)
    updated = get_sale(context, sale.sale_id)
    log.info(
        "Updated sale '%s' from %s x '%s' to %s x '%s'",
        sale.sale_id,
        sale.quantity,
        sale.item_id,
        updated.quantity,
        updated.item_id,
    )
    return updated


def restock(context: RuntimeContext, command: RestockCommand) -> StockLevelRow:
    """Add delivered units to an item's stock.

    The running counter grows by ``quantity`` (it is created if the item has
    none). Today's daily records are initialised first, so the opening stock
    of the item's record for today grows by the same amount in the same write.

    Raises:
        ValidationError: If the quantity is invalid.
        MissingReferenceError: If the item does not exist.
        StoreFailure: If the store rejects or cannot persist the write.
    """
    require_positive_quantity(command.quantity)
    item = get_item(context, command.item_id)
    ensure_daily_stock(context)
    level = get_stock_level(context, item.item_id)
    if level is None:
        level_id = context.store.new_id(IdPrefix.STOCK_LEVEL.value)
        ops = [WriteOp.create(SheetName.STOCK_LEVELS, StockLevelRow(level_id, item.item_id, command.quantity))]
        before = 0
    else:
        level_id = level.stock_id
        before = level.quantity
        ops = [
            WriteOp.update(
                SheetName.STOCK_LEVELS,
                level_id,
                quantity=before + command.quantity,
                expect={"quantity": before},
            )
        ]

    daily = context.store.get(SheetName.DAILY_STOCK, daily_stock_id(item.item_id, context.today()))
    if daily is not None:
        ops.append(
            WriteOp.update(
                SheetName.DAILY_STOCK,
                daily.stock_id,
                opening_stock=daily.opening_stock + command.quantity,
                expect={"opening_stock": daily.opening_stock},
            )
        )
    context.store.run_atomic_write(ops)
    log.info(
        "Restocked '%s' with %s unit(s) (stock %s -> %s)",
        item.item_id,
        command.quantity,
        before,
        before + command.quantity,
    )
    return context.store.get(SheetName.STOCK_LEVELS, level_id)


# ---------------------------------------------------------------------------
# Daily stock
# ---------------------------------------------------------------------------


def _sold_by_item(sales: Iterable[SaleRow]) -> Dict[str, int]:
    sold: Dict[str, int] = {}
    for sale in sales:
        sold[sale.item_id] = sold.get(sale.item_id, 0) + sale.quantity
    return sold


def ensure_daily_stock(context: RuntimeContext, day: Optional[date] = None) -> List[DailyStockRow]:
    """Make sure every catalog item has a daily stock record for ``day``.

    A missing record opens at the previous day's opening stock minus the
    previous day's sales, floored at zero. Items that had no record the day
    before open at their running counter plus the units already sold on
    ``day``. Records are written as conditional creates on deterministic ids,
    so two sessions initialising the same day end up with one record each.

    Returns:
        list[DailyStockRow]: The records of ``day`` after initialisation.
    """
    day = day or context.today()
    existing = {record.item_id for record in list_daily_stock(context, day)}
    missing = [item for item in list_items(context) if item.item_id not in existing]
    if not missing:
        return list_daily_stock(context, day)

    previous_day = day - timedelta(days=1)
    previous = {record.item_id: record for record in list_daily_stock(context, previous_day)}
    all_sales = list_sales(context)
    sold_previous = _sold_by_item(reports.sales_on_day(all_sales, previous_day, context.tz))
    sold_today = _sold_by_item(reports.sales_on_day(all_sales, day, context.tz))
    levels = {level.item_id: level for level in list_stock_levels(context)}

    ops = []
    for item in missing:
        prior = previous.get(item.item_id)
        if prior is not None:
            opening = prior.opening_stock - sold_previous.get(item.item_id, 0)
        elif item.item_id in levels:
            opening = levels[item.item_id].quantity + sold_today.get(item.item_id, 0)
        else:
            opening = 0
        ops.append(
            WriteOp.ensure(
                SheetName.DAILY_STOCK,
                DailyStockRow(
                    stock_id=daily_stock_id(item.item_id, day),
                    item_id=item.item_id,
                    day=day,
                    opening_stock=max(opening, 0),
                ),
            )
        )
    context.store.run_atomic_write(ops)
    log.info("Initialised daily stock for %s (%d item(s))", day.isoformat(), len(ops))
    return list_daily_stock(context, day)


def _daily_record(context: RuntimeContext, item_id: str, day: Optional[date]) -> DailyStockRow:
    get_item(context, item_id)
    day = day or context.today()
    ensure_daily_stock(context, day)
    record = context.store.get(SheetName.DAILY_STOCK, daily_stock_id(item_id, day))
    if record is None:
        raise MissingReferenceError(f"No daily stock record for item '{item_id}' on {day.isoformat()}")
    return record


def set_opening_stock(
    context: RuntimeContext, item_id: str, quantity: int, day: Optional[date] = None
) -> DailyStockRow:
    """Overwrite the opening stock of ``item_id`` for ``day`` (today by default)."""
    require_stock_count(quantity)
    record = _daily_record(context, item_id, day)
    context.store.run_atomic_write(
        [
            WriteOp.update(
                SheetName.DAILY_STOCK,
                record.stock_id,
                opening_stock=quantity,
                expect={"opening_stock": record.opening_stock},
            )
        ]
    )
    log.info(
        "Set opening stock of '%s' on %s: %s -> %s",
        item_id,
        record.day.isoformat(),
        record.opening_stock,
        quantity,
    )
    return context.store.get(SheetName.DAILY_STOCK, record.stock_id)


def record_closing_count(
    context: RuntimeContext, item_id: str, counted: int, day: Optional[date] = None
) -> DailyStockRow:
    """Store the physically counted closing stock of ``item_id`` for ``day``."""
    require_stock_count(counted)
    record = _daily_record(context, item_id, day)
    context.store.run_atomic_write(
        [WriteOp.update(SheetName.DAILY_STOCK, record.stock_id, closing_stock=counted)]
    )
    log.info("Recorded closing count of '%s' on %s: %s", item_id, record.day.isoformat(), counted)
    return context.store.get(SheetName.DAILY_STOCK, record.stock_id)


# ---------------------------------------------------------------------------
# Catalog administration
# ---------------------------------------------------------------------------


def add_item(
    context: RuntimeContext,
    name: str,
    unit_price: Decimal,
    opening_quantity: int = 0,
) -> ItemRow:
    """Create an item together with its stock counter and today's record.

    Raises:
        ValidationError: If the name is blank, the price is not positive or
            the opening quantity is negative.
        StoreFailure: If the store rejects or cannot persist the write.
    """
    name = (name or "").strip()
    if not name:
        log.error("Item validation failed: blank name")
        raise ValidationError("Item name is required")
    price = require_positive_money(unit_price, label="Unit price")
    require_stock_count(opening_quantity)

    item = ItemRow(item_id=context.store.new_id(IdPrefix.ITEM.value), name=name, unit_price=price)
    today = context.today()
    context.store.run_atomic_write(
        [
            WriteOp.create(SheetName.ITEMS, item),
            WriteOp.create(
                SheetName.STOCK_LEVELS,
                StockLevelRow(
                    stock_id=context.store.new_id(IdPrefix.STOCK_LEVEL.value),
                    item_id=item.item_id,
                    quantity=opening_quantity,
                ),
            ),
            WriteOp.ensure(
                SheetName.DAILY_STOCK,
                DailyStockRow(
                    stock_id=daily_stock_id(item.item_id, today),
                    item_id=item.item_id,
                    day=today,
                    opening_stock=opening_quantity,
                ),
            ),
        ]
    )
    log.info("Added item '%s' (%s at %s, opening %s)", item.item_id, item.name, item.unit_price, opening_quantity)
    return item


def update_item(
    context: RuntimeContext,
    item_id: str,
    *,
    name: Optional[str] = None,
    unit_price: Optional[Decimal] = None,
) -> ItemRow:
    """Rename or reprice an item. Sales keep the price they were made at."""
    item = get_item(context, item_id)
    changes = {}
    if name is not None:
        name = name.strip()
        if not name:
            raise ValidationError("Item name is required")
        changes["name"] = name
    if unit_price is not None:
        changes["unit_price"] = require_positive_money(unit_price, label="Unit price")
    if not changes:
        return item

    context.store.run_atomic_write([WriteOp.update(SheetName.ITEMS, item_id, **changes)])
    log.info("Updated item '%s': %s", item_id, ", ".join(f"{k}={v}" for k, v in changes.items()))
    return get_item(context, item_id)


def delete_item(context: RuntimeContext, item_id: str) -> ItemRow:
    """Delete an item with its stock counter and daily records.

    Logged sales are kept; reports show them under the unknown-item label.

    Raises:
        MissingReferenceError: If the item does not exist.
    """
    item = get_item(context, item_id)
    by_item = [Filter("item_id", "==", item_id)]
    ops = [WriteOp.delete(SheetName.ITEMS, item_id)]
    ops += [WriteOp.delete(SheetName.STOCK_LEVELS, r.stock_id) for r in context.store.get_all(SheetName.STOCK_LEVELS, by_item)]
    ops += [WriteOp.delete(SheetName.DAILY_STOCK, r.stock_id) for r in context.store.get_all(SheetName.DAILY_STOCK, by_item)]
    context.store.run_atomic_write(ops)
    log.info("Deleted item '%s' (%s) and %d stock record(s)", item_id, item.name, len(ops) - 1)
    return item


# ---------------------------------------------------------------------------
# Shortages
# ---------------------------------------------------------------------------


def record_shortage(context: RuntimeContext, command: ShortageCommand) -> ShortageRow:
    """Log a cash shortage for a rostered staff member.

    Raises:
        ValidationError: If the staff member is not on the roster or the
            amount is not positive.
    """
    staff_name = (command.staff_name or "").strip()
    if staff_name not in context.settings.staff_roster:
        log.error("Shortage rejected: '%s' is not on the staff roster", staff_name)
        raise ValidationError(
            f"Unknown staff member '{staff_name}'; expected one of: {', '.join(context.settings.staff_roster)}"
        )
    amount = require_positive_money(command.amount)
    shortage = ShortageRow(
        shortage_id=context.store.new_id(IdPrefix.SHORTAGE.value),
        staff_name=staff_name,
        amount=amount,
        shortage_date=SERVER_TIMESTAMP,
    )
    commit_time = context.store.run_atomic_write([WriteOp.create(SheetName.SHORTAGES, shortage)])
    log.info("Recorded shortage '%s' of %s for %s", shortage.shortage_id, amount, staff_name)
    return replace(shortage, shortage_date=commit_time)


def delete_shortage(context: RuntimeContext, shortage_id: str) -> Optional[ShortageRow]:
    """Delete a shortage record; unknown ids are a no-op returning ``None``."""
    shortage = context.store.get(SheetName.SHORTAGES, shortage_id)
    if shortage is None:
        log.warning("Shortage '%s' not found; nothing to delete", shortage_id)
        return None
    context.store.run_atomic_write([WriteOp.delete(SheetName.SHORTAGES, shortage_id)])
    log.info("Deleted shortage '%s'", shortage_id)
    return shortage


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def _sales_in_scope(context: RuntimeContext, day: Optional[date], all_days: bool) -> List[SaleRow]:
    if all_days:
        return list_sales(context)
    return list_sales(context, day=day or context.today())


def sales_summary(
    context: RuntimeContext, day: Optional[date] = None, *, all_days: bool = False
) -> List[reports.ItemSalesSummary]:
    """Per-item sales of ``day`` (today by default) or of every day."""
    return reports.summarize_sales_by_item(list_items(context), _sales_in_scope(context, day, all_days))


def stock_summary(context: RuntimeContext, day: Optional[date] = None) -> List[reports.StockSummaryRow]:
    """Reconcile ``day``'s opening stock, sales and closing counts.

    The day's records are initialised on first use (see
    :func:`ensure_daily_stock`).
    """
    day = day or context.today()
    records = ensure_daily_stock(context, day)
    return reports.summarize_stock(list_items(context), list_sales(context), records, as_of=day, tz=context.tz)


def dashboard(
    context: RuntimeContext, day: Optional[date] = None, *, all_days: bool = False
) -> reports.DashboardTotals:
    """Headline totals for ``day`` (today by default) or for every day."""
    return reports.dashboard_totals(list_items(context), _sales_in_scope(context, day, all_days))


class LiveDashboard:
    """Keep dashboard totals current while the store changes.

    Subscribes to items, sales and stock counters; every snapshot pushed by
    the store recomputes :attr:`totals` and hands them to ``on_update``.
    Call :meth:`close` to stop listening.
    """

    def __init__(
        self,
        context: RuntimeContext,
        on_update: Callable[[reports.DashboardTotals], None],
        *,
        day: Optional[date] = None,
        all_days: bool = False,
    ) -> None:
        self.context = context
        self.on_update = on_update
        self.day = day
        self.all_days = all_days
        self.items: List[ItemRow] = []
        self.sales: List[SaleRow] = []
        self.stock_levels: Dict[str, int] = {}
        self.totals: Optional[reports.DashboardTotals] = None
        self._ready = False
        self._subscriptions: List[Subscription] = [
            context.store.subscribe(SheetName.ITEMS, self._on_items),
            context.store.subscribe(SheetName.SALES, self._on_sales),
            context.store.subscribe(SheetName.STOCK_LEVELS, self._on_stock),
        ]
        self._ready = True
        self._publish()

    def _on_items(self, snapshot: List[ItemRow]) -> None:
        self.items = snapshot
        self._publish()

    def _on_sales(self, snapshot: List[SaleRow]) -> None:
        self.sales = snapshot
        self._publish()

    def _on_stock(self, snapshot: List[StockLevelRow]) -> None:
        self.stock_levels = {level.item_id: level.quantity for level in snapshot}
        self._publish()

    def _publish(self) -> None:
        if not self._ready:
            return
        sales = self.sales
        if not self.all_days:
            sales = reports.sales_on_day(sales, self.day or self.context.today(), self.context.tz)
        self.totals = reports.dashboard_totals(self.items, sales)
        self.on_update(self.totals)

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
