"""Data access layer for BarStock.

This module provides the low-level helpers that read from and write to the
master workbook. Business rules belong elsewhere.

The public API is organised around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting and reloading the Excel file.
3. Typed records: one frozen dataclass per sheet, plus the serializers that
   convert them to and from worksheet rows.
4. Sheet operations: iterating records and appending, replacing or removing
   individual rows by their key column.

Every timestamp leaving this module is a timezone-aware UTC ``datetime``;
callers never have to branch on how a value happened to be stored.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import UTC, date, datetime, tzinfo
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_STAFF_ROSTER, SheetName


CONFIG_FILE_NAME = "config.ini"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    bar_name: str
    schema_version: str
    staff_roster: tuple[str, ...] = DEFAULT_STAFF_ROSTER
    timezone: Optional[str] = None


@dataclass(frozen=True)
class ItemRow:
    """Catalog entry from the ``Items`` sheet."""

    item_id: str
    name: str
    unit_price: Decimal


@dataclass(frozen=True)
class StockLevelRow:
    """Running stock counter for one item (``StockLevels`` sheet)."""

    stock_id: str
    item_id: str
    quantity: int


@dataclass(frozen=True)
class DailyStockRow:
    """Opening and counted closing stock for one item on one day."""

    stock_id: str
    item_id: str
    day: date
    opening_stock: int
    closing_stock: Optional[int] = None


@dataclass(frozen=True)
class SaleRow:
    """Logged sale. ``unit_price`` is the catalog price when the sale was made."""

    sale_id: str
    item_id: str
    quantity: int
    sale_date: datetime
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class ShortageRow:
    """Cash shortage attributed to a staff member."""

    shortage_id: str
    staff_name: str
    amount: Decimal
    shortage_date: datetime


@dataclass(frozen=True)
class SheetCodec:
    """Describe how one sheet maps onto its record type."""

    sheet: SheetName
    row_type: type
    columns: tuple[str, ...]
    key_field: str
    serialize: Callable[[Any], list[object]]
    deserialize: Callable[[Sequence[object]], Any]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    An explicit path is returned as-is so callers can target a non-standard
    location. Otherwise the search walks from the current working directory
    up to the filesystem root and returns the first ``CONFIG_FILE_NAME`` it
    finds.

    Args:
        explicit_path (Path | None): Optional override for the upward search.

    Returns:
        Path: The supplied path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the current
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` into a ``ConfigParser``.

    Required entries are validated later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System] DataFile``, ``BarName`` and ``SchemaVersion`` are required.
    ``[System] TimeZone`` and ``[Staff] Roster`` are optional; the roster is a
    comma separated list of names and falls back to
    :data:`~barstock.constants.DEFAULT_STAFF_ROSTER`. Relative data file
    paths are anchored at ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings with an absolute data file path.

    Raises:
        KeyError: If a required section or option is missing, or if the roster
            is declared but empty.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        bar_name = parser.get("System", "BarName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    timezone = parser.get("System", "TimeZone", fallback=None) or None

    roster = DEFAULT_STAFF_ROSTER
    roster_raw = parser.get("Staff", "Roster", fallback=None)
    if roster_raw is not None:
        roster = tuple(name.strip() for name in roster_raw.split(",") if name.strip())
        if not roster:
            raise KeyError("Configuration entry [Staff] Roster lists no names")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        bar_name=bar_name,
        schema_version=schema_version,
        staff_roster=roster,
        timezone=timezone,
    )


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Return the zone used for calendar-day boundaries.

    ``None`` selects the machine's local zone.

    Raises:
        KeyError: If ``name`` is not a known IANA zone.
    """

    if not name:
        return datetime.now().astimezone().tzinfo or UTC
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as exc:
        raise KeyError(f"Unknown time zone in configuration: {name}") from exc


def to_instant(value: object) -> datetime:
    """Normalise a stored timestamp into an aware UTC ``datetime``.

    Accepts ISO-8601 strings, ``datetime`` objects (naive values are taken as
    UTC, which is how this layer writes them) and bare ``date`` values
    (midnight UTC).

    Raises:
        ValueError: If ``value`` is empty or cannot be parsed.
    """

    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        moment = datetime.fromisoformat(value.strip())
    else:
        raise ValueError(f"Cannot interpret timestamp: {value!r}")

    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def to_day(value: object) -> date:
    """Normalise a stored calendar day (``YYYY-MM-DD`` or date-like) into ``date``."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        return date.fromisoformat(value.strip()[:10])
    raise ValueError(f"Cannot interpret calendar day: {value!r}")


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    return int(Decimal(str(raw))) if raw is not None else 0


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def serialize_item(record: ItemRow) -> list[object]:
    """Return ``[ItemID, Name, UnitPrice]``."""

    return [record.item_id, record.name, record.unit_price]


def serialize_stock_level(record: StockLevelRow) -> list[object]:
    """Return ``[StockID, ItemID, Quantity]``."""

    return [record.stock_id, record.item_id, record.quantity]


def serialize_daily_stock(record: DailyStockRow) -> list[object]:
    """Return ``[StockID, ItemID, Date, OpeningStock, ClosingStock]``.

    The day is written as ``YYYY-MM-DD`` text so Excel never reinterprets it
    in the viewer's locale.
    """

    return [
        record.stock_id,
        record.item_id,
        record.day.isoformat(),
        record.opening_stock,
        record.closing_stock,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Return ``[SaleID, ItemID, Quantity, SaleDate, UnitPrice]``."""

    return [
        record.sale_id,
        record.item_id,
        record.quantity,
        record.sale_date.isoformat(),
        record.unit_price,
    ]


def serialize_shortage(record: ShortageRow) -> list[object]:
    """Return ``[ShortageID, StaffName, Amount, ShortageDate]``."""

    return [
        record.shortage_id,
        record.staff_name,
        record.amount,
        record.shortage_date.isoformat(),
    ]


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw ``Items`` row, coercing ids and names to ``str``."""

    item_id, name, price_raw = raw_row[:3]
    return ItemRow(item_id=str(item_id), name=str(name), unit_price=_to_decimal(price_raw))


def deserialize_stock_level(raw_row: Sequence[object]) -> StockLevelRow:
    """Convert a raw ``StockLevels`` row."""

    stock_id, item_id, quantity_raw = raw_row[:3]
    return StockLevelRow(stock_id=str(stock_id), item_id=str(item_id), quantity=_to_int(quantity_raw))


def deserialize_daily_stock(raw_row: Sequence[object]) -> DailyStockRow:
    """Convert a raw ``DailyStock`` row; a blank closing count stays ``None``."""

    stock_id, item_id, day_raw, opening_raw, closing_raw = raw_row[:5]
    return DailyStockRow(
        stock_id=str(stock_id),
        item_id=str(item_id),
        day=to_day(day_raw),
        opening_stock=_to_int(opening_raw),
        closing_stock=_to_int(closing_raw) if closing_raw is not None else None,
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row, normalising the sale date to UTC."""

    sale_id, item_id, quantity_raw, date_raw, price_raw = raw_row[:5]
    return SaleRow(
        sale_id=str(sale_id),
        item_id=str(item_id),
        quantity=_to_int(quantity_raw),
        sale_date=to_instant(date_raw),
        unit_price=_to_decimal(price_raw) if price_raw is not None else None,
    )


def deserialize_shortage(raw_row: Sequence[object]) -> ShortageRow:
    """Convert a raw ``Shortages`` row, normalising the shortage date to UTC."""

    shortage_id, staff_name, amount_raw, date_raw = raw_row[:4]
    return ShortageRow(
        shortage_id=str(shortage_id),
        staff_name=str(staff_name),
        amount=_to_decimal(amount_raw),
        shortage_date=to_instant(date_raw),
    )


SHEET_CODECS: Mapping[SheetName, SheetCodec] = {
    SheetName.ITEMS: SheetCodec(
        SheetName.ITEMS,
        ItemRow,
        ("ItemID", "Name", "UnitPrice"),
        "item_id",
        serialize_item,
        deserialize_item,
    ),
    SheetName.STOCK_LEVELS: SheetCodec(
        SheetName.STOCK_LEVELS,
        StockLevelRow,
        ("StockID", "ItemID", "Quantity"),
        "stock_id",
        serialize_stock_level,
        deserialize_stock_level,
    ),
    SheetName.DAILY_STOCK: SheetCodec(
        SheetName.DAILY_STOCK,
        DailyStockRow,
        ("StockID", "ItemID", "Date", "OpeningStock", "ClosingStock"),
        "stock_id",
        serialize_daily_stock,
        deserialize_daily_stock,
    ),
    SheetName.SALES: SheetCodec(
        SheetName.SALES,
        SaleRow,
        ("SaleID", "ItemID", "Quantity", "SaleDate", "UnitPrice"),
        "sale_id",
        serialize_sale,
        deserialize_sale,
    ),
    SheetName.SHORTAGES: SheetCodec(
        SheetName.SHORTAGES,
        ShortageRow,
        ("ShortageID", "StaffName", "Amount", "ShortageDate"),
        "shortage_id",
        serialize_shortage,
        deserialize_shortage,
    ),
}

SHEET_COLUMNS: Dict[str, tuple[str, ...]] = {
    sheet.value: codec.columns for sheet, codec in SHEET_CODECS.items()
}


def get_codec(sheet: SheetName | str) -> SheetCodec:
    """Return the codec registered for ``sheet``.

    Raises:
        KeyError: If the sheet is not part of the BarStock schema.
    """

    try:
        return SHEET_CODECS[SheetName(sheet)]
    except ValueError as exc:
        raise KeyError(f"Unknown sheet: {sheet}") from exc


def document_id(sheet: SheetName | str, record: Any) -> str:
    """Return the key column value of ``record`` for its sheet."""

    return getattr(record, get_codec(sheet).key_field)


def iter_rows(workbook: Workbook, sheet: SheetName | str) -> Iterable[Any]:
    """Iterate typed records stored on ``sheet``.

    The header row and fully empty rows are skipped; every other row goes
    through the sheet's deserializer.
    """

    codec = get_codec(sheet)
    worksheet = workbook[codec.sheet.value]
    for raw in worksheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            padded = tuple(raw) + (None,) * (len(codec.columns) - len(raw))
            yield codec.deserialize(padded)


def append_row(workbook: Workbook, sheet: SheetName | str, record: Any) -> None:
    """Append ``record`` to ``sheet`` in the sheet's column order."""

    codec = get_codec(sheet)
    workbook[codec.sheet.value].append(codec.serialize(record))


def replace_row(workbook: Workbook, sheet: SheetName | str, record: Any) -> None:
    """Overwrite the row whose key matches ``record`` with the record's values.

    Raises:
        KeyError: If no row carries the record's key.
    """

    codec = get_codec(sheet)
    key = document_id(codec.sheet, record)
    row_index = locate_row(workbook, codec.sheet.value, codec.columns[0], key)
    if row_index is None:
        raise KeyError(f"{codec.sheet.value} row not found: {key}")

    worksheet = workbook[codec.sheet.value]
    for col, value in enumerate(codec.serialize(record), start=1):
        worksheet.cell(row=row_index, column=col, value=value)


def delete_row(workbook: Workbook, sheet: SheetName | str, key: str) -> None:
    """Remove the row whose key column equals ``key``.

    Raises:
        KeyError: If no row carries ``key``.
    """

    codec = get_codec(sheet)
    row_index = locate_row(workbook, codec.sheet.value, codec.columns[0], key)
    if row_index is None:
        raise KeyError(f"{codec.sheet.value} row not found: {key}")
    workbook[codec.sheet.value].delete_rows(row_index)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The header row maps titles to column indices; the first data row whose
    key cell equals ``key_value`` wins.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index, or ``None`` when absent.

    Raises:
        KeyError: If ``key_column`` is not present in the header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if key_col_index - 1 < len(row) and row[key_col_index - 1] is not None and str(row[key_col_index - 1]) == key_value:
            return row_idx

    log.debug("No row with %s=%s on sheet '%s'", key_column, key_value, sheet_name)
    return None
