"""Enumerations and identifiers shared across the BarStock layers.

The data access layer, the store, the reconciliation reports and the CLI all
import their sheet names, write kinds and fallback labels from here so the
workbook layout has a single source of truth.
"""

from __future__ import annotations

from enum import Enum


# Schema version the config file must declare before any write is accepted.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Label used when a sale or stock record points at an item that no longer exists.
UNKNOWN_ITEM_NAME = "Unknown"

# Roster used when config.ini has no [Staff] section.
DEFAULT_STAFF_ROSTER: tuple[str, ...] = ("Bar Staff",)


class SheetName(str, Enum):
    """Enumerate the workbook sheets (store collections) managed by the DAL."""

    ITEMS = "Items"
    STOCK_LEVELS = "StockLevels"
    DAILY_STOCK = "DailyStock"
    SALES = "Sales"
    SHORTAGES = "Shortages"


class WriteKind(str, Enum):
    """Enumerate the mutations accepted by an atomic store write."""

    CREATE = "create"
    ENSURE = "ensure"
    UPDATE = "update"
    DELETE = "delete"


class IdPrefix(str, Enum):
    """Prefixes used when the store allocates document identifiers."""

    ITEM = "I"
    STOCK_LEVEL = "K"
    DAILY_STOCK = "D"
    SALE = "S"
    SHORTAGE = "H"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "UNKNOWN_ITEM_NAME",
    "DEFAULT_STAFF_ROSTER",
    "SheetName",
    "WriteKind",
    "IdPrefix",
]
