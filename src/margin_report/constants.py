"""Enumerations shared across the margin report modules.

Centralises the identifiers used by the data access layer, the view pipeline,
and the command-line front-end so every surface agrees on tab names, view
modes, sortable fields, and margin bands.
"""

from __future__ import annotations

from enum import Enum


# Top-N value meaning "show every record".
TOP_N_UNLIMITED = -1
DEFAULT_TOP_N = 20
TOP_N_CHOICES: tuple[int, ...] = (10, 20, 50, 100, TOP_N_UNLIMITED)

CHART_LIMIT = 10
SUMMARY_PREVIEW_LIMIT = 10

MIN_YEAR = 2000
MAX_YEAR = 2100

MONTH_NAMES: tuple[str, ...] = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

MISSING_TEXT = "-"
UNKNOWN_CUSTOMER = "Unknown"


class ViewMode(str, Enum):
    """Select between gross figures and credit-memo-adjusted figures."""

    STANDARD = "standard"
    ADJUSTED = "adjusted"


class ReportTab(str, Enum):
    """Enumerate the tabs of the margin analysis report."""

    SUMMARY = "summary"
    ITEMS = "items"
    CUSTOMERS = "customers"
    CATEGORIES = "categories"
    CHART = "chart"
    INSIGHTS = "insights"


class RecordKind(str, Enum):
    """Discriminator carried by every margin record type."""

    ITEM = "item"
    CUSTOMER = "customer"
    CATEGORY = "category"
    VENDOR = "vendor"


class SortDirection(str, Enum):
    """Ordering applied by the sort engine."""

    ASC = "asc"
    DESC = "desc"

    def flipped(self) -> "SortDirection":
        return SortDirection.ASC if self is SortDirection.DESC else SortDirection.DESC


class SortField(str, Enum):
    """Enumerate every column a margin table can be sorted by."""

    ITEM_CODE = "item_code"
    DESCRIPTION = "description"
    VENDOR_NAME = "vendor_name"
    CUSTOMER_CODE = "customer_code"
    CUSTOMER_NAME = "customer_name"
    SEARCH_NAME = "search_name"
    POSTING_GROUP = "posting_group"
    TOTAL_QUANTITY = "total_quantity"
    TOTAL_SALES = "total_sales"
    TOTAL_COST = "total_cost"
    MARGIN = "margin"
    MARGIN_PERCENT = "margin_percent"


class Band(str, Enum):
    """Margin percentage bands used for colour coding on every surface."""

    LOW = "Low"
    MEDIUM_LOW = "MediumLow"
    MEDIUM = "Medium"
    HIGH = "High"

    @property
    def rank(self) -> int:
        return _BAND_RANKS[self]

    @property
    def color(self) -> str:
        return _BAND_COLORS[self]


_BAND_RANKS = {
    Band.LOW: 0,
    Band.MEDIUM_LOW: 1,
    Band.MEDIUM: 2,
    Band.HIGH: 3,
}

_BAND_COLORS = {
    Band.HIGH: "green-600",
    Band.MEDIUM: "amber-500",
    Band.MEDIUM_LOW: "orange-600",
    Band.LOW: "red-500",
}

# Lower bounds, checked from the highest band down.
BAND_THRESHOLDS: tuple[tuple[int, Band], ...] = (
    (28, Band.HIGH),
    (20, Band.MEDIUM),
    (15, Band.MEDIUM_LOW),
)

# Tabs that render a record table; the chart mirrors the last one viewed.
TABLE_TABS: tuple[ReportTab, ...] = (
    ReportTab.ITEMS,
    ReportTab.CUSTOMERS,
    ReportTab.CATEGORIES,
)


__all__ = [
    "TOP_N_UNLIMITED",
    "DEFAULT_TOP_N",
    "TOP_N_CHOICES",
    "CHART_LIMIT",
    "SUMMARY_PREVIEW_LIMIT",
    "MIN_YEAR",
    "MAX_YEAR",
    "MONTH_NAMES",
    "MISSING_TEXT",
    "UNKNOWN_CUSTOMER",
    "ViewMode",
    "ReportTab",
    "RecordKind",
    "SortDirection",
    "SortField",
    "Band",
    "BAND_THRESHOLDS",
    "TABLE_TABS",
]
