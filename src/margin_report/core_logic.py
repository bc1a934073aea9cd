"""Business logic layer for the margin report.

This module holds the pure, deterministic pieces of the view pipeline: band
classification, sorting, search and category filtering, Top-N truncation,
view-mode selection, chart projection, and the shaping of rows, summaries,
export bundles, and insights requests. Nothing here performs I/O or keeps
state; every function returns a fresh value and never mutates its input.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple, TypeVar, Union

from . import data_manager, log
from .constants import (
    BAND_THRESHOLDS,
    CHART_LIMIT,
    MAX_YEAR,
    MIN_YEAR,
    MISSING_TEXT,
    MONTH_NAMES,
    SUMMARY_PREVIEW_LIMIT,
    TOP_N_UNLIMITED,
    UNKNOWN_CUSTOMER,
    Band,
    RecordKind,
    SortDirection,
    SortField,
    ViewMode,
)
from .data_manager import (
    CategoryMarginRecord,
    CustomerMarginRecord,
    ExportBundle,
    ItemMarginRecord,
    OverallSummary,
    ProcessedMarginDataset,
)


class MarginReportError(Exception):
    """Base class for errors raised by the margin report."""


class InvalidSelectionError(MarginReportError, ValueError):
    """Raised when a period, sort field, mode, or tab selection is invalid."""


class DatasetUnavailableError(MarginReportError):
    """Raised when the dataset for a period cannot be obtained."""


R = TypeVar("R")

Number = Union[Decimal, int, float]

_NUMERIC_FIELDS: FrozenSet[SortField] = frozenset(
    {
        SortField.TOTAL_QUANTITY,
        SortField.TOTAL_SALES,
        SortField.TOTAL_COST,
        SortField.MARGIN,
        SortField.MARGIN_PERCENT,
    }
)

SORTABLE_FIELDS: Dict[RecordKind, FrozenSet[SortField]] = {
    RecordKind.ITEM: _NUMERIC_FIELDS
    | {SortField.ITEM_CODE, SortField.DESCRIPTION, SortField.VENDOR_NAME, SortField.POSTING_GROUP},
    RecordKind.CUSTOMER: _NUMERIC_FIELDS
    | {SortField.CUSTOMER_CODE, SortField.CUSTOMER_NAME, SortField.SEARCH_NAME},
    RecordKind.CATEGORY: _NUMERIC_FIELDS | {SortField.POSTING_GROUP},
    RecordKind.VENDOR: _NUMERIC_FIELDS | {SortField.VENDOR_NAME},
}

SEARCH_FIELDS: Dict[RecordKind, Tuple[str, ...]] = {
    RecordKind.ITEM: ("item_code", "description"),
    RecordKind.CUSTOMER: ("customer_code", "search_name", "customer_name"),
    RecordKind.CATEGORY: ("posting_group", "category_description"),
    RecordKind.VENDOR: ("vendor_code", "vendor_name"),
}

# (category key, display name) attribute pairs used by the chart.
CHART_KEYS: Dict[RecordKind, Tuple[str, str]] = {
    RecordKind.ITEM: ("item_code", "description"),
    RecordKind.CUSTOMER: ("customer_code", "customer_name"),
    RecordKind.CATEGORY: ("posting_group", "posting_group"),
}


# ---------------------------------------------------------------------------
# Band classifier
# ---------------------------------------------------------------------------


def classify(margin_percent: Optional[Number]) -> Band:
    """Map a margin percentage onto its colour band.

    Lower bounds are inclusive: 28 and above is ``High``, 20 up to 28 is
    ``Medium``, 15 up to 20 is ``MediumLow``, anything below 15 is ``Low``.
    Missing or non-finite values are treated as zero so the function never
    raises.

    Args:
        margin_percent (Decimal | int | float | None): Percentage to classify.

    Returns:
        Band: The band, whose ``color`` property carries the display token.
    """

    value = data_manager.to_decimal(margin_percent)
    for lower_bound, band in BAND_THRESHOLDS:
        if value >= lower_bound:
            return band
    return Band.LOW


# ---------------------------------------------------------------------------
# Sort engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SortState:
    """Active sort column and direction of a table."""

    field: SortField = SortField.MARGIN_PERCENT
    direction: SortDirection = SortDirection.DESC

    def toggle(self, field: Union[SortField, str]) -> "SortState":
        """Return the state after a click on the ``field`` column header.

        Clicking the active column flips the direction; clicking another
        column activates it in descending order.
        """

        field = coerce_sort_field(field)
        if field is self.field:
            return SortState(field=field, direction=self.direction.flipped())
        return SortState(field=field, direction=SortDirection.DESC)


DEFAULT_SORT = SortState()


def coerce_sort_field(field: Union[SortField, str]) -> SortField:
    try:
        return SortField(field)
    except ValueError as exc:
        raise InvalidSelectionError(f"Unknown sort field: {field}") from exc


def coerce_sort_direction(direction: Union[SortDirection, str]) -> SortDirection:
    try:
        return SortDirection(direction)
    except ValueError as exc:
        raise InvalidSelectionError(f"Unknown sort direction: {direction}") from exc


def _sort_key(record: Any, field: SortField) -> tuple:
    value = getattr(record, field.value, None)
    if value is None:
        return (0,)
    if isinstance(value, str):
        return (1, value.casefold())
    return (1, value)


def sort_records(
    records: Sequence[R],
    field: Union[SortField, str] = SortField.MARGIN_PERCENT,
    direction: Union[SortDirection, str] = SortDirection.DESC,
) -> List[R]:
    """Return a sorted copy of ``records``.

    The sort is stable in both directions. ``None`` values rank lowest, so
    they come first when ascending and last when descending. Text columns
    compare case-insensitively.

    Args:
        records (Sequence): Homogeneous margin records.
        field (SortField | str): Column to sort by.
        direction (SortDirection | str): ``asc`` or ``desc``.

    Returns:
        list: New list; ``records`` is left untouched.

    Raises:
        InvalidSelectionError: If ``field`` is unknown or does not apply to
            the record kind.
    """

    field = coerce_sort_field(field)
    direction = coerce_sort_direction(direction)
    if not records:
        return []

    kind = getattr(records[0], "kind", None)
    allowed = SORTABLE_FIELDS.get(kind)
    if allowed is not None and field not in allowed:
        raise InvalidSelectionError(f"Field '{field.value}' cannot sort {kind.value} records")

    return sorted(
        records,
        key=lambda record: _sort_key(record, field),
        reverse=direction is SortDirection.DESC,
    )


def apply_sort(records: Sequence[R], state: SortState) -> List[R]:
    return sort_records(records, state.field, state.direction)


# ---------------------------------------------------------------------------
# Search and category filters
# ---------------------------------------------------------------------------


def matches_search(record: Any, term: Optional[str]) -> bool:
    """Return whether ``record`` matches the free-text ``term``.

    Matching is a case-insensitive substring test against the fields
    configured for the record kind; a hit on any one of them is enough and
    absent fields are skipped. Blank terms match everything.
    """

    needle = (term or "").strip().casefold()
    if not needle:
        return True
    for name in SEARCH_FIELDS.get(getattr(record, "kind", None), ()):
        value = getattr(record, name, None)
        if value and needle in str(value).casefold():
            return True
    return False


def filter_by_search(records: Sequence[R], term: Optional[str]) -> List[R]:
    """Keep the records that satisfy :func:`matches_search`."""

    return [record for record in records if matches_search(record, term)]


def filter_by_category(
    categories: Sequence[CategoryMarginRecord],
    selected: Optional[str],
) -> List[CategoryMarginRecord]:
    """Keep the categories whose posting group equals ``selected`` exactly.

    ``None`` selects everything. No trimming or case folding is applied:
    category codes are selection keys.
    """

    if selected is None:
        return list(categories)
    return [category for category in categories if category.posting_group == selected]


def category_options(categories: Sequence[CategoryMarginRecord]) -> List[str]:
    """Unique, non-empty posting groups in lexicographic order."""

    return sorted({category.posting_group for category in categories if category.posting_group})


# ---------------------------------------------------------------------------
# Top-N truncation
# ---------------------------------------------------------------------------


def normalize_top_n(value: Any) -> int:
    """Coerce a requested Top-N into a safe value.

    Non-negative integers pass through. The unlimited sentinel, any other
    negative number, and anything that is not an integer all become
    ``TOP_N_UNLIMITED``.
    """

    if isinstance(value, bool) or not isinstance(value, int):
        if value is not None:
            log.debug("Treating non-integer Top-N %r as unlimited", value)
        return TOP_N_UNLIMITED
    if value < 0:
        return TOP_N_UNLIMITED
    return value


def truncate(records: Sequence[R], n: Any) -> List[R]:
    """Return the first ``n`` records, or all of them for the unlimited sentinel."""

    limit = normalize_top_n(n)
    if limit == TOP_N_UNLIMITED:
        return list(records)
    return list(records[:limit])


# ---------------------------------------------------------------------------
# View-mode selector
# ---------------------------------------------------------------------------


def coerce_view_mode(mode: Union[ViewMode, str]) -> ViewMode:
    try:
        return ViewMode(mode)
    except ValueError as exc:
        raise InvalidSelectionError(f"Unknown view mode: {mode}") from exc


def active_items(
    dataset: Optional[ProcessedMarginDataset],
    mode: Union[ViewMode, str] = ViewMode.STANDARD,
) -> Tuple[ItemMarginRecord, ...]:
    """Item array for ``mode``; adjusted mode falls back to the gross array."""

    if dataset is None:
        return ()
    if coerce_view_mode(mode) is ViewMode.ADJUSTED and dataset.adjusted_items is not None:
        return dataset.adjusted_items
    return dataset.top_items


def active_customers(
    dataset: Optional[ProcessedMarginDataset],
    mode: Union[ViewMode, str] = ViewMode.STANDARD,
) -> Tuple[CustomerMarginRecord, ...]:
    """Customer array for ``mode``; adjusted mode falls back to the gross array."""

    if dataset is None:
        return ()
    if coerce_view_mode(mode) is ViewMode.ADJUSTED and dataset.adjusted_customers is not None:
        return dataset.adjusted_customers
    return dataset.top_customers


def active_overall(
    dataset: Optional[ProcessedMarginDataset],
    mode: Union[ViewMode, str] = ViewMode.STANDARD,
) -> Optional[OverallSummary]:
    """Overall summary for ``mode``.

    In adjusted mode the sales, margin, and margin percent are replaced by
    their adjusted counterparts when the summary carries them. The adjusted
    margin percent is used exactly as supplied.
    """

    if dataset is None or dataset.overall is None:
        return None
    overall = dataset.overall
    if coerce_view_mode(mode) is ViewMode.ADJUSTED and overall.has_adjustment:
        return replace(
            overall,
            total_sales=overall.adjusted_sales,
            margin=overall.adjusted_margin,
            margin_percent=overall.adjusted_margin_percent,
        )
    return overall


# ---------------------------------------------------------------------------
# Presentation shaping
# ---------------------------------------------------------------------------


def format_percent(value: Optional[Number]) -> str:
    return f"{data_manager.to_decimal(value):.2f}%"


def display_customer_name(record: CustomerMarginRecord) -> str:
    return record.search_name or record.customer_name or UNKNOWN_CUSTOMER


def record_key(record: Any) -> str:
    key_field = CHART_KEYS.get(record.kind, ("vendor_code", ""))[0]
    return getattr(record, key_field, "") or ""


def record_label(record: Any) -> str:
    """Human readable name shown next to the record key."""

    if record.kind is RecordKind.CUSTOMER:
        return display_customer_name(record)
    if record.kind is RecordKind.ITEM:
        return record.description or MISSING_TEXT
    if record.kind is RecordKind.CATEGORY:
        return record.category_description or record.posting_group or MISSING_TEXT
    return getattr(record, "vendor_name", None) or MISSING_TEXT


@dataclass(frozen=True)
class TableRow:
    """One rendered table row; ``rank`` is the 1-based display position."""

    rank: int
    key: str
    label: str
    total_quantity: Decimal
    total_sales: Decimal
    total_cost: Decimal
    margin: Decimal
    margin_percent: Decimal
    band: Band

    @property
    def margin_percent_text(self) -> str:
        return format_percent(self.margin_percent)


def build_table_rows(records: Sequence[Any]) -> List[TableRow]:
    return [
        TableRow(
            rank=index,
            key=record_key(record),
            label=record_label(record),
            total_quantity=record.total_quantity,
            total_sales=record.total_sales,
            total_cost=record.total_cost,
            margin=record.margin,
            margin_percent=record.margin_percent,
            band=classify(record.margin_percent),
        )
        for index, record in enumerate(records, start=1)
    ]


@dataclass(frozen=True)
class ChartDatum:
    """One bar of the margin comparison chart."""

    key: str
    name: str
    total_sales: Decimal
    total_cost: Decimal
    margin: Decimal
    margin_percent: Decimal
    value: Decimal
    band: Band

    @property
    def color(self) -> str:
        return self.band.color


def project_chart(records: Sequence[Any], kind: Union[RecordKind, str, None] = None) -> List[ChartDatum]:
    """Project the first ``CHART_LIMIT`` records into chart data.

    ``kind`` selects the key/name attributes; when omitted it is read from
    the records. The caller decides ordering and filtering beforehand.
    """

    bounded = list(records[:CHART_LIMIT])
    if not bounded:
        return []
    kind = RecordKind(kind) if kind is not None else bounded[0].kind
    key_field, name_field = CHART_KEYS[kind]

    data = []
    for record in bounded:
        data.append(
            ChartDatum(
                key=getattr(record, key_field, None) or MISSING_TEXT,
                name=getattr(record, name_field, None) or MISSING_TEXT,
                total_sales=record.total_sales,
                total_cost=record.total_cost,
                margin=record.margin,
                margin_percent=record.margin_percent,
                value=record.margin_percent,
                band=classify(record.margin_percent),
            )
        )
    return data


@dataclass(frozen=True)
class SummaryCard:
    """Data behind the summary tab."""

    overall: Optional[OverallSummary]
    band: Optional[Band]
    is_adjusted: bool
    preview: Tuple[ItemMarginRecord, ...]

    @property
    def preview_rows(self) -> List[TableRow]:
        return build_table_rows(self.preview)


def build_summary(
    dataset: Optional[ProcessedMarginDataset],
    mode: Union[ViewMode, str] = ViewMode.STANDARD,
) -> SummaryCard:
    """Mode-aware overall figures plus a fixed preview of the first items.

    Search, category, and Top-N settings never apply here.
    """

    mode = coerce_view_mode(mode)
    overall = active_overall(dataset, mode)
    return SummaryCard(
        overall=overall,
        band=classify(overall.margin_percent) if overall is not None else None,
        is_adjusted=(
            mode is ViewMode.ADJUSTED
            and dataset is not None
            and dataset.overall is not None
            and dataset.overall.has_adjustment
        ),
        preview=tuple(active_items(dataset, mode)[:SUMMARY_PREVIEW_LIMIT]),
    )


# ---------------------------------------------------------------------------
# Period selection, export, and insights
# ---------------------------------------------------------------------------


def validate_period(year: Any, month: Any) -> Tuple[int, int]:
    """Check a (year, month) selection and return it as integers.

    Raises:
        InvalidSelectionError: For a month outside 1..12, a year outside
            ``MIN_YEAR``..``MAX_YEAR``, or non-integer input.
    """

    if isinstance(year, bool) or isinstance(month, bool):
        raise InvalidSelectionError(f"Invalid period: {year}-{month}")
    try:
        year_value = int(year)
        month_value = int(month)
    except (TypeError, ValueError) as exc:
        raise InvalidSelectionError(f"Invalid period: {year}-{month}") from exc
    if not 1 <= month_value <= 12:
        raise InvalidSelectionError(f"Month must be between 1 and 12, got {month_value}")
    if not MIN_YEAR <= year_value <= MAX_YEAR:
        raise InvalidSelectionError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}, got {year_value}")
    return year_value, month_value


def available_years(today: Optional[date] = None) -> List[int]:
    """Years offered by the year selector: five back through one ahead."""

    current = (today or date.today()).year
    return list(range(current - 5, current + 2))


def month_name(month: int) -> str:
    _, month = validate_period(MIN_YEAR, month)
    return MONTH_NAMES[month - 1]


def export_filename_hint(year: int, month: int) -> str:
    year, month = validate_period(year, month)
    return f"margin-analysis-{month_name(month)}-{year}"


def build_export_bundle(
    dataset: Optional[ProcessedMarginDataset],
    year: int,
    month: int,
) -> ExportBundle:
    """Bundle the gross arrays of ``dataset`` for the spreadsheet sink.

    Adjusted arrays and the current filtered view are deliberately not used:
    exports always contain the full gross record sets.
    """

    dataset = dataset or ProcessedMarginDataset.empty()
    return ExportBundle(
        top_items=dataset.top_items,
        top_customers=dataset.top_customers,
        categories=dataset.categories,
        filename_hint=export_filename_hint(year, month),
    )


@dataclass(frozen=True)
class InsightsRequest:
    """Input handed to the external margin insights analysis."""

    dataset: ProcessedMarginDataset
    year: int
    month: int
    view_mode: ViewMode

    def to_payload(self) -> Dict[str, Any]:
        return {
            "marginData": data_manager.dataset_to_payload(self.dataset),
            "year": self.year,
            "month": self.month,
            "viewMode": self.view_mode.value,
        }


def build_insights_request(
    dataset: Optional[ProcessedMarginDataset],
    year: int,
    month: int,
    mode: Union[ViewMode, str] = ViewMode.STANDARD,
) -> InsightsRequest:
    year, month = validate_period(year, month)
    return InsightsRequest(
        dataset=dataset or ProcessedMarginDataset.empty(),
        year=year,
        month=month,
        view_mode=coerce_view_mode(mode),
    )
