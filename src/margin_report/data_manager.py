"""Data access layer for the margin report.

This module owns every contact the report has with the outside world.
Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. The margin record model: typed, immutable views of the aggregated payload
   produced by the external aggregation service, plus the deserializers that
   normalise raw payload values into those types.
3. Sources and sinks: reading period payloads from JSON files and writing the
   export bundle to an ``openpyxl`` workbook.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, ClassVar, Iterable, Mapping, Optional, Sequence, Tuple, Union

import openpyxl
from openpyxl.styles import Font

from . import log
from .constants import DEFAULT_TOP_N, RecordKind, ViewMode


CONFIG_FILE_NAME = "config.ini"
DATASET_FILE_TEMPLATE = "margin_{year}_{month:02d}.json"

EXPORT_SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    "Top Items": [
        "Item Code",
        "Description",
        "Posting Group",
        "Vendor Code",
        "Vendor Name",
        "Quantity",
        "Sales",
        "Cost",
        "Margin",
        "Margin %",
    ],
    "Top Customers": [
        "Customer Code",
        "Customer Name",
        "Search Name",
        "Quantity",
        "Sales",
        "Cost",
        "Margin",
        "Margin %",
    ],
    "Categories": [
        "Posting Group",
        "Description",
        "Quantity",
        "Sales",
        "Cost",
        "Margin",
        "Margin %",
    ],
}

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_directory: Path
    export_directory: Path
    default_top_n: int = DEFAULT_TOP_N
    default_view_mode: ViewMode = ViewMode.STANDARD


@dataclass(frozen=True)
class ItemMarginRecord:
    """Aggregated sales, cost, and margin figures for one item in a period."""

    kind: ClassVar[RecordKind] = RecordKind.ITEM

    item_code: str
    description: Optional[str]
    total_quantity: Decimal
    total_sales: Decimal
    total_cost: Decimal
    margin: Decimal
    margin_percent: Decimal
    posting_group: Optional[str] = None
    vendor_code: Optional[str] = None
    vendor_name: Optional[str] = None


@dataclass(frozen=True)
class CustomerMarginRecord:
    """Aggregated sales, cost, and margin figures for one customer."""

    kind: ClassVar[RecordKind] = RecordKind.CUSTOMER

    customer_code: str
    customer_name: Optional[str]
    total_quantity: Decimal
    total_sales: Decimal
    total_cost: Decimal
    margin: Decimal
    margin_percent: Decimal
    search_name: Optional[str] = None


@dataclass(frozen=True)
class CategoryMarginRecord:
    """Aggregated figures for one posting group (category code)."""

    kind: ClassVar[RecordKind] = RecordKind.CATEGORY

    posting_group: str
    total_quantity: Decimal
    total_sales: Decimal
    total_cost: Decimal
    margin: Decimal
    margin_percent: Decimal
    category_description: Optional[str] = None


@dataclass(frozen=True)
class VendorMarginRecord:
    """Aggregated figures for one vendor; forwarded to insights only."""

    kind: ClassVar[RecordKind] = RecordKind.VENDOR

    vendor_code: str
    vendor_name: Optional[str]
    total_quantity: Decimal
    total_sales: Decimal
    total_cost: Decimal
    margin: Decimal
    margin_percent: Decimal


MarginRecord = Union[ItemMarginRecord, CustomerMarginRecord, CategoryMarginRecord]


@dataclass(frozen=True)
class OverallSummary:
    """Period totals with optional credit memo adjustments.

    The three ``adjusted_*`` values travel together: either all of them are
    set or none is.
    """

    total_sales: Decimal
    total_cost: Decimal
    margin: Decimal
    margin_percent: Decimal
    total_credit_memos: Optional[Decimal] = None
    credit_memo_amount: Optional[Decimal] = None
    credit_memo_quantity: Optional[Decimal] = None
    adjusted_sales: Optional[Decimal] = None
    adjusted_margin: Optional[Decimal] = None
    adjusted_margin_percent: Optional[Decimal] = None

    @property
    def has_adjustment(self) -> bool:
        return (
            self.adjusted_sales is not None
            and self.adjusted_margin is not None
            and self.adjusted_margin_percent is not None
        )


@dataclass(frozen=True)
class ProcessedMarginDataset:
    """Full payload for one (year, month) selection.

    ``adjusted_items`` and ``adjusted_customers`` are complete alternate
    record sets, ``None`` when the aggregation service computed none for the
    period. Categories have no adjusted variant.
    """

    overall: Optional[OverallSummary]
    top_items: Tuple[ItemMarginRecord, ...]
    top_customers: Tuple[CustomerMarginRecord, ...]
    categories: Tuple[CategoryMarginRecord, ...]
    adjusted_items: Optional[Tuple[ItemMarginRecord, ...]] = None
    adjusted_customers: Optional[Tuple[CustomerMarginRecord, ...]] = None
    low_items: Tuple[ItemMarginRecord, ...] = ()
    low_customers: Tuple[CustomerMarginRecord, ...] = ()
    vendors: Tuple[VendorMarginRecord, ...] = ()

    @classmethod
    def empty(cls) -> "ProcessedMarginDataset":
        return cls(overall=None, top_items=(), top_customers=(), categories=())


@dataclass(frozen=True)
class ExportBundle:
    """Named record arrays handed to the spreadsheet sink."""

    top_items: Tuple[ItemMarginRecord, ...]
    top_customers: Tuple[CustomerMarginRecord, ...]
    categories: Tuple[CategoryMarginRecord, ...]
    filename_hint: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the report.

    An explicit path is returned as-is. Otherwise the function walks up from
    the current working directory and returns the first ``CONFIG_FILE_NAME``
    it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of the
            upward search.

    Returns:
        Path: The explicit or discovered configuration path.

    Raises:
        FileNotFoundError: If no configuration file exists in the working
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
    """Load ``config.ini`` and return a populated ``ConfigParser``.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    ``[System]`` must define ``DataDirectory`` and ``ExportDirectory``;
    relative values are anchored at ``base_path`` (or the working directory).
    The ``[Defaults]`` section is optional. A malformed ``TopN`` falls back
    to "show all", matching how the view pipeline treats bad Top-N values.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative directories.

    Returns:
        ConfigSettings: Resolved, immutable settings.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``ViewMode`` names an unknown mode.
    """

    try:
        data_dir_raw = parser.get("System", "DataDirectory")
        export_dir_raw = parser.get("System", "ExportDirectory")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    if base_path is None:
        base_path = Path.cwd()

    top_n_raw = parser.get("Defaults", "TopN", fallback=str(DEFAULT_TOP_N))
    try:
        default_top_n = int(top_n_raw)
    except ValueError:
        log.warning("Ignoring malformed TopN setting '%s'", top_n_raw)
        default_top_n = -1

    mode_raw = parser.get("Defaults", "ViewMode", fallback=ViewMode.STANDARD.value)
    default_view_mode = ViewMode(mode_raw.strip().lower())

    return ConfigSettings(
        data_directory=_resolve_directory(data_dir_raw, base_path),
        export_directory=_resolve_directory(export_dir_raw, base_path),
        default_top_n=default_top_n,
        default_view_mode=default_view_mode,
    )


def _resolve_directory(raw: str, base_path: Path) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = base_path / path
    return path.resolve()


def safe_margin_percent(margin: Decimal, total_sales: Decimal) -> Decimal:
    """Return ``margin / total_sales * 100``, or zero when there are no sales."""

    if total_sales <= 0:
        return _ZERO
    return margin / total_sales * _HUNDRED


def to_decimal(raw: Any, default: Optional[Decimal] = _ZERO) -> Optional[Decimal]:
    """Normalise a raw payload number; unusable values yield ``default``."""

    if raw is None or isinstance(raw, bool):
        return default
    if isinstance(raw, Decimal):
        value = raw
    else:
        try:
            value = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            return default
    if not value.is_finite():
        return default
    return value


def _to_text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text else None


def _figures(raw: Mapping[str, Any]) -> dict[str, Decimal]:
    """Extract the shared quantity and money columns from a raw record.

    ``margin`` and ``margin_percent`` are passed through when present and
    derived from sales and cost only when the payload omits them.
    """

    total_sales = to_decimal(raw.get("total_sales"))
    total_cost = to_decimal(raw.get("total_cost"))
    margin = to_decimal(raw.get("margin"), default=None)
    if margin is None:
        margin = total_sales - total_cost
    margin_percent = to_decimal(raw.get("margin_percent"), default=None)
    if margin_percent is None:
        margin_percent = safe_margin_percent(margin, total_sales)
    return {
        "total_quantity": to_decimal(raw.get("total_quantity")),
        "total_sales": total_sales,
        "total_cost": total_cost,
        "margin": margin,
        "margin_percent": margin_percent,
    }


def deserialize_item(raw: Mapping[str, Any]) -> ItemMarginRecord:
    """Convert a raw item entry into an :class:`ItemMarginRecord`."""

    return ItemMarginRecord(
        item_code=str(raw.get("item_code") or ""),
        description=_to_text(raw.get("description")),
        posting_group=_to_text(raw.get("posting_group")),
        vendor_code=_to_text(raw.get("vendor_code")),
        vendor_name=_to_text(raw.get("vendor_name")),
        **_figures(raw),
    )


def deserialize_customer(raw: Mapping[str, Any]) -> CustomerMarginRecord:
    """Convert a raw customer entry into a :class:`CustomerMarginRecord`."""

    return CustomerMarginRecord(
        customer_code=str(raw.get("customer_code") or ""),
        customer_name=_to_text(raw.get("customer_name")),
        search_name=_to_text(raw.get("search_name")),
        **_figures(raw),
    )


def deserialize_category(raw: Mapping[str, Any]) -> CategoryMarginRecord:
    """Convert a raw category entry into a :class:`CategoryMarginRecord`."""

    return CategoryMarginRecord(
        posting_group=str(raw.get("posting_group") or ""),
        category_description=_to_text(raw.get("category_description")),
        **_figures(raw),
    )


def deserialize_vendor(raw: Mapping[str, Any]) -> VendorMarginRecord:
    return VendorMarginRecord(
        vendor_code=str(raw.get("vendor_code") or ""),
        vendor_name=_to_text(raw.get("vendor_name")),
        **_figures(raw),
    )


def deserialize_overall(raw: Optional[Mapping[str, Any]]) -> Optional[OverallSummary]:
    """Convert the raw overall entry into an :class:`OverallSummary`.

    Partial adjustment data is dropped entirely: unless all three
    ``adjusted_*`` values are usable, none of them is kept.

    Args:
        raw (Mapping | None): Overall entry from the payload.

    Returns:
        OverallSummary | None: Typed summary, or ``None`` for a missing entry.
    """

    if not isinstance(raw, Mapping):
        return None

    figures = _figures(raw)
    figures.pop("total_quantity")

    adjusted = {
        name: to_decimal(raw.get(name), default=None)
        for name in ("adjusted_sales", "adjusted_margin", "adjusted_margin_percent")
    }
    if any(value is None for value in adjusted.values()):
        if any(value is not None for value in adjusted.values()):
            log.debug("Discarding partial credit memo adjustment on overall summary")
        adjusted = dict.fromkeys(adjusted)

    return OverallSummary(
        total_credit_memos=to_decimal(raw.get("total_credit_memos"), default=None),
        credit_memo_amount=to_decimal(raw.get("credit_memo_amount"), default=None),
        credit_memo_quantity=to_decimal(raw.get("credit_memo_quantity"), default=None),
        **figures,
        **adjusted,
    )


def _deserialize_records(raw_records: Any, converter) -> tuple:
    """Apply ``converter`` to every mapping in ``raw_records``.

    Anything that is not a list yields an empty tuple; non-mapping entries
    are skipped.
    """

    if not isinstance(raw_records, (list, tuple)):
        return ()
    return tuple(converter(entry) for entry in raw_records if isinstance(entry, Mapping))


def _deserialize_optional_records(raw_records: Any, converter) -> Optional[tuple]:
    if raw_records is None:
        return None
    return _deserialize_records(raw_records, converter)


_ANALYSIS_KEYS = {
    "top_items": "topItems",
    "low_items": "lowItems",
    "top_customers": "topCustomers",
    "low_customers": "lowCustomers",
    "categories": "categories",
    "vendors": "vendors",
}


def _rows_to_mapping(rows: Iterable[Any]) -> dict[str, Any]:
    """Fold the aggregation service's analysis rows into the processed shape."""

    mapping: dict[str, Any] = {}
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        analysis_type = row.get("analysis_type")
        data = row.get("data")
        if analysis_type == "overall":
            mapping["overall"] = data[0] if isinstance(data, list) and data else None
        elif analysis_type in _ANALYSIS_KEYS:
            mapping[_ANALYSIS_KEYS[analysis_type]] = data if isinstance(data, list) else []
        else:
            log.debug("Ignoring unknown analysis type '%s'", analysis_type)
    return mapping


def parse_margin_payload(payload: Any) -> ProcessedMarginDataset:
    """Build a :class:`ProcessedMarginDataset` from an aggregation payload.

    Two shapes are accepted: the raw list of ``{"analysis_type", "data"}``
    rows returned by the aggregation service, and the processed mapping keyed
    by ``topItems``, ``topCustomers``, ``categories``, ``overall`` and the
    optional adjusted, low-performer, and vendor arrays.

    Args:
        payload (Any): Decoded payload, or ``None``.

    Returns:
        ProcessedMarginDataset: Immutable dataset. ``None`` or an unusable
            payload yields :meth:`ProcessedMarginDataset.empty`.
    """

    if payload is None:
        return ProcessedMarginDataset.empty()
    if isinstance(payload, (list, tuple)):
        payload = _rows_to_mapping(payload)
    if not isinstance(payload, Mapping):
        log.warning("Unsupported margin payload type: %s", type(payload).__name__)
        return ProcessedMarginDataset.empty()

    dataset = ProcessedMarginDataset(
        overall=deserialize_overall(payload.get("overall")),
        top_items=_deserialize_records(payload.get("topItems"), deserialize_item),
        top_customers=_deserialize_records(payload.get("topCustomers"), deserialize_customer),
        categories=_deserialize_records(payload.get("categories"), deserialize_category),
        adjusted_items=_deserialize_optional_records(payload.get("adjustedItems"), deserialize_item),
        adjusted_customers=_deserialize_optional_records(payload.get("adjustedCustomers"), deserialize_customer),
        low_items=_deserialize_records(payload.get("lowItems"), deserialize_item),
        low_customers=_deserialize_records(payload.get("lowCustomers"), deserialize_customer),
        vendors=_deserialize_records(payload.get("vendors"), deserialize_vendor),
    )
    log.debug(
        "Parsed margin payload: %d items, %d customers, %d categories",
        len(dataset.top_items),
        len(dataset.top_customers),
        len(dataset.categories),
    )
    return dataset


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


def serialize_record(record: Any) -> dict[str, Any]:
    """Convert a record dataclass into a JSON-ready dictionary."""

    return {f.name: _plain(getattr(record, f.name)) for f in fields(record)}


def dataset_to_payload(dataset: ProcessedMarginDataset) -> dict[str, Any]:
    """Render a dataset in the processed camelCase shape with float numbers."""

    def _records(records: Optional[Sequence[Any]]) -> Optional[list[dict[str, Any]]]:
        if records is None:
            return None
        return [serialize_record(record) for record in records]

    payload: dict[str, Any] = {
        "overall": serialize_record(dataset.overall) if dataset.overall is not None else None,
        "topItems": _records(dataset.top_items),
        "topCustomers": _records(dataset.top_customers),
        "categories": _records(dataset.categories),
        "lowItems": _records(dataset.low_items),
        "lowCustomers": _records(dataset.low_customers),
        "vendors": _records(dataset.vendors),
    }
    if dataset.adjusted_items is not None:
        payload["adjustedItems"] = _records(dataset.adjusted_items)
    if dataset.adjusted_customers is not None:
        payload["adjustedCustomers"] = _records(dataset.adjusted_customers)
    return payload


def dataset_path_for(directory: Path, year: int, month: int) -> Path:
    """Return the JSON payload location for a period inside ``directory``."""

    return Path(directory) / DATASET_FILE_TEMPLATE.format(year=year, month=month)


def load_dataset_file(path: Path) -> ProcessedMarginDataset:
    """Read and parse a JSON payload file.

    Numbers are decoded straight into :class:`~decimal.Decimal` so no float
    rounding creeps into the figures.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the file is not valid JSON.
    """

    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Margin dataset not found: {path}")

    try:
        payload = json.loads(path.read_text(encoding="utf-8"), parse_float=Decimal)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Malformed margin dataset '{path}': {exc}") from exc
    return parse_margin_payload(payload)


@dataclass(frozen=True)
class JsonDatasetSource:
    """File-backed stand-in for the aggregation service.

    Each period lives in ``<directory>/margin_<year>_<MM>.json``.
    """

    directory: Path

    def fetch(self, year: int, month: int) -> ProcessedMarginDataset:
        return load_dataset_file(dataset_path_for(self.directory, year, month))


def serialize_item_row(record: ItemMarginRecord) -> list[object]:
    """Arrange an item record in the ``Top Items`` sheet column order."""

    return [
        record.item_code,
        record.description,
        record.posting_group,
        record.vendor_code,
        record.vendor_name,
        record.total_quantity,
        record.total_sales,
        record.total_cost,
        record.margin,
        record.margin_percent,
    ]


def serialize_customer_row(record: CustomerMarginRecord) -> list[object]:
    """Arrange a customer record in the ``Top Customers`` sheet column order."""

    return [
        record.customer_code,
        record.customer_name,
        record.search_name,
        record.total_quantity,
        record.total_sales,
        record.total_cost,
        record.margin,
        record.margin_percent,
    ]


def serialize_category_row(record: CategoryMarginRecord) -> list[object]:
    """Arrange a category record in the ``Categories`` sheet column order."""

    return [
        record.posting_group,
        record.category_description,
        record.total_quantity,
        record.total_sales,
        record.total_cost,
        record.margin,
        record.margin_percent,
    ]


def write_export_workbook(bundle: ExportBundle, directory: Path, *, overwrite: bool = False) -> Path:
    """Persist an :class:`ExportBundle` as ``<filename_hint>.xlsx``.

    One sheet per named array, a bold header row, and one row per record in
    the order received. Decimal values are written as-is so Excel keeps their
    precision.

    Args:
        bundle (ExportBundle): Arrays and filename hint to write.
        directory (Path): Destination folder, created on demand.
        overwrite (bool): Replace an existing file instead of failing.

    Returns:
        Path: Location of the written workbook.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = (Path(directory).expanduser() / f"{bundle.filename_hint}.xlsx").resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing export: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    sheet_rows = {
        "Top Items": [serialize_item_row(record) for record in bundle.top_items],
        "Top Customers": [serialize_customer_row(record) for record in bundle.top_customers],
        "Categories": [serialize_category_row(record) for record in bundle.categories],
    }

    for sheet_name, columns in EXPORT_SHEET_COLUMNS.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font
        for row in sheet_rows[sheet_name]:
            worksheet.append(row)

    workbook.save(destination)
    log.info("Exported margin workbook to '%s'", destination)
    return destination
