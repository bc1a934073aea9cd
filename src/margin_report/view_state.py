"""Stateful orchestration of the margin report views.

Two collaborators live here. :class:`DatasetLoader` models the only
asynchronous boundary of the report, fetching a period's dataset, with an
in-flight flag and last-request-wins semantics. :class:`MarginViewController`
owns the user's tab, filter, Top-N, view-mode, and sort selections as one
immutable :class:`ViewState` snapshot and composes the data each tab shows
from the pure functions in :mod:`core_logic`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional, Protocol, Tuple, Union

from . import core_logic, log
from .constants import (
    DEFAULT_TOP_N,
    TABLE_TABS,
    RecordKind,
    ReportTab,
    SortDirection,
    SortField,
    ViewMode,
)
from .data_manager import ConfigSettings, ExportBundle, ProcessedMarginDataset


class MarginDataSource(Protocol):
    """Anything able to produce the dataset of a period."""

    def fetch(self, year: int, month: int) -> ProcessedMarginDataset:
        ...


class DatasetLoader:
    """Track the current dataset and the request that may replace it.

    Every :meth:`request` returns a token. Only a response carrying the
    latest token is applied; anything older is discarded on arrival. While a
    request is in flight the previously loaded dataset stays current.
    """

    def __init__(self) -> None:
        self._dataset: Optional[ProcessedMarginDataset] = None
        self._period: Optional[Tuple[int, int]] = None
        self._pending_period: Optional[Tuple[int, int]] = None
        self._latest_token = 0
        self._in_flight = False
        self.error: Optional[Exception] = None

    @property
    def dataset(self) -> Optional[ProcessedMarginDataset]:
        return self._dataset

    @property
    def period(self) -> Optional[Tuple[int, int]]:
        """(year, month) of the dataset currently shown."""
        return self._period

    @property
    def requested_period(self) -> Optional[Tuple[int, int]]:
        return self._pending_period or self._period

    @property
    def is_loading(self) -> bool:
        return self._in_flight

    def request(self, year: int, month: int) -> int:
        """Mark a fetch for ``(year, month)`` as in flight and return its token."""

        year, month = core_logic.validate_period(year, month)
        self._pending_period = (year, month)
        self._latest_token += 1
        self._in_flight = True
        self.error = None
        log.debug("Requested margin dataset for %04d-%02d (token %d)", year, month, self._latest_token)
        return self._latest_token

    def receive(self, token: int, dataset: Optional[ProcessedMarginDataset]) -> bool:
        """Apply a response; returns ``False`` when the response is stale."""

        if token != self._latest_token or self._pending_period is None:
            log.warning("Discarding stale margin dataset response (token %d, latest %d)", token, self._latest_token)
            return False
        self._dataset = dataset if dataset is not None else ProcessedMarginDataset.empty()
        self._period = self._pending_period
        self._pending_period = None
        self._in_flight = False
        log.info(
            "Loaded margin dataset for %04d-%02d (%d items, %d customers, %d categories)",
            self._period[0],
            self._period[1],
            len(self._dataset.top_items),
            len(self._dataset.top_customers),
            len(self._dataset.categories),
        )
        return True

    def fail(self, token: int, error: Exception) -> bool:
        """Record a failed fetch; the previous dataset is kept."""

        if token != self._latest_token or self._pending_period is None:
            log.warning("Ignoring failure of stale margin dataset request (token %d)", token)
            return False
        self.error = error
        self._pending_period = None
        self._in_flight = False
        return True

    def load(self, source: MarginDataSource, year: int, month: int) -> ProcessedMarginDataset:
        """Run a synchronous request/response round trip against ``source``.

        Raises:
            InvalidSelectionError: If the period is invalid.
            DatasetUnavailableError: If ``source`` cannot produce the dataset.
                Report errors raised by ``source`` itself propagate unchanged.
        """

        token = self.request(year, month)
        year, month = self._pending_period
        try:
            dataset = source.fetch(year, month)
        except core_logic.MarginReportError as exc:
            self.fail(token, exc)
            raise
        except Exception as exc:
            self.fail(token, exc)
            raise core_logic.DatasetUnavailableError(
                f"Margin data for {year:04d}-{month:02d} is unavailable: {exc}"
            ) from exc
        self.receive(token, dataset)
        return self._dataset

    def refresh(self, source: MarginDataSource) -> ProcessedMarginDataset:
        """Fetch the current selection again."""

        period = self.requested_period
        if period is None:
            raise core_logic.InvalidSelectionError("No period selected to refresh")
        return self.load(source, *period)


@dataclass(frozen=True)
class ViewState:
    """Snapshot of every user selection that shapes the report."""

    tab: ReportTab = ReportTab.SUMMARY
    search_term: str = ""
    category: Optional[str] = None
    top_n: int = DEFAULT_TOP_N
    view_mode: ViewMode = ViewMode.STANDARD
    last_table_tab: ReportTab = ReportTab.ITEMS
    item_sort: core_logic.SortState = field(default_factory=core_logic.SortState)
    customer_sort: core_logic.SortState = field(default_factory=core_logic.SortState)
    category_sort: core_logic.SortState = field(default_factory=core_logic.SortState)


@dataclass(frozen=True)
class TabView:
    """Everything a tab needs to render."""

    tab: ReportTab
    is_loading: bool = False
    records: Tuple[Any, ...] = ()
    rows: Tuple[core_logic.TableRow, ...] = ()
    chart: Tuple[core_logic.ChartDatum, ...] = ()
    summary: Optional[core_logic.SummaryCard] = None
    insights: Optional[core_logic.InsightsRequest] = None
    category_options: Tuple[str, ...] = ()
    empty_message: Optional[str] = None


_SORT_ATTRIBUTES = {
    RecordKind.ITEM: "item_sort",
    RecordKind.CUSTOMER: "customer_sort",
    RecordKind.CATEGORY: "category_sort",
}

_TAB_KINDS = {
    ReportTab.ITEMS: RecordKind.ITEM,
    ReportTab.CUSTOMERS: RecordKind.CUSTOMER,
    ReportTab.CATEGORIES: RecordKind.CATEGORY,
}


def coerce_tab(tab: Union[ReportTab, str]) -> ReportTab:
    try:
        return ReportTab(tab)
    except ValueError as exc:
        raise core_logic.InvalidSelectionError(f"Unknown report tab: {tab}") from exc


class MarginViewController:
    """Single owner of the report's view state.

    Transitions replace the :class:`ViewState` snapshot; they never mutate
    it or the dataset. Leaving the categories tab clears the category
    selection so the filter cannot leak into other tabs.
    """

    def __init__(
        self,
        loader: Optional[DatasetLoader] = None,
        *,
        top_n: Any = DEFAULT_TOP_N,
        view_mode: Union[ViewMode, str] = ViewMode.STANDARD,
    ) -> None:
        self.loader = loader if loader is not None else DatasetLoader()
        self._state = ViewState(
            top_n=core_logic.normalize_top_n(top_n),
            view_mode=core_logic.coerce_view_mode(view_mode),
        )

    @classmethod
    def from_settings(cls, settings: ConfigSettings, loader: Optional[DatasetLoader] = None) -> "MarginViewController":
        return cls(loader, top_n=settings.default_top_n, view_mode=settings.default_view_mode)

    @property
    def state(self) -> ViewState:
        return self._state

    @property
    def dataset(self) -> Optional[ProcessedMarginDataset]:
        return self.loader.dataset

    # -- transitions ---------------------------------------------------------

    def select_tab(self, tab: Union[ReportTab, str]) -> ViewState:
        tab = coerce_tab(tab)
        category = self._state.category if tab is ReportTab.CATEGORIES else None
        last_table_tab = tab if tab in TABLE_TABS else self._state.last_table_tab
        self._state = replace(self._state, tab=tab, category=category, last_table_tab=last_table_tab)
        log.debug("Active tab changed to '%s'", tab.value)
        return self._state

    def set_search(self, term: Optional[str]) -> ViewState:
        self._state = replace(self._state, search_term=term or "")
        return self._state

    def select_category(self, category: Optional[str]) -> ViewState:
        """Set the category filter; only honoured on the categories tab."""

        if self._state.tab is not ReportTab.CATEGORIES:
            log.warning("Ignoring category selection '%s' outside the categories tab", category)
            return self._state
        self._state = replace(self._state, category=category or None)
        return self._state

    def clear_category(self) -> ViewState:
        self._state = replace(self._state, category=None)
        return self._state

    def set_top_n(self, top_n: Any) -> ViewState:
        self._state = replace(self._state, top_n=core_logic.normalize_top_n(top_n))
        return self._state

    def set_view_mode(self, mode: Union[ViewMode, str]) -> ViewState:
        self._state = replace(self._state, view_mode=core_logic.coerce_view_mode(mode))
        return self._state

    def toggle_view_mode(self) -> ViewState:
        if self._state.view_mode is ViewMode.STANDARD:
            return self.set_view_mode(ViewMode.ADJUSTED)
        return self.set_view_mode(ViewMode.STANDARD)

    def sort_by(self, kind: Union[RecordKind, str], sort_field: Union[SortField, str]) -> ViewState:
        """Apply a header click on the ``kind`` table."""

        kind = RecordKind(kind)
        attribute = _SORT_ATTRIBUTES.get(kind)
        if attribute is None:
            raise core_logic.InvalidSelectionError(f"No sortable table for {kind.value} records")
        sort_field = core_logic.coerce_sort_field(sort_field)
        if sort_field not in core_logic.SORTABLE_FIELDS[kind]:
            raise core_logic.InvalidSelectionError(
                f"Field '{sort_field.value}' cannot sort {kind.value} records"
            )
        current = getattr(self._state, attribute)
        self._state = replace(self._state, **{attribute: current.toggle(sort_field)})
        return self._state

    def set_sort_direction(self, kind: Union[RecordKind, str], direction: Union[SortDirection, str]) -> ViewState:
        """Keep the active column of the ``kind`` table and force ``direction``."""

        attribute = _SORT_ATTRIBUTES.get(RecordKind(kind))
        if attribute is None:
            raise core_logic.InvalidSelectionError(f"No sortable table for {RecordKind(kind).value} records")
        current = getattr(self._state, attribute)
        sort_state = core_logic.SortState(current.field, core_logic.coerce_sort_direction(direction))
        self._state = replace(self._state, **{attribute: sort_state})
        return self._state

    def select_period(self, source: MarginDataSource, year: int, month: int) -> ProcessedMarginDataset:
        return self.loader.load(source, year, month)

    # -- pipelines -----------------------------------------------------------

    def item_records(self) -> list:
        state = self._state
        records = core_logic.active_items(self.dataset, state.view_mode)
        records = core_logic.filter_by_search(records, state.search_term)
        records = core_logic.apply_sort(records, state.item_sort)
        return core_logic.truncate(records, state.top_n)

    def customer_records(self) -> list:
        state = self._state
        records = core_logic.active_customers(self.dataset, state.view_mode)
        records = core_logic.filter_by_search(records, state.search_term)
        records = core_logic.apply_sort(records, state.customer_sort)
        return core_logic.truncate(records, state.top_n)

    def category_records(self) -> list:
        state = self._state
        categories = self.dataset.categories if self.dataset is not None else ()
        records = core_logic.filter_by_category(categories, state.category)
        return core_logic.apply_sort(records, state.category_sort)

    def records_for(self, tab: Union[ReportTab, str]) -> list:
        kind = _TAB_KINDS[coerce_tab(tab)]
        if kind is RecordKind.ITEM:
            return self.item_records()
        if kind is RecordKind.CUSTOMER:
            return self.customer_records()
        return self.category_records()

    def category_options(self) -> Tuple[str, ...]:
        categories = self.dataset.categories if self.dataset is not None else ()
        return tuple(core_logic.category_options(categories))

    # -- composition ---------------------------------------------------------

    def compose(self) -> TabView:
        """Build the view of the active tab from the current state and dataset."""

        state = self._state
        tab = state.tab
        if self.dataset is None and self.loader.is_loading:
            return TabView(tab=tab, is_loading=True)

        is_loading = self.loader.is_loading
        options = self.category_options()

        if tab is ReportTab.SUMMARY:
            summary = core_logic.build_summary(self.dataset, state.view_mode)
            return TabView(
                tab=tab,
                is_loading=is_loading,
                records=summary.preview,
                rows=tuple(summary.preview_rows),
                summary=summary,
                category_options=options,
                empty_message=None if summary.overall is not None else "No margin data for the selected period.",
            )

        if tab in TABLE_TABS:
            records = self.records_for(tab)
            return TabView(
                tab=tab,
                is_loading=is_loading,
                records=tuple(records),
                rows=tuple(core_logic.build_table_rows(records)),
                category_options=options,
                empty_message=None if records else self._empty_message(tab),
            )

        if tab is ReportTab.CHART:
            records = self.records_for(state.last_table_tab)
            chart = core_logic.project_chart(records, _TAB_KINDS[state.last_table_tab])
            return TabView(
                tab=tab,
                is_loading=is_loading,
                records=tuple(records[: len(chart)]),
                chart=tuple(chart),
                category_options=options,
                empty_message=None if chart else "No data to chart.",
            )

        insights = None
        period = self.loader.period
        if period is not None:
            insights = core_logic.build_insights_request(self.dataset, period[0], period[1], state.view_mode)
        return TabView(
            tab=tab,
            is_loading=is_loading,
            insights=insights,
            category_options=options,
            empty_message=None if insights is not None else "No margin data for the selected period.",
        )

    def _empty_message(self, tab: ReportTab) -> str:
        noun = tab.value
        if tab is ReportTab.CATEGORIES:
            if self._state.category is not None:
                return f"No matching {noun} found."
        elif self._state.search_term.strip():
            return f"No matching {noun} found."
        return f"No {noun} found for the selected period."

    def export_bundle(self) -> ExportBundle:
        """Gross arrays of the loaded dataset for the spreadsheet sink."""

        period = self.loader.period
        if period is None:
            raise core_logic.InvalidSelectionError("No period loaded to export")
        return core_logic.build_export_bundle(self.dataset, period[0], period[1])
