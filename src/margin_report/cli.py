"""Command-line entry points for the margin report.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into controller transitions, and printing the tab
views as plain text. The view pipeline itself lives in :mod:`core_logic` and
:mod:`view_state`, so any other front-end can reuse it unchanged.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import TOP_N_CHOICES, RecordKind, ReportTab, SortDirection, SortField, ViewMode
from .view_state import MarginDataSource, MarginViewController, TabView


@dataclass(frozen=True)
class RuntimeContext:
    """Settings, data source, and controller shared by every command."""

    settings: data_manager.ConfigSettings
    source: MarginDataSource
    controller: MarginViewController


@dataclass(frozen=True)
class SingleFileSource:
    """Serve one JSON payload file regardless of the requested period."""

    path: Path

    def fetch(self, year: int, month: int) -> data_manager.ProcessedMarginDataset:
        return data_manager.load_dataset_file(self.path)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="margin-report",
        description="Margin analysis reports over aggregated sales and cost data.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    parser.add_argument(
        "--dataset",
        type=Path,
        default=None,
        help="Read this JSON payload instead of the configured data directory.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    view_specs = register_view_commands(subparsers)
    output_specs = register_output_commands(subparsers)
    return build_command_table([*view_specs.values(), *output_specs.values()])


def register_view_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare the commands that print one report tab each."""
    specs = {
        "summary": register_tab_command("summary", "Show overall margin figures and the top items.", run_summary),
        "items": register_tab_command("items", "Show the item margin table.", run_items),
        "customers": register_tab_command("customers", "Show the customer margin table.", run_customers),
        "categories": register_categories_command(),
        "chart": register_chart_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_output_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare the commands that emit data for other tools."""
    specs = {
        "category-options": register_category_options_command(),
        "insights-payload": register_insights_command(),
        "export": register_export_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def add_period_arguments(parser: argparse.ArgumentParser) -> None:
    today = date.today()
    parser.add_argument("--year", type=int, default=today.year)
    parser.add_argument("--month", type=int, default=today.month)


def add_view_arguments(parser: argparse.ArgumentParser) -> None:
    add_period_arguments(parser)
    parser.add_argument("--mode", choices=[member.value for member in ViewMode], default=None)
    parser.add_argument("--search", default="")
    parser.add_argument(
        "--top-n",
        type=int,
        default=None,
        help=f"Rows to show; common values are {', '.join(str(n) for n in TOP_N_CHOICES)} (-1 shows all).",
    )
    parser.add_argument("--sort-field", choices=[member.value for member in SortField], default=None)
    parser.add_argument(
        "--sort-direction",
        choices=[member.value for member in SortDirection],
        default=None,
        help="Sort direction; without --sort-field it applies to the current column.",
    )


def register_tab_command(
    name: str,
    help_text: str,
    execute: Callable[[RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Build the spec of a command that only needs the shared view options."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_view_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_categories_command() -> CommandSpec:
    """Register the parser and executor for ``categories``."""
    name = "categories"
    help_text = "Show the category margin table."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_view_arguments(parser)
        parser.add_argument("--category", default=None, help="Exact posting group to show.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_categories)


def register_chart_command() -> CommandSpec:
    """Register the parser and executor for ``chart``."""
    name = "chart"
    help_text = "Show the top 10 margin comparison for items, customers, or categories."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_view_arguments(parser)
        parser.add_argument(
            "--source",
            choices=[tab.value for tab in (ReportTab.ITEMS, ReportTab.CUSTOMERS, ReportTab.CATEGORIES)],
            default=ReportTab.ITEMS.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_chart)


def register_category_options_command() -> CommandSpec:
    """Register the parser and executor for ``category-options``."""
    name = "category-options"
    help_text = "List the posting groups offered by the category filter."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_period_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_category_options)


def register_insights_command() -> CommandSpec:
    """Register the parser and executor for ``insights-payload``."""
    name = "insights-payload"
    help_text = "Print the JSON request body for the margin insights analysis."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_period_arguments(parser)
        parser.add_argument("--mode", choices=[member.value for member in ViewMode], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_insights_payload)


def register_export_command() -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Write items, customers, and categories to an Excel workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_period_arguments(parser)
        parser.add_argument("--output-dir", type=Path, default=None)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing export.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(
    config_path: Optional[Path] = None,
    dataset_path: Optional[Path] = None,
) -> RuntimeContext:
    """Resolve settings and the data source for CLI operations.

    A configuration file is mandatory unless ``dataset_path`` is given, in
    which case the working directory stands in for the configured folders.
    """
    try:
        located = data_manager.find_config_file(config_path)
        resolved = Path(located).expanduser().resolve()
        parser = data_manager.read_config(resolved)
        settings = data_manager.parse_settings(parser, base_path=resolved.parent)
    except FileNotFoundError:
        if dataset_path is None:
            raise
        log.debug("No config.ini found; using working directory defaults")
        settings = data_manager.ConfigSettings(
            data_directory=Path.cwd(),
            export_directory=Path.cwd() / "exports",
        )

    if dataset_path is not None:
        source: MarginDataSource = SingleFileSource(Path(dataset_path))
    else:
        source = data_manager.JsonDatasetSource(settings.data_directory)

    return RuntimeContext(
        settings=settings,
        source=source,
        controller=MarginViewController.from_settings(settings),
    )


def dispatch_command(
    context: RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def apply_view_arguments(controller: MarginViewController, args: argparse.Namespace, kind: Optional[RecordKind]) -> None:
    """Replay the command-line view options as controller transitions."""
    if getattr(args, "mode", None):
        controller.set_view_mode(args.mode)
    if getattr(args, "search", None):
        controller.set_search(args.search)
    if getattr(args, "top_n", None) is not None:
        controller.set_top_n(args.top_n)
    if kind is None:
        return
    sort_field = getattr(args, "sort_field", None)
    if sort_field:
        controller.sort_by(kind, sort_field)
    sort_direction = getattr(args, "sort_direction", None)
    if sort_direction:
        controller.set_sort_direction(kind, sort_direction)


def load_period(context: RuntimeContext, args: argparse.Namespace) -> None:
    context.controller.select_period(context.source, args.year, args.month)


def _money(value: Decimal) -> str:
    return f"{value:,.2f}"


def render_rows(view: TabView) -> str:
    """Format table rows as fixed-width text."""
    if not view.rows:
        return view.empty_message or ""
    lines = [
        f"{'#':>4}  {'Code':<14} {'Name':<32} {'Qty':>10} {'Sales':>14} {'Cost':>14} {'Margin':>14} {'%':>8}  Band"
    ]
    for row in view.rows:
        lines.append(
            f"{row.rank:>4}  {row.key[:14]:<14} {row.label[:32]:<32} {row.total_quantity:>10,.0f} "
            f"{_money(row.total_sales):>14} {_money(row.total_cost):>14} {_money(row.margin):>14} "
            f"{row.margin_percent_text:>8}  {row.band.value}"
        )
    return "\n".join(lines)


def render_summary(view: TabView) -> str:
    summary = view.summary
    if summary is None or summary.overall is None:
        return view.empty_message or ""
    overall = summary.overall
    lines = [
        f"Total sales:   {_money(overall.total_sales)}",
        f"Total cost:    {_money(overall.total_cost)}",
        f"Margin:        {_money(overall.margin)}",
        f"Margin %:      {core_logic.format_percent(overall.margin_percent)} ({summary.band.value})",
    ]
    if overall.total_credit_memos is not None:
        lines.append(f"Credit memos:  {_money(overall.total_credit_memos)}")
    if summary.is_adjusted:
        lines.append("Figures are adjusted for credit memos.")
    lines.append("")
    lines.append(render_rows(view))
    return "\n".join(lines)


def render_chart(view: TabView) -> str:
    if not view.chart:
        return view.empty_message or ""
    lines = []
    for datum in view.chart:
        bar = "#" * max(0, min(50, int(datum.value // 2)))
        lines.append(
            f"{datum.key[:14]:<14} {datum.name[:24]:<24} {core_logic.format_percent(datum.margin_percent):>8} "
            f"{bar} [{datum.color}]"
        )
    return "\n".join(lines)


_TAB_RECORD_KINDS = {
    ReportTab.ITEMS: RecordKind.ITEM,
    ReportTab.CUSTOMERS: RecordKind.CUSTOMER,
    ReportTab.CATEGORIES: RecordKind.CATEGORY,
}


def _show_tab(context: RuntimeContext, args: argparse.Namespace, tab: ReportTab, kind: Optional[RecordKind]) -> TabView:
    load_period(context, args)
    controller = context.controller
    controller.select_tab(tab)
    apply_view_arguments(controller, args, kind)
    return controller.compose()


def run_summary(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print the summary tab."""
    view = _show_tab(context, args, ReportTab.SUMMARY, None)
    print(render_summary(view))
    return 0


def run_items(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print the items tab."""
    view = _show_tab(context, args, ReportTab.ITEMS, RecordKind.ITEM)
    print(render_rows(view))
    return 0


def run_customers(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print the customers tab."""
    view = _show_tab(context, args, ReportTab.CUSTOMERS, RecordKind.CUSTOMER)
    print(render_rows(view))
    return 0


def run_categories(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print the categories tab, optionally narrowed to one posting group."""
    load_period(context, args)
    controller = context.controller
    controller.select_tab(ReportTab.CATEGORIES)
    apply_view_arguments(controller, args, RecordKind.CATEGORY)
    if args.category:
        controller.select_category(args.category)
    print(render_rows(controller.compose()))
    return 0


def run_chart(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print the chart for the chosen table, after the same filters it would show."""
    load_period(context, args)
    controller = context.controller
    source_tab = ReportTab(args.source)
    controller.select_tab(source_tab)
    apply_view_arguments(controller, args, _TAB_RECORD_KINDS[source_tab])
    controller.select_tab(ReportTab.CHART)
    print(render_chart(controller.compose()))
    return 0


def run_category_options(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print the category dropdown options, one per line."""
    load_period(context, args)
    for option in context.controller.category_options():
        print(option)
    return 0


def run_insights_payload(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print the insights request body as JSON."""
    load_period(context, args)
    controller = context.controller
    if args.mode:
        controller.set_view_mode(args.mode)
    controller.select_tab(ReportTab.INSIGHTS)
    view = controller.compose()
    print(json.dumps(view.insights.to_payload(), indent=2))
    return 0


def run_export(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Write the gross arrays of the period to an Excel workbook."""
    load_period(context, args)
    bundle = context.controller.export_bundle()
    directory = args.output_dir if args.output_dir is not None else context.settings.export_directory
    destination = data_manager.write_export_workbook(bundle, directory, overwrite=args.force)
    print(f"Exported margin analysis to '{destination}'.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.InvalidSelectionError):
        log.error("%s", error)
        return 2
    if isinstance(error, (FileNotFoundError, core_logic.DatasetUnavailableError)):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None), getattr(args, "dataset", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:
        return handle_cli_error(error)
