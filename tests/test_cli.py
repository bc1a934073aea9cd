"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import openpyxl
import pytest

import margin_report
from margin_report import cli, core_logic, data_manager
from margin_report.view_state import MarginViewController


VIEW_COMMANDS = {"summary", "items", "customers", "categories", "chart"}

OUTPUT_COMMANDS = {"category-options", "insights-payload", "export"}


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="margin-report", description="Margin report")


@pytest.fixture
def subparsers_action(cli_parser):
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def runtime_context(tmp_path, stub_source) -> cli.RuntimeContext:
    settings = data_manager.ConfigSettings(
        data_directory=tmp_path / "data",
        export_directory=tmp_path / "exports",
    )
    return cli.RuntimeContext(
        settings=settings,
        source=stub_source,
        controller=MarginViewController.from_settings(settings),
    )


def _parse(*argv: str) -> argparse.Namespace:
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(list(argv))


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert parser.prog == "margin-report"
    assert "Margin" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every report and output command."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == VIEW_COMMANDS | OUTPUT_COMMANDS
    assert _registered_choices(cli_parser) == VIEW_COMMANDS | OUTPUT_COMMANDS


def test_register_view_commands_returns_command_specs(subparsers_action):
    specs = cli.register_view_commands(subparsers_action)
    assert set(specs) == VIEW_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)


def test_register_output_commands_returns_command_specs(subparsers_action):
    specs = cli.register_output_commands(subparsers_action)
    assert set(specs) == OUTPUT_COMMANDS


def test_view_command_parses_shared_options():
    args = _parse(
        "items", "--year", "2025", "--month", "3", "--mode", "adjusted", "--search", "oil",
        "--top-n", "50", "--sort-field", "total_sales", "--sort-direction", "asc",
    )

    assert args.command == "items"
    assert (args.year, args.month) == (2025, 3)
    assert args.mode == "adjusted"
    assert args.search == "oil"
    assert args.top_n == 50
    assert args.sort_field == "total_sales"
    assert args.sort_direction == "asc"


def test_view_command_rejects_unknown_mode():
    with pytest.raises(SystemExit):
        _parse("items", "--mode", "net")


def test_chart_command_defaults_to_items():
    args = _parse("chart", "--year", "2025", "--month", "3")
    assert args.source == "items"


def test_export_command_options():
    args = _parse("export", "--output-dir", "out", "--force")
    assert args.output_dir == Path("out")
    assert args.force


# ---------------------------------------------------------------------------
# Runtime context and dispatch
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_bundle):
    context = cli.load_runtime_context(config_bundle.config_path)

    assert isinstance(context.source, data_manager.JsonDatasetSource)
    assert context.source.directory == config_bundle.data_directory.resolve()
    assert context.controller.state.top_n == 20


def test_load_runtime_context_without_config_needs_dataset(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    with pytest.raises(FileNotFoundError):
        cli.load_runtime_context()

    context = cli.load_runtime_context(dataset_path=tmp_path / "payload.json")
    assert isinstance(context.source, cli.SingleFileSource)
    assert context.settings.export_directory == tmp_path / "exports"


def test_dispatch_command_invokes_executor(runtime_context):
    calls = []

    def _execute(context, args):
        calls.append((context, args.command))
        return 7

    table = {"probe": cli.CommandSpec(name="probe", help_text="", register=lambda action: None, execute=_execute)}

    result = cli.dispatch_command(runtime_context, argparse.Namespace(command="probe"), table)

    assert result == 7
    assert calls == [(runtime_context, "probe")]


def test_dispatch_command_handles_unknown_commands(runtime_context):
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="missing"), {})


def test_build_command_table_detects_duplicate_commands():
    spec = cli.CommandSpec(name="dup", help_text="", register=lambda action: None, execute=lambda c, a: 0)
    with pytest.raises(ValueError):
        cli.build_command_table([spec, spec])


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


def test_run_items_prints_sorted_table(runtime_context, capsys):
    args = _parse("items", "--year", "2025", "--month", "3")

    assert cli.run_items(runtime_context, args) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].lstrip().startswith("#")
    assert "X1" in lines[1]
    assert "28.00%" in lines[1]
    assert "High" in lines[1]
    assert "Y3" in lines[3]


def test_run_items_applies_sort_direction(runtime_context, capsys):
    args = _parse(
        "items", "--year", "2025", "--month", "3", "--sort-field", "total_sales", "--sort-direction", "asc",
    )

    cli.run_items(runtime_context, args)

    state = runtime_context.controller.state
    assert state.item_sort == core_logic.SortState("total_sales", "asc")
    lines = capsys.readouterr().out.splitlines()
    assert "Y3" in lines[1]


def test_run_items_direction_alone_flips_current_column(runtime_context, capsys):
    """A direction without a field applies to the column already active."""

    args = _parse("items", "--year", "2025", "--month", "3", "--sort-direction", "asc")

    cli.run_items(runtime_context, args)

    assert runtime_context.controller.state.item_sort == core_logic.SortState("margin_percent", "asc")
    lines = capsys.readouterr().out.splitlines()
    assert "Y3" in lines[1]
    assert "X1" in lines[3]


def test_view_command_leaves_direction_unset_by_default():
    assert _parse("items").sort_direction is None


def test_run_customers_reports_empty_search(runtime_context, capsys):
    args = _parse("customers", "--year", "2025", "--month", "3", "--search", "nobody")

    cli.run_customers(runtime_context, args)

    assert capsys.readouterr().out.strip() == "No matching customers found."


def test_run_summary_in_adjusted_mode(runtime_context, capsys):
    args = _parse("summary", "--year", "2025", "--month", "3", "--mode", "adjusted")

    cli.run_summary(runtime_context, args)

    out = capsys.readouterr().out
    assert "900.00" in out
    assert "16.67%" in out
    assert "adjusted for credit memos" in out


def test_run_categories_filters_posting_group(runtime_context, capsys):
    args = _parse("categories", "--year", "2025", "--month", "3", "--category", "OIL")

    cli.run_categories(runtime_context, args)

    out = capsys.readouterr().out
    assert "OIL" in out
    assert "GRAIN" not in out


def test_run_chart_uses_requested_table(runtime_context, capsys):
    args = _parse("chart", "--year", "2025", "--month", "3", "--source", "customers")

    cli.run_chart(runtime_context, args)

    lines = capsys.readouterr().out.splitlines()
    assert [line.split()[0] for line in lines] == ["C1", "C2"]
    assert "[amber-500]" in lines[0]


def test_run_category_options_lists_sorted_groups(runtime_context, capsys):
    cli.run_category_options(runtime_context, _parse("category-options", "--year", "2025", "--month", "3"))
    assert capsys.readouterr().out.splitlines() == ["GRAIN", "OIL"]


def test_run_insights_payload_prints_json(runtime_context, capsys):
    args = _parse("insights-payload", "--year", "2025", "--month", "3", "--mode", "adjusted")

    cli.run_insights_payload(runtime_context, args)

    payload = json.loads(capsys.readouterr().out)
    assert payload["viewMode"] == "adjusted"
    assert payload["year"] == 2025
    assert payload["marginData"]["overall"]["adjusted_sales"] == 900.0


def test_run_export_writes_to_configured_directory(runtime_context, capsys):
    args = _parse("export", "--year", "2025", "--month", "3")

    cli.run_export(runtime_context, args)

    destination = runtime_context.settings.export_directory / "margin-analysis-March-2025.xlsx"
    assert destination.exists()
    assert "Exported margin analysis" in capsys.readouterr().out
    workbook = openpyxl.load_workbook(destination)
    assert workbook["Top Customers"].cell(row=2, column=1).value == "C1"


def test_run_items_for_unknown_period_raises(runtime_context):
    args = _parse("items", "--year", "2024", "--month", "1")
    with pytest.raises(core_logic.DatasetUnavailableError):
        cli.run_items(runtime_context, args)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (core_logic.InvalidSelectionError("bad month"), 2),
        (FileNotFoundError("config.ini"), 3),
        (core_logic.DatasetUnavailableError("no data"), 3),
        (FileExistsError("already exported"), 1),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected


def test_main_returns_error_code_for_invalid_month(config_bundle):
    code = cli.main(["--config", str(config_bundle.config_path), "items", "--year", "2025", "--month", "13"])
    assert code == 2


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def test_level_from_env_reads_named_levels(monkeypatch):
    monkeypatch.setenv("MARGIN_REPORT_LOG_LEVEL", "debug")
    assert margin_report._level_from_env("MARGIN_REPORT_LOG_LEVEL", logging.INFO) == logging.DEBUG


def test_level_from_env_ignores_unknown_levels(monkeypatch):
    monkeypatch.setenv("MARGIN_REPORT_LOG_LEVEL", "chatty")
    assert margin_report._level_from_env("MARGIN_REPORT_LOG_LEVEL", logging.INFO) == logging.INFO
    monkeypatch.delenv("MARGIN_REPORT_LOG_LEVEL")
    assert margin_report._level_from_env("MARGIN_REPORT_LOG_LEVEL", logging.WARNING) == logging.WARNING


def test_package_logger_has_console_handler():
    assert margin_report.log.name == "margin_report"
    assert any(type(handler) is logging.StreamHandler for handler in margin_report.log.handlers)
