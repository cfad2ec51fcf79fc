"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping

import openpyxl
import pytest

from shop_ledger import cli, core_logic, data_manager
from shop_ledger.models import ProductKey


WRITE_COMMANDS = {"import-sales", "import-stock", "set-stock", "sync"}

READ_COMMANDS = {"stock", "movements", "audit", "template"}

SALES_CSV = (
    "Product,Category,Register,Date,Seller,Quantity,Amount\n"
    "Mug,Kitchen,Caisse 1,02/06/2024,Alice,2,\"19,80\"\n"
    "Mug,Kitchen,Caisse 1,03/06/2024,Alice,1,\"9,90\"\n"
    "Cap,Textile,Caisse 2,03/06/2024,Bob,1,12.00\n"
)


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    return cli.build_parser()


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser):
    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def sales_csv(tmp_path: Path) -> Path:
    path = tmp_path / "sales.csv"
    path.write_text(SALES_CSV, encoding="utf-8")
    return path


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]


def _saved_products(workbook_path: Path) -> Mapping[ProductKey, object]:
    workbook = data_manager.open_workbook(workbook_path)
    return {product.key: product for product in data_manager.iter_products(workbook)}


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata(cli_parser):
    """build_parser should set user-facing program metadata."""

    assert cli_parser.prog == "shop-ledger"
    assert "stock" in (cli_parser.description or "").lower()


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every sub-command."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) and spec.needs_context for spec in specs.values())


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    assert specs["template"].needs_context is False


def test_import_sales_arguments(cli_parser):
    """The import commands take a source file, an optional sheet and --dry-run."""

    cli.configure_subcommands(cli_parser)

    args = cli_parser.parse_args(["import-sales", "sales.xlsx", "--sheet", "June", "--dry-run"])

    assert args.command == "import-sales"
    assert args.source == Path("sales.xlsx")
    assert args.sheet == "June"
    assert args.dry_run is True


def test_set_stock_requires_its_fields(cli_parser):
    """set-stock refuses to parse without a quantity."""

    cli.configure_subcommands(cli_parser)

    with pytest.raises(SystemExit):
        cli_parser.parse_args(["set-stock", "--product", "Mug", "--category", "Kitchen", "--date", "01/06/2024"])


def test_translate_set_stock_builds_draft(cli_parser):
    """Raw CLI text is handed to validation untouched."""

    cli.configure_subcommands(cli_parser)
    args = cli_parser.parse_args(
        ["set-stock", "--product", "Mug", "--category", "Kitchen", "--quantity", "12", "--date", "01/06/2024"]
    )

    draft = cli.translate_set_stock(args)

    assert (draft.product, draft.initial_quantity, draft.effective_date, draft.min_stock) == ("Mug", "12", "01/06/2024", "")


def test_translate_day_rejects_garbage():
    """Unparseable dates are business rule violations."""

    with pytest.raises(core_logic.BusinessRuleViolation):
        cli.translate_day("someday")


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    """dispatch_command should call the executor associated with the command."""

    called = {}

    def execute(ctx, args):
        called["context"] = ctx
        return 0

    table = {"alpha": cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), execute)}

    assert cli.dispatch_command(context, argparse.Namespace(command="alpha"), table) == 0
    assert called["context"] is context


def test_dispatch_command_handles_unknown_commands(context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), cli.EXIT_RULE_VIOLATION),
        (core_logic.MissingReferenceError("missing"), cli.EXIT_RULE_VIOLATION),
        (FileNotFoundError("ledger.xlsx"), cli.EXIT_MISSING_FILE),
        (RuntimeError("boom"), cli.EXIT_FAILURE),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert caplog.records


def test_persist_workbook_wraps_permission_errors(context, monkeypatch):
    """A locked workbook surfaces as a RuntimeError."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("locked")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)

    with pytest.raises(RuntimeError):
        cli.persist_workbook(context)


def test_main_skips_persist_on_failure(monkeypatch, context):
    """main should not save after a failing command."""

    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)
    monkeypatch.setattr(cli.core_logic, "sync_catalog", lambda ctx: (_ for _ in ()).throw(core_logic.BusinessRuleViolation("no")))
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["sync"]) == cli.EXIT_RULE_VIOLATION


def test_main_reports_missing_config(tmp_path):
    """A missing config file maps to the missing-file exit code."""

    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == cli.EXIT_MISSING_FILE


# ---------------------------------------------------------------------------
# Commands end to end
# ---------------------------------------------------------------------------


def test_template_command_writes_workbook(tmp_path, capsys):
    """template needs no configuration and refuses to overwrite by default."""

    destination = tmp_path / "stock_template.xlsx"

    assert cli.main(["template", "stock", str(destination)]) == cli.EXIT_OK
    assert "Template written" in capsys.readouterr().out
    sheet = openpyxl.load_workbook(destination).active
    assert [cell.value for cell in sheet[1]] == ["Product", "Category", "Quantity", "Date"]

    assert cli.main(["template", "stock", str(destination)]) == cli.EXIT_FAILURE
    assert cli.main(["template", "stock", str(destination), "--force"]) == cli.EXIT_OK


def test_import_sales_command_saves_workbook(config_factory, sales_csv, capsys):
    """Imported events are persisted and reported."""

    bundle = config_factory()

    exit_code = cli.main(["--config", str(bundle.config_path), "import-sales", str(sales_csv)])

    assert exit_code == cli.EXIT_OK
    output = capsys.readouterr().out
    assert "3 new, 0 duplicate(s), 0 error(s)" in output
    workbook = data_manager.open_workbook(bundle.workbook_path)
    assert len(list(data_manager.iter_sale_events(workbook))) == 3
    products = _saved_products(bundle.workbook_path)
    assert products[ProductKey.of("Mug", "Kitchen")].quantity_sold == 3


def test_import_sales_dry_run_writes_nothing(config_factory, sales_csv):
    """--dry-run previews only."""

    bundle = config_factory()

    assert cli.main(["--config", str(bundle.config_path), "import-sales", str(sales_csv), "--dry-run"]) == cli.EXIT_OK
    workbook = data_manager.open_workbook(bundle.workbook_path)
    assert list(data_manager.iter_sale_events(workbook)) == []


def test_import_sales_twice_reports_duplicates(config_factory, sales_csv, capsys):
    """The second import of the same file finds only duplicates."""

    bundle = config_factory()
    cli.main(["--config", str(bundle.config_path), "import-sales", str(sales_csv)])
    capsys.readouterr()

    assert cli.main(["--config", str(bundle.config_path), "import-sales", str(sales_csv)]) == cli.EXIT_OK
    assert "0 new, 3 duplicate(s)" in capsys.readouterr().out


def test_set_stock_then_stock_report(config_factory, sales_csv, capsys):
    """A saved checkpoint drives the stock report."""

    bundle = config_factory()
    config = ["--config", str(bundle.config_path)]
    cli.main([*config, "import-sales", str(sales_csv)])

    exit_code = cli.main(
        [*config, "set-stock", "--product", "mug", "--category", "kitchen", "--quantity", "20", "--date", "01/06/2024", "--min-stock", "4"]
    )

    assert exit_code == cli.EXIT_OK
    product = _saved_products(bundle.workbook_path)[ProductKey.of("Mug", "Kitchen")]
    assert product.stock == 17
    assert product.configured is True
    capsys.readouterr()

    assert cli.main([*config, "stock"]) == cli.EXIT_OK
    output = capsys.readouterr().out
    assert "Mug (Kitchen): 17 [ok]" in output
    assert "Cap (Textile):" in output


def test_set_stock_rejected_checkpoint(config_factory, capsys):
    """Validation errors are printed and reported as incomplete."""

    bundle = config_factory()

    exit_code = cli.main(
        ["--config", str(bundle.config_path), "set-stock", "--product", "Mug", "--category", "Kitchen", "--quantity", "-3", "--date", "01/06/2024"]
    )

    assert exit_code == cli.EXIT_INCOMPLETE
    assert "Stock not saved." in capsys.readouterr().out
    assert _saved_products(bundle.workbook_path) == {}


def test_audit_command_after_import(config_factory, sales_csv, capsys):
    """Freshly recomputed products pass the audit."""

    bundle = config_factory()
    cli.main(["--config", str(bundle.config_path), "import-sales", str(sales_csv)])
    capsys.readouterr()

    assert cli.main(["--config", str(bundle.config_path), "audit"]) == cli.EXIT_OK
    assert "0 inconsistency(ies) found" in capsys.readouterr().out


def test_movements_for_unknown_product(config_factory):
    """Timelines of unknown products are rule violations."""

    bundle = config_factory()

    exit_code = cli.main(
        ["--config", str(bundle.config_path), "movements", "--start", "01/06/2024", "--end", "30/06/2024", "--product", "Ghost"]
    )

    assert exit_code == cli.EXIT_RULE_VIOLATION
