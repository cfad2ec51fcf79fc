"""Command-line entry points for the shop ledger.

The module only wires argparse to the business layer: each sub-command is a
:class:`CommandSpec` whose executor translates arguments, calls
:mod:`core_logic` and prints a short report. Import files are read through
the data layer so the same commands accept ``.xlsx``, ``.csv`` and ``.tsv``.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import (
    SALES_TEMPLATE_COLUMNS,
    SALES_TEMPLATE_EXAMPLE,
    STOCK_TEMPLATE_COLUMNS,
    STOCK_TEMPLATE_EXAMPLE,
)
from .models import ProductKey, RowError, to_day
from .parsing import parse_date
from .validation import CheckpointDraft

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_RULE_VIOLATION = 2
EXIT_MISSING_FILE = 3
EXIT_INCOMPLETE = 4

Executor = Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Executor
    needs_context: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Stock reconciliation tools for the shop ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that change the ledger."""
    specs = {
        "import-sales": register_import_sales_command(),
        "import-stock": register_import_stock_command(),
        "set-stock": register_set_stock_command(),
        "sync": register_sync_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands and file generators."""
    specs = {
        "stock": register_stock_command(),
        "movements": register_movements_command(),
        "audit": register_audit_command(),
        "template": register_template_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_import_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("source", type=Path, help="Import file (.xlsx, .csv, .tsv or tab separated .txt).")
    parser.add_argument("--sheet", default=None, help="Worksheet to read from an .xlsx file.")
    parser.add_argument("--dry-run", action="store_true", help="Only show the preview; write nothing.")


def register_import_sales_command() -> CommandSpec:
    """Register the parser and executor for ``import-sales``."""
    name = "import-sales"
    help_text = "Preview and commit sale events from an external sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_import_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_sales)


def register_import_stock_command() -> CommandSpec:
    """Register the parser and executor for ``import-stock``."""
    name = "import-stock"
    help_text = "Add stock quantities from a Product/Category/Quantity/Date sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_import_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import_stock)


def register_set_stock_command() -> CommandSpec:
    """Register the parser and executor for ``set-stock``."""
    name = "set-stock"
    help_text = "Declare a product's stock count as of an effective date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--date", required=True, help="Effective date, e.g. 01/06/2024 or 2024-06-01.")
        parser.add_argument("--min-stock", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_stock)


def register_sync_command() -> CommandSpec:
    """Register the parser and executor for ``sync``."""
    name = "sync"
    help_text = "Create or refresh products from the recorded sale events."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--recompute", action="store_true", help="Also recompute stock for every product.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sync)


def register_stock_command() -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels and alerts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--as-of", default=None, help="Show the stock as it stood at the end of this date.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_movements_command() -> CommandSpec:
    """Register the parser and executor for ``movements``."""
    name = "movements"
    help_text = "List stock movements in a period, or one product's timeline."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", required=True)
        parser.add_argument("--end", required=True)
        parser.add_argument("--product", default=None)
        parser.add_argument("--category", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movements)


def register_audit_command() -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Compare stored stock with the stock rebuilt from movements."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit)


def register_template_command() -> CommandSpec:
    """Register the parser and executor for ``template``."""
    name = "template"
    help_text = "Write the sale-event or stock-quantity import template."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("kind", choices=("sales", "stock"))
        parser.add_argument("destination", type=Path)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_template, needs_context=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
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


def translate_day(raw: str) -> date:
    """Parse a CLI date argument.

    Raises:
        core_logic.BusinessRuleViolation: If the text is not a recognised date.
    """
    parsed = parse_date(raw)
    if parsed is None:
        raise core_logic.BusinessRuleViolation(f"Unrecognised date: {raw!r}")
    return to_day(parsed)


def translate_set_stock(args: argparse.Namespace) -> CheckpointDraft:
    """Translate CLI args into a checkpoint draft for validation."""
    return CheckpointDraft(
        product=args.product,
        category=args.category,
        initial_quantity=args.quantity,
        effective_date=args.date,
        min_stock=args.min_stock,
    )


def _print_row_errors(errors: Sequence[RowError]) -> None:
    for error in errors:
        print(f"  row {error.row}: {error.field}: {error.message} ({error.value!r})")


def _print_progress(applied: int, total: int) -> None:
    print(f"  {applied}/{total} rows written")


def run_import_sales(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the sale-event import workflow."""
    rows = data_manager.read_table_rows(args.source, sheet_name=args.sheet)
    outcome = core_logic.import_sales(context, rows, on_progress=_print_progress, dry_run=args.dry_run)
    preview = outcome.preview
    print(
        f"{len(preview.accepted)} new, {len(preview.duplicates)} duplicate(s), "
        f"{len(preview.errors)} error(s); {preview.totals.overall.quantity} unit(s), "
        f"{preview.totals.overall.revenue} revenue"
    )
    for conflict in preview.duplicates:
        origin = "this file" if conflict.within_batch else "the ledger"
        print(f"  row {conflict.row}: already in {origin} ({conflict.matched_reference})")
    _print_row_errors(preview.errors)
    if outcome.commit is None:
        return EXIT_OK
    commit_result = outcome.commit
    if not commit_result.ok:
        failure = commit_result.failure
        print(
            f"Import stopped at batch {failure.batch_index}: {commit_result.applied}/{commit_result.total} "
            f"rows applied. {failure.message}"
        )
        return EXIT_INCOMPLETE
    print(f"Imported {commit_result.applied} sale(s); {len(outcome.recomputed)} product(s) updated")
    return EXIT_OK


def run_import_stock(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the stock-quantity import workflow."""
    rows = data_manager.read_table_rows(args.source, sheet_name=args.sheet)
    outcome = core_logic.import_stock(context, rows, on_progress=_print_progress, dry_run=args.dry_run)
    print(f"{len(outcome.preview.rows)} valid row(s), {len(outcome.preview.errors)} error(s)")
    _print_row_errors(outcome.preview.errors)
    if outcome.result is None:
        return EXIT_OK
    result = outcome.result
    for update in result.updated:
        print(
            f"  {update.product.name}: {update.old_stock} -> {update.new_stock} "
            f"(+{update.added}, matched {update.match_strategy})"
        )
    for update in result.created:
        print(f"  {update.product.name}: new product with {update.new_stock}")
    if not result.ok:
        print(f"Import stopped at batch {result.failure.batch_index}: {result.applied}/{result.total} rows applied")
        return EXIT_INCOMPLETE
    return EXIT_OK


def run_set_stock(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the checkpoint save workflow."""
    outcome = core_logic.save_checkpoint(context, translate_set_stock(args))
    for warning in outcome.warnings:
        print(f"  [{warning.severity.value}] {warning.message}")
    if not outcome.saved:
        print("Stock not saved.")
        return EXIT_INCOMPLETE
    print(f"{outcome.product.name}: stock {outcome.product.stock} (from {outcome.checkpoint.effective_date})")
    return EXIT_OK


def run_sync(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the product auto-sync workflow."""
    result = core_logic.sync_catalog(context)
    print(f"{len(result.updated)} updated, {len(result.created)} created, {len(result.unchanged)} unchanged")
    if args.recompute:
        changed = core_logic.recompute_products(context)
        print(f"{len(changed)} product(s) recomputed")
    return EXIT_OK


def run_stock_report(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    if args.as_of:
        states, summary = core_logic.history(context, translate_day(args.as_of))
        for state in states:
            print(f"  {state.product_key.label()}: {state.stock_at_date}")
        print(f"{summary.total_products} product(s), {summary.total_stock} unit(s), {summary.out_of_stock} out of stock")
        return EXIT_OK

    report = core_logic.stock_report(context)
    for line in report.lines:
        print(f"  {line.product.name} ({line.product.category}): {line.result.stock} [{line.status.value}]")
    summary = report.summary
    print(
        f"{summary.total_products} product(s), {summary.total_stock} unit(s) worth {summary.total_value}; "
        f"{summary.out_of_stock} out, {summary.low_stock} low, {summary.unconfigured} unconfigured, "
        f"{summary.inconsistent} with sales before their checkpoint"
    )
    return EXIT_OK


def run_movements(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the movements and timeline reporting workflow."""
    start, end = translate_day(args.start), translate_day(args.end)
    if args.product:
        key = ProductKey.of(args.product, args.category or "")
        for point in core_logic.timeline(context, key, start, end):
            detail = point.movement.description if point.movement else "opening"
            print(f"  {point.date:%Y-%m-%d %H:%M} {point.stock:>6}  {detail}")
        return EXIT_OK
    for movement in core_logic.period_movements(context, start, end):
        print(
            f"  {movement.date:%Y-%m-%d %H:%M} {movement.product_key.label()} "
            f"{movement.type.value} {movement.quantity:+d}  {movement.description}"
        )
    return EXIT_OK


def run_audit(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the consistency audit."""
    issues = core_logic.audit(context, today=datetime.now())
    for issue in issues:
        print(f"  {issue.product_name}: stored {issue.current_stock}, rebuilt {issue.calculated_stock}")
    print(f"{len(issues)} inconsistency(ies) found")
    return EXIT_OK


def run_template(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Write an import template."""
    if args.kind == "sales":
        columns, example = SALES_TEMPLATE_COLUMNS, SALES_TEMPLATE_EXAMPLE
    else:
        columns, example = STOCK_TEMPLATE_COLUMNS, STOCK_TEMPLATE_EXAMPLE
    path = data_manager.write_template(
        args.destination,
        columns,
        example,
        title="Sales" if args.kind == "sales" else "Stock",
        overwrite=args.force,
    )
    print(f"Template written to {path}")
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return EXIT_RULE_VIOLATION
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    log.error("%s", error)
    return EXIT_FAILURE


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    Batches committed before a failed batch are real writes, so the workbook
    is saved for incomplete imports as well as for successful commands.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        spec = command_table[args.command]
        context = load_runtime_context(getattr(args, "config", None)) if spec.needs_context else None
        exit_code = dispatch_command(context, args, command_table)
        if context is not None and exit_code in (EXIT_OK, EXIT_INCOMPLETE):
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
