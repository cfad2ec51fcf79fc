"""Utility for initializing the shop ledger workbook and import templates.

The module doubles as a script (``python setup_excel.py``) and as a library
used by tests. Sheet layouts come from :mod:`shop_ledger.constants` so the
bootstrap always matches what the data layer reads.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from shop_ledger import data_manager
from shop_ledger.constants import (
    SALES_TEMPLATE_COLUMNS,
    SALES_TEMPLATE_EXAMPLE,
    SHEET_COLUMNS,
    STOCK_TEMPLATE_COLUMNS,
    STOCK_TEMPLATE_EXAMPLE,
)

CONFIG_FILE = "config.ini"
SALES_TEMPLATE_NAME = "sales_import_template.xlsx"
STOCK_TEMPLATE_NAME = "stock_import_template.xlsx"


def create_ledger_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty ledger workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # openpyxl always starts with a default "Sheet".
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font
        worksheet.freeze_panes = "A2"

    workbook.save(destination)
    return destination


def write_import_templates(directory: Path, *, overwrite: bool = False) -> List[Path]:
    """Write the sale-event and stock-quantity templates into ``directory``."""

    return [
        data_manager.write_template(
            directory / SALES_TEMPLATE_NAME,
            SALES_TEMPLATE_COLUMNS,
            SALES_TEMPLATE_EXAMPLE,
            title="Sales",
            overwrite=overwrite,
        ),
        data_manager.write_template(
            directory / STOCK_TEMPLATE_NAME,
            STOCK_TEMPLATE_COLUMNS,
            STOCK_TEMPLATE_EXAMPLE,
            title="Stock",
            overwrite=overwrite,
        ),
    ]


def run_from_config(
    config_path: Path,
    *,
    overwrite: bool = False,
    templates_dir: Optional[Path] = None,
) -> List[Path]:
    """Create the workbook named in ``config.ini`` and, optionally, templates."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    created = [create_ledger_workbook(settings.data_file, overwrite=overwrite)]
    if templates_dir is not None:
        created.extend(write_import_templates(templates_dir, overwrite=overwrite))
    return created


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the shop ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite existing files.",
    )
    parser.add_argument(
        "--templates",
        type=Path,
        default=None,
        help="Also write the import templates into this directory.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Shop Ledger Setup ---")
    print(f"Using configuration: {config_path}")
    try:
        created = run_from_config(config_path, overwrite=args.force, templates_dir=args.templates)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite existing files if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    for path in created:
        print(f"[SUCCESS] Created '{path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
