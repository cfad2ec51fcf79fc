"""Data access layer for the shop ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: converting rows to and from the domain records.
4. The :class:`LedgerStore` boundary consumed by the engines, together with
   :class:`WorkbookLedgerStore`, its openpyxl-backed implementation.
"""


from __future__ import annotations

import configparser
import csv
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_AUDIT_TOLERANCE,
    DEFAULT_BATCH_SIZE,
    DEFAULT_MIN_STOCK,
    SheetName,
)
from .models import Product, ProductKey, SaleEvent, StockCheckpoint, round_money, to_day


CONFIG_FILE_NAME = "config.ini"
SALE_EVENTS_SHEET = SheetName.SALE_EVENTS.value
CHECKPOINTS_SHEET = SheetName.CHECKPOINTS.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    batch_size: int = DEFAULT_BATCH_SIZE
    default_min_stock: int = DEFAULT_MIN_STOCK
    audit_tolerance: Decimal = DEFAULT_AUDIT_TOLERANCE


class LedgerStore(Protocol):
    """Persistence boundary consumed by the reconciliation engines."""

    def list_events(self, product_filter: Optional[ProductKey] = None) -> List[SaleEvent]:
        ...

    def append_events(self, batch: Sequence[SaleEvent]) -> None:
        ...

    def get_checkpoint(self, product_key: ProductKey) -> Optional[StockCheckpoint]:
        ...

    def put_checkpoint(self, product_key: ProductKey, checkpoint: StockCheckpoint) -> None:
        ...

    def list_checkpoints(self) -> List[StockCheckpoint]:
        ...

    def list_products(self) -> List[Product]:
        ...

    def put_product(self, product: Product) -> None:
        ...

    def delete_checkpoint(self, product_key: ProductKey) -> bool:
        ...

    def delete_product(self, product_key: ProductKey) -> bool:
        ...


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
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
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. User home references are expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Import]`` and ``[Audit]`` entries
    fall back to the package defaults. Relative ``DataFile`` entries are
    anchored at ``base_path`` (or the working directory).

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional numeric entry is malformed or out of range.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    batch_size = parser.getint("Import", "BatchSize", fallback=DEFAULT_BATCH_SIZE)
    if batch_size < 1:
        raise ValueError(f"BatchSize must be at least 1, got {batch_size}")
    default_min_stock = parser.getint("Import", "DefaultMinStock", fallback=DEFAULT_MIN_STOCK)
    if default_min_stock < 0:
        raise ValueError(f"DefaultMinStock must be zero or positive, got {default_min_stock}")
    tolerance_raw = parser.get("Audit", "Tolerance", fallback=str(DEFAULT_AUDIT_TOLERANCE))
    try:
        audit_tolerance = Decimal(tolerance_raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid audit tolerance: {tolerance_raw!r}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        batch_size=batch_size,
        default_min_stock=default_min_stock,
        audit_tolerance=audit_tolerance,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name.value for name in SheetName if name.value not in wb.sheetnames]
    if missing:
        raise KeyError(f"Workbook {data_file} is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def read_table_rows(source: Path, *, sheet_name: Optional[str] = None) -> List[Dict[str, object]]:
    """Read an import file into header-keyed rows.

    ``.xlsx``/``.xlsm`` files are read with ``openpyxl`` (first sheet unless
    ``sheet_name`` is given, cached values rather than formulas). ``.csv``
    and ``.tsv`` files are read with :mod:`csv`; a ``.txt`` file is treated
    as tab separated, which is what a clipboard paste from a spreadsheet
    produces.

    Raises:
        FileNotFoundError: If ``source`` does not exist.
        ValueError: For any other extension.
    """

    source = Path(source).expanduser().resolve()
    if not source.exists():
        raise FileNotFoundError(f"Import file not found: {source}")

    suffix = source.suffix.lower()
    if suffix in (".xlsx", ".xlsm"):
        wb = openpyxl.load_workbook(source, read_only=True, data_only=True)
        try:
            sheet = wb[sheet_name] if sheet_name else wb.worksheets[0]
            rows = sheet.iter_rows(values_only=True)
            header = next(rows, None)
            if header is None:
                return []
            names = [str(cell).strip() if cell is not None else "" for cell in header]
            records = [
                {name: value for name, value in zip(names, raw) if name}
                for raw in rows
            ]
        finally:
            wb.close()
        return records

    if suffix in (".csv", ".tsv", ".txt"):
        delimiter = "," if suffix == ".csv" else "\t"
        with source.open(newline="", encoding="utf-8-sig") as handle:
            reader = csv.DictReader(handle, delimiter=delimiter)
            return [
                {name.strip(): value for name, value in row.items() if name}
                for row in reader
            ]

    raise ValueError(f"Unsupported import file type: {source.suffix or source.name}")


def write_template(
    destination: Path,
    columns: Sequence[str],
    example: Sequence[object] = (),
    *,
    title: str = "Import",
    overwrite: bool = False,
) -> Path:
    """Write a single-sheet import template with bold headers.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing template: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)

    wb = openpyxl.Workbook()
    sheet = wb.active
    sheet.title = title
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = sheet.cell(row=1, column=column_index, value=column_name)
        cell.font = bold_font
        sheet.column_dimensions[get_column_letter(column_index)].width = max(12, len(column_name) + 4)
    if example:
        sheet.append(list(example))
    wb.save(destination)
    log.info("Wrote %s template to '%s'", title, destination)
    return destination


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_sale_events(workbook: Workbook) -> Iterable[SaleEvent]:
    """Stream sale events from the ``SaleEvents`` worksheet in sheet order."""

    for raw in _iter_sheet(workbook, SALE_EVENTS_SHEET):
        yield deserialize_sale_event(raw)


def iter_checkpoints(workbook: Workbook) -> Iterable[StockCheckpoint]:
    """Stream stock checkpoints from the ``StockCheckpoints`` worksheet."""

    for raw in _iter_sheet(workbook, CHECKPOINTS_SHEET):
        yield deserialize_checkpoint(raw)


def iter_products(workbook: Workbook) -> Iterable[Product]:
    """Stream catalog entries from the ``Products`` worksheet."""

    for raw in _iter_sheet(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def append_sale_events(workbook: Workbook, records: Sequence[SaleEvent]) -> None:
    """Append ``records`` to the ``SaleEvents`` worksheet.

    Every record is serialized before the first row is written, so a record
    that cannot be converted leaves the sheet untouched.
    """

    rows = [serialize_sale_event(record) for record in records]
    sheet = workbook[SALE_EVENTS_SHEET]
    for row in rows:
        sheet.append(row)


def upsert_keyed_row(workbook: Workbook, sheet_name: str, key: ProductKey, values: Sequence[object]) -> int:
    """Overwrite the row whose product/category match ``key`` or append one.

    Returns:
        int: 1-based Excel row index that received ``values``.
    """

    sheet = workbook[sheet_name]
    row_index = locate_product_row(workbook, sheet_name, key)
    if row_index is None:
        sheet.append(list(values))
        return sheet.max_row
    for column, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column, value=value)
    return row_index


def delete_keyed_row(workbook: Workbook, sheet_name: str, key: ProductKey) -> bool:
    """Remove the row whose product/category match ``key``; report whether one existed."""

    row_index = locate_product_row(workbook, sheet_name, key)
    if row_index is None:
        return False
    workbook[sheet_name].delete_rows(row_index)
    return True


def locate_product_row(workbook: Workbook, sheet_name: str, key: ProductKey) -> Optional[int]:
    """Find the row whose first two columns normalise to ``key``.

    Returns:
        int | None: 1-based Excel row index, or ``None`` when absent.
    """

    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, max_col=2, values_only=True), start=2):
        if row[0] is None and row[1] is None:
            continue
        if ProductKey.of(row[0], row[1]) == key:
            return row_idx
    return None


def generate_event_id(*, when: Optional[datetime] = None, sequence: int = 0) -> str:
    """Generate a sortable event identifier ``E{timestamp}-{sequence}``."""

    when = when or datetime.now()
    return f"E{when.strftime('%Y%m%d%H%M%S%f')}-{sequence:04d}"


def serialize_sale_event(record: SaleEvent) -> list[object]:
    """Convert a sale event into the ``SaleEvents`` column ordering."""

    return [
        record.event_id,
        record.product,
        record.category,
        record.register,
        record.seller,
        record.date,
        int(record.quantity),
        record.unit_price,
        record.total,
    ]


def serialize_checkpoint(record: StockCheckpoint) -> list[object]:
    """Convert a checkpoint into the ``StockCheckpoints`` column ordering."""

    return [
        record.product,
        record.category,
        int(record.initial_quantity),
        record.effective_date,
        int(record.min_stock),
        bool(record.configured),
    ]


def serialize_product(record: Product) -> list[object]:
    """Convert a catalog entry into the ``Products`` column ordering."""

    return [
        record.name,
        record.category,
        record.price,
        int(record.initial_stock),
        record.initial_stock_date,
        int(record.stock),
        int(record.quantity_sold),
        record.stock_value,
        record.last_sale,
        int(record.min_stock),
        bool(record.configured),
    ]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw not in (None, "") else Decimal(default)


def _to_int(raw: object) -> int:
    return int(Decimal(str(raw))) if raw not in (None, "") else 0


def _to_datetime(raw: object) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day)
    return datetime.fromisoformat(str(raw))


def _to_date(raw: object) -> Optional[date]:
    moment = _to_datetime(raw)
    return to_day(moment) if moment is not None else None


def deserialize_sale_event(raw_row: Sequence[object]) -> SaleEvent:
    """Convert a raw ``SaleEvents`` row into a :class:`SaleEvent`.

    Excel hands back numbers as ``int``/``float``; monetary columns are
    routed through ``str`` so the resulting decimals carry no binary noise.
    """

    (
        event_id,
        product,
        category,
        register,
        seller,
        when,
        quantity,
        unit_price,
        total,
    ) = tuple(raw_row)[:9]
    moment = _to_datetime(when)
    if moment is None:
        raise ValueError(f"Sale event {event_id!r} has no date")
    return SaleEvent(
        event_id=str(event_id) if event_id is not None else None,
        product=str(product or ""),
        category=str(category or ""),
        register=str(register or ""),
        seller=str(seller or ""),
        date=moment,
        quantity=_to_int(quantity),
        unit_price=round_money(_to_decimal(unit_price)),
        total=round_money(_to_decimal(total)),
    )


def deserialize_checkpoint(raw_row: Sequence[object]) -> StockCheckpoint:
    """Convert a raw ``StockCheckpoints`` row into a :class:`StockCheckpoint`."""

    product, category, initial_quantity, effective_date, min_stock, configured = tuple(raw_row)[:6]
    return StockCheckpoint(
        product=str(product or ""),
        category=str(category or ""),
        initial_quantity=_to_int(initial_quantity),
        effective_date=_to_date(effective_date),
        min_stock=_to_int(min_stock),
        configured=bool(configured),
    )


def deserialize_product(raw_row: Sequence[object]) -> Product:
    """Convert a raw ``Products`` row into a :class:`Product`."""

    (
        name,
        category,
        price,
        initial_stock,
        initial_stock_date,
        stock,
        quantity_sold,
        stock_value,
        last_sale,
        min_stock,
        configured,
    ) = tuple(raw_row)[:11]
    return Product(
        name=str(name or ""),
        category=str(category or ""),
        price=_to_decimal(price),
        initial_stock=_to_int(initial_stock),
        initial_stock_date=_to_date(initial_stock_date),
        stock=_to_int(stock),
        quantity_sold=_to_int(quantity_sold),
        stock_value=round_money(_to_decimal(stock_value)),
        last_sale=_to_datetime(last_sale),
        min_stock=_to_int(min_stock),
        configured=bool(configured),
    )


class WorkbookLedgerStore:
    """:class:`LedgerStore` backed by an in-memory ``openpyxl`` workbook.

    Writes only touch the workbook object; callers persist with
    :func:`save_workbook` once a unit of work succeeds.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._sequence = 0

    def list_events(self, product_filter: Optional[ProductKey] = None) -> List[SaleEvent]:
        events = list(iter_sale_events(self.workbook))
        if product_filter is None:
            return events
        return [event for event in events if event.key == product_filter]

    def append_events(self, batch: Sequence[SaleEvent]) -> None:
        stamped: List[SaleEvent] = []
        now = datetime.now()
        for event in batch:
            if event.event_id is None:
                self._sequence += 1
                event = replace(event, event_id=generate_event_id(when=now, sequence=self._sequence))
            stamped.append(event)
        append_sale_events(self.workbook, stamped)
        log.debug("Appended %d sale events to '%s'", len(stamped), SALE_EVENTS_SHEET)

    def get_checkpoint(self, product_key: ProductKey) -> Optional[StockCheckpoint]:
        for checkpoint in iter_checkpoints(self.workbook):
            if checkpoint.key == product_key:
                return checkpoint
        return None

    def put_checkpoint(self, product_key: ProductKey, checkpoint: StockCheckpoint) -> None:
        if checkpoint.key != product_key:
            raise KeyError(f"Checkpoint for {checkpoint.key.label()} stored under {product_key.label()}")
        upsert_keyed_row(self.workbook, CHECKPOINTS_SHEET, product_key, serialize_checkpoint(checkpoint))

    def list_checkpoints(self) -> List[StockCheckpoint]:
        return list(iter_checkpoints(self.workbook))

    def list_products(self) -> List[Product]:
        return list(iter_products(self.workbook))

    def put_product(self, product: Product) -> None:
        upsert_keyed_row(self.workbook, PRODUCTS_SHEET, product.key, serialize_product(product))

    def delete_checkpoint(self, product_key: ProductKey) -> bool:
        return delete_keyed_row(self.workbook, CHECKPOINTS_SHEET, product_key)

    def delete_product(self, product_key: ProductKey) -> bool:
        return delete_keyed_row(self.workbook, PRODUCTS_SHEET, product_key)
