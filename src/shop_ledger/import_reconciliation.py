"""Merge externally sourced rows into the sale ledger.

Two flows live here:

* Sale events. :func:`preview` parses raw rows, reports row errors and
  splits valid rows into accepted events and duplicates (of the persisted
  ledger or of an earlier row in the same batch). :func:`commit` then writes
  the accepted events in bounded sequential batches and reports exactly how
  many rows landed.
* Stock quantities. :func:`preview_stock_import` parses
  ``Product, Category, Quantity, Date`` rows and :func:`apply_stock_import`
  adds each quantity to the matching product, located with the ranked fuzzy
  matchers, or creates the product.

Neither flow raises for bad data or failed writes; both return structured
results and leave the decision to halt or continue to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_CEILING, Decimal
from typing import (
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from . import log
from .constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MIN_STOCK,
    NEW_PRODUCT_MIN_STOCK_RATIO,
    ImportField,
)
from .data_manager import LedgerStore
from .matching import find_matching_product
from .models import Product, ProductKey, RowError, SaleEvent, StockCheckpoint, round_money, to_day
from .parsing import map_columns, parse_amount, parse_date, parse_quantity, parse_text
from .stock_calculator import apply_result, compute_stock, group_events_by_product, resolve_price


SALE_REQUIRED_FIELDS: Tuple[ImportField, ...] = (
    ImportField.PRODUCT,
    ImportField.CATEGORY,
    ImportField.REGISTER,
    ImportField.DATE,
    ImportField.SELLER,
    ImportField.QUANTITY,
    ImportField.TOTAL,
)

STOCK_REQUIRED_FIELDS: Tuple[ImportField, ...] = (
    ImportField.PRODUCT,
    ImportField.CATEGORY,
    ImportField.QUANTITY,
    ImportField.DATE,
)

RawRow = Mapping[str, object]
ProgressCallback = Callable[[int, int], None]
T = TypeVar("T")


@dataclass(frozen=True)
class Totals:
    quantity: int = 0
    revenue: Decimal = Decimal("0.00")

    def add(self, event: SaleEvent) -> "Totals":
        return Totals(self.quantity + event.quantity, self.revenue + event.total)


@dataclass(frozen=True)
class ImportTotals:
    """Accepted rows aggregated by product, seller and register."""

    by_product: Dict[str, Totals] = field(default_factory=dict)
    by_seller: Dict[str, Totals] = field(default_factory=dict)
    by_register: Dict[str, Totals] = field(default_factory=dict)
    overall: Totals = Totals()


@dataclass(frozen=True)
class DuplicateConflict:
    """An excluded row whose identity was already seen.

    ``within_batch`` distinguishes a repeat of an earlier row in the same
    import from a row that is already in the ledger.
    """

    row: int
    event: SaleEvent
    within_batch: bool
    matched_reference: Optional[str] = None


@dataclass(frozen=True)
class ImportPreview:
    accepted: List[SaleEvent]
    duplicates: List[DuplicateConflict]
    errors: List[RowError]
    totals: ImportTotals

    @property
    def duplicate_events(self) -> List[SaleEvent]:
        return [conflict.event for conflict in self.duplicates]


@dataclass(frozen=True)
class CommitFailure:
    """A batch write that raised; earlier batches stay committed."""

    batch_index: int
    applied_before: int
    rows_in_batch: int
    message: str


@dataclass(frozen=True)
class CommitResult:
    applied: int
    total: int
    batches: int
    batches_applied: int
    affected_products: FrozenSet[ProductKey] = frozenset()
    failure: Optional[CommitFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class StockImportRow:
    row: int
    product: str
    category: str
    quantity: int
    date: datetime


@dataclass(frozen=True)
class StockImportPreview:
    rows: List[StockImportRow]
    errors: List[RowError]


@dataclass(frozen=True)
class StockUpdate:
    """Effect of one stock-import row on a product."""

    row: int
    product: Product
    old_stock: int
    new_stock: int
    added: int
    created: bool
    match_strategy: Optional[str] = None


@dataclass(frozen=True)
class StockImportResult:
    updated: List[StockUpdate]
    created: List[StockUpdate]
    applied: int
    total: int
    batches: int
    failure: Optional[CommitFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""

    if size < 1:
        raise ValueError("Batch size must be at least 1")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _is_blank(row: RawRow) -> bool:
    return all(value is None or str(value).strip() == "" for value in row.values())


def _collect_headers(rows: Sequence[RawRow]) -> List[str]:
    headers: List[str] = []
    for row in rows:
        for header in row:
            if header not in headers:
                headers.append(header)
    return headers


def _structure_error(columns: Mapping[ImportField, str], required: Sequence[ImportField]) -> Optional[RowError]:
    missing = [field.value for field in required if field not in columns]
    if not missing:
        return None
    return RowError(
        row=0,
        field="structure",
        message=f"Missing required columns: {', '.join(missing)}",
        value=missing,
    )


def _cell(row: RawRow, columns: Mapping[ImportField, str], field: ImportField) -> object:
    header = columns.get(field)
    return row.get(header) if header is not None else None


def _required_text(
    row: RawRow,
    columns: Mapping[ImportField, str],
    field: ImportField,
    row_number: int,
    errors: List[RowError],
) -> str:
    raw = _cell(row, columns, field)
    text = parse_text(raw)
    if not text:
        errors.append(RowError(row=row_number, field=field.value, message=f"{field.value} is required", value=raw))
    return text


def _required_date(
    row: RawRow,
    columns: Mapping[ImportField, str],
    row_number: int,
    errors: List[RowError],
) -> Optional[datetime]:
    raw = _cell(row, columns, ImportField.DATE)
    if parse_text(raw) == "":
        errors.append(RowError(row=row_number, field=ImportField.DATE.value, message="date is required", value=raw))
        return None
    parsed = parse_date(raw)
    if parsed is None:
        errors.append(
            RowError(
                row=row_number,
                field=ImportField.DATE.value,
                message="Invalid date (use DD/MM/YYYY, YYYY-MM-DD or an Excel date)",
                value=raw,
            )
        )
    return parsed


def _required_quantity(
    row: RawRow,
    columns: Mapping[ImportField, str],
    row_number: int,
    errors: List[RowError],
) -> Optional[int]:
    raw = _cell(row, columns, ImportField.QUANTITY)
    quantity = parse_quantity(raw)
    if quantity is None or quantity < 0:
        errors.append(
            RowError(
                row=row_number,
                field=ImportField.QUANTITY.value,
                message="quantity must be a whole number, zero or positive",
                value=raw,
            )
        )
        return None
    return quantity


def parse_sale_row(row: RawRow, columns: Mapping[ImportField, str], row_number: int) -> Tuple[Optional[SaleEvent], List[RowError]]:
    """Turn one raw row into a candidate :class:`SaleEvent`.

    Every field is checked so the operator sees all problems of a row at
    once. The unit price is derived from the total, which stays the
    authoritative amount.
    """

    errors: List[RowError] = []
    product = _required_text(row, columns, ImportField.PRODUCT, row_number, errors)
    category = _required_text(row, columns, ImportField.CATEGORY, row_number, errors)
    register = _required_text(row, columns, ImportField.REGISTER, row_number, errors)
    when = _required_date(row, columns, row_number, errors)
    seller = _required_text(row, columns, ImportField.SELLER, row_number, errors)
    quantity = _required_quantity(row, columns, row_number, errors)

    raw_total = _cell(row, columns, ImportField.TOTAL)
    total = parse_amount(raw_total)
    if total is None:
        errors.append(
            RowError(
                row=row_number,
                field=ImportField.TOTAL.value,
                message="amount must be a number (negative for refunds)",
                value=raw_total,
            )
        )

    if errors or when is None or quantity is None or total is None:
        return None, errors

    total = round_money(total)
    unit_price = round_money(total / quantity) if quantity else total
    return (
        SaleEvent(
            event_id=None,
            product=product,
            category=category,
            register=register,
            seller=seller,
            date=when,
            quantity=quantity,
            unit_price=unit_price,
            total=total,
        ),
        [],
    )


def summarize(events: Iterable[SaleEvent]) -> ImportTotals:
    by_product: Dict[str, Totals] = {}
    by_seller: Dict[str, Totals] = {}
    by_register: Dict[str, Totals] = {}
    overall = Totals()
    for event in events:
        by_product[event.product] = by_product.get(event.product, Totals()).add(event)
        by_seller[event.seller] = by_seller.get(event.seller, Totals()).add(event)
        by_register[event.register] = by_register.get(event.register, Totals()).add(event)
        overall = overall.add(event)
    return ImportTotals(by_product=by_product, by_seller=by_seller, by_register=by_register, overall=overall)


def preview(raw_rows: Sequence[RawRow], existing_events: Iterable[SaleEvent], *, start_row: int = 2) -> ImportPreview:
    """Classify raw rows as accepted, duplicate or erroneous.

    A row is a duplicate when its identity matches a persisted event or an
    earlier accepted row of the same batch; the first occurrence wins.

    Args:
        raw_rows (Sequence[Mapping[str, object]]): Header-keyed records in
            sheet order. Unrecognised columns are ignored and blank rows
            skipped.
        existing_events (Iterable[SaleEvent]): Events already in the ledger.
        start_row (int): Sheet row number of ``raw_rows[0]`` used in reports.

    Returns:
        ImportPreview: Nothing is written.
    """

    raw_rows = list(raw_rows)
    if not raw_rows:
        error = RowError(row=0, field="structure", message="No data rows found")
        return ImportPreview(accepted=[], duplicates=[], errors=[error], totals=ImportTotals())

    columns = map_columns(_collect_headers(raw_rows))
    structure = _structure_error(columns, SALE_REQUIRED_FIELDS)
    if structure is not None:
        log.warning("Import rejected: %s", structure.message)
        return ImportPreview(accepted=[], duplicates=[], errors=[structure], totals=ImportTotals())

    persisted: Dict[tuple, SaleEvent] = {}
    for event in existing_events:
        persisted.setdefault(event.identity(), event)

    accepted: List[SaleEvent] = []
    duplicates: List[DuplicateConflict] = []
    errors: List[RowError] = []
    seen_rows: Dict[tuple, int] = {}

    for offset, row in enumerate(raw_rows):
        row_number = start_row + offset
        if _is_blank(row):
            continue
        event, row_errors = parse_sale_row(row, columns, row_number)
        if event is None:
            errors.extend(row_errors)
            continue
        identity = event.identity()
        if identity in persisted:
            match = persisted[identity]
            duplicates.append(DuplicateConflict(row=row_number, event=event, within_batch=False, matched_reference=match.event_id))
            log.debug("Row %d duplicates persisted event %s", row_number, match.event_id)
        elif identity in seen_rows:
            first_row = seen_rows[identity]
            duplicates.append(DuplicateConflict(row=row_number, event=event, within_batch=True, matched_reference=f"row {first_row}"))
            log.debug("Row %d repeats row %d of the same import", row_number, first_row)
        else:
            seen_rows[identity] = row_number
            accepted.append(event)

    if errors:
        log.warning("Import preview found %d invalid row(s)", len(errors))
    log.info(
        "Import preview: %d row(s), %d accepted, %d duplicate(s) (%d within batch), %d error(s)",
        len(raw_rows),
        len(accepted),
        len(duplicates),
        sum(1 for conflict in duplicates if conflict.within_batch),
        len(errors),
    )
    return ImportPreview(accepted=accepted, duplicates=duplicates, errors=errors, totals=summarize(accepted))


def commit(
    accepted: Sequence[SaleEvent],
    store: LedgerStore,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    on_progress: Optional[ProgressCallback] = None,
) -> CommitResult:
    """Append ``accepted`` events to ``store`` in sequential bounded batches.

    Batches run one after another. The first batch whose write raises stops
    the sequence; earlier batches remain committed and the returned
    :class:`CommitResult` states exactly how many rows were applied. Nothing
    is retried and stock is not recomputed here.

    Raises:
        ValueError: If ``batch_size`` is smaller than 1.
    """

    accepted = list(accepted)
    batches = list(chunked(accepted, batch_size))
    applied = 0
    affected: set = set()
    for index, batch in enumerate(batches, start=1):
        try:
            store.append_events(batch)
        except Exception as exc:
            log.exception("Batch %d/%d failed after %d applied row(s)", index, len(batches), applied)
            failure = CommitFailure(
                batch_index=index,
                applied_before=applied,
                rows_in_batch=len(batch),
                message=str(exc) or type(exc).__name__,
            )
            return CommitResult(
                applied=applied,
                total=len(accepted),
                batches=len(batches),
                batches_applied=index - 1,
                affected_products=frozenset(affected),
                failure=failure,
            )
        applied += len(batch)
        affected.update(event.key for event in batch)
        log.info("Committed batch %d/%d (%d/%d rows)", index, len(batches), applied, len(accepted))
        if on_progress is not None:
            on_progress(applied, len(accepted))

    return CommitResult(
        applied=applied,
        total=len(accepted),
        batches=len(batches),
        batches_applied=len(batches),
        affected_products=frozenset(affected),
    )


def preview_stock_import(raw_rows: Sequence[RawRow], *, start_row: int = 2) -> StockImportPreview:
    """Parse ``Product, Category, Quantity, Date`` rows for the stock importer."""

    raw_rows = list(raw_rows)
    if not raw_rows:
        return StockImportPreview(rows=[], errors=[RowError(row=0, field="structure", message="No data rows found")])

    columns = map_columns(_collect_headers(raw_rows))
    structure = _structure_error(columns, STOCK_REQUIRED_FIELDS)
    if structure is not None:
        log.warning("Stock import rejected: %s", structure.message)
        return StockImportPreview(rows=[], errors=[structure])

    rows: List[StockImportRow] = []
    errors: List[RowError] = []
    for offset, row in enumerate(raw_rows):
        row_number = start_row + offset
        if _is_blank(row):
            continue
        row_errors: List[RowError] = []
        product = _required_text(row, columns, ImportField.PRODUCT, row_number, row_errors)
        category = _required_text(row, columns, ImportField.CATEGORY, row_number, row_errors)
        quantity = _required_quantity(row, columns, row_number, row_errors)
        when = _required_date(row, columns, row_number, row_errors)
        if row_errors or quantity is None or when is None:
            errors.extend(row_errors)
            continue
        rows.append(StockImportRow(row=row_number, product=product, category=category, quantity=quantity, date=when))

    log.info("Stock import preview: %d valid row(s), %d error(s)", len(rows), len(errors))
    return StockImportPreview(rows=rows, errors=errors)


def new_product_min_stock(quantity: int, default_min_stock: int = DEFAULT_MIN_STOCK) -> int:
    scaled = (Decimal(quantity) * NEW_PRODUCT_MIN_STOCK_RATIO).to_integral_value(rounding=ROUND_CEILING)
    return max(int(scaled), default_min_stock)


def _plan_stock_row(
    row: StockImportRow,
    catalog: List[Product],
    checkpoints: Dict[ProductKey, StockCheckpoint],
    grouped: Mapping[ProductKey, List[SaleEvent]],
    default_min_stock: int,
) -> Tuple[StockUpdate, StockCheckpoint]:
    match = find_matching_product(row.product, row.category, catalog)
    if match is None:
        checkpoint = StockCheckpoint(
            product=row.product,
            category=row.category,
            initial_quantity=row.quantity,
            effective_date=to_day(row.date),
            min_stock=new_product_min_stock(row.quantity, default_min_stock),
            configured=True,
        )
        events = grouped.get(checkpoint.key, [])
        base = Product(name=row.product, category=row.category, price=Decimal("0.00"))
        result = compute_stock(checkpoint, events, price=resolve_price(base, events))
        product = apply_result(base, checkpoint, result)
        catalog.append(product)
        return StockUpdate(row=row.row, product=product, old_stock=0, new_stock=product.stock, added=row.quantity, created=True), checkpoint

    existing = match.product
    key = existing.key
    events = grouped.get(key, [])
    current = checkpoints.get(key)
    if current is None and existing.configured:
        current = existing.checkpoint()
    if current is not None and current.configured:
        checkpoint = replace(current, initial_quantity=current.initial_quantity + row.quantity)
    else:
        # An estimate is not a stock count; the imported quantity becomes the baseline.
        checkpoint = StockCheckpoint(
            product=existing.name,
            category=existing.category,
            initial_quantity=row.quantity,
            effective_date=to_day(row.date),
            min_stock=existing.min_stock,
            configured=True,
        )
    result = compute_stock(checkpoint, events, price=resolve_price(existing, events))
    product = apply_result(existing, checkpoint, result)
    catalog[catalog.index(existing)] = product
    update = StockUpdate(
        row=row.row,
        product=product,
        old_stock=existing.stock,
        new_stock=product.stock,
        added=row.quantity,
        created=False,
        match_strategy=match.strategy,
    )
    return update, checkpoint


def _snapshot(
    store: LedgerStore,
    keys: Iterable[ProductKey],
) -> Dict[ProductKey, Tuple[Optional[StockCheckpoint], Optional[Product]]]:
    products = {product.key: product for product in store.list_products()}
    return {key: (store.get_checkpoint(key), products.get(key)) for key in keys}


def _restore(
    store: LedgerStore,
    snapshot: Mapping[ProductKey, Tuple[Optional[StockCheckpoint], Optional[Product]]],
) -> None:
    """Put back the checkpoints and products a failed batch may have overwritten."""

    for key, (checkpoint, product) in snapshot.items():
        if checkpoint is None:
            store.delete_checkpoint(key)
        else:
            store.put_checkpoint(key, checkpoint)
        if product is None:
            store.delete_product(key)
        else:
            store.put_product(product)
    log.warning("Rolled back %d product(s) of the failed stock import batch", len(snapshot))


def apply_stock_import(
    rows: Sequence[StockImportRow],
    products: Iterable[Product],
    events: Iterable[SaleEvent],
    store: LedgerStore,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    default_min_stock: int = DEFAULT_MIN_STOCK,
    on_progress: Optional[ProgressCallback] = None,
) -> StockImportResult:
    """Add imported quantities to the catalog in sequential bounded batches.

    A matched product with an operator checkpoint keeps its effective date
    and gains the quantity on its initial stock; a matched product that was
    only estimated receives a checkpoint built from the row; an unmatched
    row creates a product priced at zero. Rows of one import see the
    products created or updated by earlier rows.

    A failing batch stops the sequence like :func:`commit`. Its rows are
    planned before anything is written, and the checkpoints and products it
    had already written are restored from a snapshot, so the store holds
    exactly the batches counted in ``applied``.
    """

    rows = list(rows)
    catalog = list(products)
    grouped = group_events_by_product(events)
    checkpoints = {checkpoint.key: checkpoint for checkpoint in store.list_checkpoints()}
    updated: List[StockUpdate] = []
    created: List[StockUpdate] = []
    batches = list(chunked(rows, batch_size))
    applied = 0

    for index, batch in enumerate(batches, start=1):
        staged: List[Tuple[StockUpdate, StockCheckpoint]] = []
        snapshot: Optional[Dict[ProductKey, Tuple[Optional[StockCheckpoint], Optional[Product]]]] = None
        try:
            planned_checkpoints = dict(checkpoints)
            for row in batch:
                update, checkpoint = _plan_stock_row(row, catalog, planned_checkpoints, grouped, default_min_stock)
                planned_checkpoints[checkpoint.key] = checkpoint
                staged.append((update, checkpoint))
            snapshot = _snapshot(store, [checkpoint.key for _, checkpoint in staged])
            for update, checkpoint in staged:
                store.put_checkpoint(checkpoint.key, checkpoint)
                store.put_product(update.product)
        except Exception as exc:
            if snapshot is not None:
                _restore(store, snapshot)
            log.exception("Stock import batch %d/%d failed after %d applied row(s)", index, len(batches), applied)
            failure = CommitFailure(
                batch_index=index,
                applied_before=applied,
                rows_in_batch=len(batch),
                message=str(exc) or type(exc).__name__,
            )
            return StockImportResult(
                updated=updated,
                created=created,
                applied=applied,
                total=len(rows),
                batches=len(batches),
                failure=failure,
            )
        for update, _ in staged:
            (created if update.created else updated).append(update)
        checkpoints.update((checkpoint.key, checkpoint) for _, checkpoint in staged)
        applied += len(batch)
        log.info("Stock import batch %d/%d done (%d/%d rows)", index, len(batches), applied, len(rows))
        if on_progress is not None:
            on_progress(applied, len(rows))

    log.info(
        "Stock import finished: %d product(s) updated, %d created, %d unit(s) added",
        len(updated),
        len(created),
        sum(update.added for update in updated + created),
    )
    return StockImportResult(updated=updated, created=created, applied=applied, total=len(rows), batches=len(batches))
