"""Business logic layer for the shop ledger.

This module orchestrates the reconciliation engines over a
:class:`RuntimeContext`. It consumes the Data Access Layer (DAL) for all I/O
and never writes stock figures that did not come out of the Final Stock
Calculator. Every public helper either returns a structured result or raises
one of the domain exceptions declared below.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, StockStatus
from .import_reconciliation import (
    CommitResult,
    ImportPreview,
    StockImportPreview,
    StockImportResult,
    apply_stock_import,
    commit,
    preview,
    preview_stock_import,
)
from .models import Product, ProductKey, SaleEvent, StockCheckpoint, to_day
from .movements import (
    ConsistencyIssue,
    HistoricalStockState,
    HistoricalSummary,
    StockMovement,
    TimelinePoint,
    audit_consistency,
    build_movements,
    historical_stock,
    movements_in_period,
    product_timeline,
    summarize_history,
)
from .product_sync import SyncResult, sync_products
from .stock_calculator import (
    StockCache,
    StockResult,
    StockSummary,
    aggregate_stock_stats,
    alert_status,
    apply_result,
    resolve_price,
)
from .validation import CheckpointDraft, CheckpointWarning, has_blocking_errors, validate_checkpoint


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product is unknown to the ledger."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the ledger store and caches used by the BLL.

    ``workbook`` is ``None`` when the store is not workbook backed (for
    example an in-memory store in tests); :func:`persist_context` then has
    nothing to save.
    """

    settings: data_manager.ConfigSettings
    store: data_manager.LedgerStore
    workbook: Optional[Workbook] = None
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    stock_cache: StockCache = field(default_factory=StockCache, repr=False, compare=False)


@dataclass(frozen=True)
class CheckpointSaveResult:
    """Outcome of :func:`save_checkpoint`.

    ``saved`` is ``False`` only when ``warnings`` holds an ``error``.
    """

    saved: bool
    warnings: List[CheckpointWarning]
    checkpoint: Optional[StockCheckpoint] = None
    product: Optional[Product] = None


@dataclass(frozen=True)
class SalesImportOutcome:
    """Preview, commit and recomputation of one sale-event import."""

    preview: ImportPreview
    commit: Optional[CommitResult]
    recomputed: List[Product] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.commit is None or self.commit.ok


@dataclass(frozen=True)
class StockImportOutcome:
    preview: StockImportPreview
    result: Optional[StockImportResult]

    @property
    def ok(self) -> bool:
        return self.result is None or self.result.ok


@dataclass(frozen=True)
class StockLine:
    product: Product
    result: StockResult
    status: StockStatus


@dataclass(frozen=True)
class StockReport:
    lines: List[StockLine]
    summary: StockSummary


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business logic layer keeps in-memory caches keyed by domain area
    (events, checkpoints, products, movements). Buckets are plain
    dictionaries holding lists read from the store and lookups derived from
    them.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping for ``name``.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after the store changed.

    Missing buckets are ignored, so callers may name every bucket a write
    could have touched.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_events_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "events")
    if "all" not in bucket:
        all_events = context.store.list_events()
        by_product: Dict[ProductKey, List[SaleEvent]] = {}
        for event in all_events:
            by_product.setdefault(event.key, []).append(event)
        bucket["all"] = all_events
        bucket["by_product"] = by_product
        log.debug("Populated events cache with %d entries", len(all_events))
    return bucket


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = context.store.list_products()
        bucket["all"] = all_products
        bucket["by_key"] = {product.key: product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _ensure_checkpoints_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Index operator checkpoints by product key.

    Configured products whose checkpoint row is missing fall back to the
    configuration carried on the product record itself.
    """

    bucket = _get_cache_bucket(context, "checkpoints")
    if "by_key" not in bucket:
        by_key: Dict[ProductKey, StockCheckpoint] = {}
        for checkpoint in context.store.list_checkpoints():
            by_key.setdefault(checkpoint.key, checkpoint)
        for product in _ensure_products_cache(context)["all"]:
            if product.configured and product.key not in by_key:
                by_key[product.key] = product.checkpoint()
        bucket["by_key"] = by_key
        log.debug("Populated checkpoints cache with %d entries", len(by_key))
    return bucket


def _after_write(context: RuntimeContext, keys: Iterable[ProductKey]) -> None:
    _invalidate_cache(context, "events", "products", "checkpoints", "movements")
    keys = tuple(keys)
    if keys:
        context.stock_cache.invalidate(*keys)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper resolves ``config.ini``, parses settings, and opens the Excel
    workbook holding the ledger. The resulting :class:`RuntimeContext`
    bundles the immutable settings, a :class:`WorkbookLedgerStore` over the
    workbook, and empty caches.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or sheets are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        store=data_manager.WorkbookLedgerStore(workbook),
        workbook=workbook,
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Args:
        context (RuntimeContext): Runtime context containing the resolved
            settings.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Contexts without a workbook (non-workbook stores) are left untouched.
    """
    if context.workbook is None:
        log.debug("Context has no workbook; nothing to persist")
        return
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, a new
            store and empty caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        store=data_manager.WorkbookLedgerStore(workbook),
        workbook=workbook,
    )


def list_events(context: RuntimeContext, product_key: Optional[ProductKey] = None) -> List[SaleEvent]:
    """Return cached sale events, optionally restricted to one product."""

    bucket = _ensure_events_cache(context)
    if product_key is None:
        return list(bucket["all"])
    return list(bucket["by_product"].get(product_key, []))


def list_products(context: RuntimeContext) -> List[Product]:
    return list(_ensure_products_cache(context)["all"])


def list_checkpoints(context: RuntimeContext) -> Dict[ProductKey, StockCheckpoint]:
    return dict(_ensure_checkpoints_cache(context)["by_key"])


def get_product(context: RuntimeContext, product_key: ProductKey) -> Product:
    """Fetch a product by its normalised key.

    Raises:
        MissingReferenceError: If the catalog has no such product.
    """

    product = _ensure_products_cache(context)["by_key"].get(product_key)
    if product is None:
        log.error("Product '%s' not found", product_key.label())
        raise MissingReferenceError(f"Unknown product: {product_key.label()}")
    return product


def resolve_product_key(context: RuntimeContext, name: str, category: str) -> ProductKey:
    """Normalise a user-typed pair and make sure the ledger knows it.

    A product known only through its sale events is accepted.

    Raises:
        MissingReferenceError: If neither the catalog nor the events mention it.
    """

    key = ProductKey.of(name, category)
    if key in _ensure_products_cache(context)["by_key"] or key in _ensure_events_cache(context)["by_product"]:
        return key
    log.error("Product '%s' not found", key.label())
    raise MissingReferenceError(f"Unknown product: {key.label()}")


def compute_product_stock(context: RuntimeContext, product_key: ProductKey) -> StockResult:
    """Run the Final Stock Calculator for one product through the stock cache."""

    checkpoint = _ensure_checkpoints_cache(context)["by_key"].get(product_key)
    events = list_events(context, product_key)
    existing = _ensure_products_cache(context)["by_key"].get(product_key)
    base = existing or Product(name=product_key.name, category=product_key.category)
    return context.stock_cache.get_or_compute(
        product_key,
        checkpoint,
        events,
        price=resolve_price(base, events),
    )


def _recompute_one(context: RuntimeContext, product_key: ProductKey) -> Product:
    checkpoint = _ensure_checkpoints_cache(context)["by_key"].get(product_key)
    events = list_events(context, product_key)
    existing = _ensure_products_cache(context)["by_key"].get(product_key)
    if existing is None:
        source = events[0] if events else None
        existing = Product(
            name=source.product if source else (checkpoint.product if checkpoint else product_key.name),
            category=source.category if source else (checkpoint.category if checkpoint else product_key.category),
            min_stock=context.settings.default_min_stock,
        )
    result = context.stock_cache.get_or_compute(
        product_key,
        checkpoint,
        events,
        price=resolve_price(existing, events),
    )
    return apply_result(existing, checkpoint, result)


def recompute_products(
    context: RuntimeContext,
    product_keys: Optional[Iterable[ProductKey]] = None,
) -> List[Product]:
    """Recalculate and store the derived fields of products.

    Args:
        context (RuntimeContext): Active runtime context.
        product_keys (Iterable[ProductKey] | None): Products to refresh. When
            omitted every product known to the catalog, the checkpoints or
            the events is refreshed.

    Returns:
        list[Product]: Products whose stored record changed.
    """

    if product_keys is None:
        keys: set = set(_ensure_products_cache(context)["by_key"])
        keys.update(_ensure_checkpoints_cache(context)["by_key"])
        keys.update(_ensure_events_cache(context)["by_product"])
        product_keys = sorted(keys)
    product_keys = list(product_keys)

    current = _ensure_products_cache(context)["by_key"]
    changed: List[Product] = []
    for key in product_keys:
        product = _recompute_one(context, key)
        if current.get(key) != product:
            changed.append(product)

    for product in changed:
        context.store.put_product(product)
    if changed:
        _invalidate_cache(context, "products", "checkpoints", "movements")
    log.info("Recomputed %d product(s), %d changed", len(product_keys), len(changed))
    return changed


def save_checkpoint(
    context: RuntimeContext,
    candidate: Union[StockCheckpoint, CheckpointDraft],
    *,
    today: Optional[date] = None,
) -> CheckpointSaveResult:
    """Validate and store an operator checkpoint, then refresh its product.

    The Validation Generator runs first. Any ``error`` rejects the save and
    nothing is written; warnings and infos are returned alongside a
    successful save so the operator can review them.

    Args:
        context (RuntimeContext): Active runtime context.
        candidate (StockCheckpoint | CheckpointDraft): Parsed checkpoint or
            raw operator input.
        today (date | None): Reference day for the future-date warning.

    Returns:
        CheckpointSaveResult: The stored checkpoint and refreshed product
            when saved.
    """

    ensure_schema_version(context)
    if isinstance(candidate, CheckpointDraft):
        key = ProductKey.of(candidate.product, candidate.category)
    else:
        key = candidate.key
    events = list_events(context, key)
    warnings = validate_checkpoint(candidate, events, today=today)
    if has_blocking_errors(warnings):
        log.error("Checkpoint for %s not saved: %d error(s)", key.label(), sum(1 for w in warnings if w.blocking))
        return CheckpointSaveResult(saved=False, warnings=warnings)

    checkpoint = candidate.to_checkpoint() if isinstance(candidate, CheckpointDraft) else candidate
    existing = _ensure_products_cache(context)["by_key"].get(key)
    if existing is not None:
        # Keep the catalog spelling so the checkpoint row and product row share a key.
        checkpoint = replace(checkpoint, product=existing.name, category=existing.category)
    checkpoint = replace(checkpoint, configured=True)
    context.store.put_checkpoint(key, checkpoint)
    _after_write(context, [key])
    product = _recompute_one(context, key)
    context.store.put_product(product)
    _after_write(context, [key])
    log.info(
        "Saved checkpoint for %s: %d unit(s) from %s",
        key.label(),
        checkpoint.initial_quantity,
        checkpoint.effective_date,
    )
    return CheckpointSaveResult(saved=True, warnings=warnings, checkpoint=checkpoint, product=product)


def preview_sales(context: RuntimeContext, raw_rows: Sequence[Mapping[str, object]]) -> ImportPreview:
    """Classify raw sale rows against the persisted ledger without writing."""

    return preview(raw_rows, list_events(context))


def import_sales(
    context: RuntimeContext,
    raw_rows: Sequence[Mapping[str, object]],
    *,
    on_progress: Optional[Callable[[int, int], None]] = None,
    dry_run: bool = False,
) -> SalesImportOutcome:
    """Preview, commit and recompute a batch of raw sale rows.

    Row errors and duplicates never stop the import; accepted rows are
    committed in batches of ``settings.batch_size``. Stock is recomputed only
    for the products touched by the batches that landed, after the batch
    sequence finishes, so the calculator reads a consistent snapshot.

    Args:
        context (RuntimeContext): Active runtime context.
        raw_rows (Sequence[Mapping[str, object]]): Header-keyed rows.
        on_progress (Callable[[int, int], None] | None): Called with
            ``(applied, total)`` after each batch.
        dry_run (bool): Stop after the preview.

    Returns:
        SalesImportOutcome: ``commit`` is ``None`` for dry runs and for
            previews without accepted rows.
    """

    ensure_schema_version(context)
    result = preview_sales(context, raw_rows)
    if dry_run or not result.accepted:
        return SalesImportOutcome(preview=result, commit=None)

    committed = commit(
        result.accepted,
        context.store,
        batch_size=context.settings.batch_size,
        on_progress=on_progress,
    )
    _after_write(context, committed.affected_products)
    recomputed = recompute_products(context, sorted(committed.affected_products))
    if not committed.ok:
        log.error(
            "Sale import stopped at batch %d: %d of %d row(s) applied",
            committed.failure.batch_index,
            committed.applied,
            committed.total,
        )
    return SalesImportOutcome(preview=result, commit=committed, recomputed=recomputed)


def import_stock(
    context: RuntimeContext,
    raw_rows: Sequence[Mapping[str, object]],
    *,
    on_progress: Optional[Callable[[int, int], None]] = None,
    dry_run: bool = False,
) -> StockImportOutcome:
    """Add quantities from a stock sheet to the catalog."""

    ensure_schema_version(context)
    parsed = preview_stock_import(raw_rows)
    if dry_run or not parsed.rows:
        return StockImportOutcome(preview=parsed, result=None)

    result = apply_stock_import(
        parsed.rows,
        list_products(context),
        list_events(context),
        context.store,
        batch_size=context.settings.batch_size,
        default_min_stock=context.settings.default_min_stock,
        on_progress=on_progress,
    )
    _after_write(context, [update.product.key for update in result.updated + result.created])
    return StockImportOutcome(preview=parsed, result=result)


def sync_catalog(context: RuntimeContext) -> SyncResult:
    """Run Product Auto-Sync over the whole ledger and store the changes."""

    ensure_schema_version(context)
    result = sync_products(
        list_events(context),
        list_products(context),
        default_min_stock=context.settings.default_min_stock,
        cache=context.stock_cache,
    )
    for product in result.changed:
        context.store.put_product(product)
    if result.changed:
        _invalidate_cache(context, "products", "checkpoints", "movements")
    return result


def stock_report(context: RuntimeContext) -> StockReport:
    """Current stock, alert status and catalog-wide figures."""

    products = list_products(context)
    results = {product.key: compute_product_stock(context, product.key) for product in products}
    lines = [
        StockLine(product=product, result=results[product.key], status=alert_status(results[product.key], product.min_stock))
        for product in products
    ]
    return StockReport(lines=lines, summary=aggregate_stock_stats(products, results))


def movements_for(context: RuntimeContext, *, include_estimates: bool = False) -> List[StockMovement]:
    """Reconstructed movements of the whole ledger, cached per estimate mode."""

    bucket = _get_cache_bucket(context, "movements")
    if include_estimates not in bucket:
        checkpoints = _ensure_checkpoints_cache(context)["by_key"].values()
        bucket[include_estimates] = build_movements(
            checkpoints,
            list_events(context),
            include_estimates=include_estimates,
        )
        log.debug("Reconstructed %d movement(s)", len(bucket[include_estimates]))
    return list(bucket[include_estimates])


def period_movements(context: RuntimeContext, start: date, end: date) -> List[StockMovement]:
    return movements_in_period(movements_for(context), start, end)


def timeline(context: RuntimeContext, product_key: ProductKey, start: date, end: date) -> List[TimelinePoint]:
    resolve_product_key(context, product_key.name, product_key.category)
    return product_timeline(product_key, movements_for(context), start, end)


def history(
    context: RuntimeContext,
    target_date: date,
    *,
    period: Optional[Tuple[date, date]] = None,
) -> Tuple[List[HistoricalStockState], HistoricalSummary]:
    """Stock of every catalog product as it stood at the end of ``target_date``."""

    products = list_products(context)
    states = historical_stock([product.key for product in products], movements_for(context), target_date)
    minimums = {product.key: product.min_stock for product in products}
    start, end = period if period is not None else (None, None)
    return states, summarize_history(states, minimums, start, end)


def audit(context: RuntimeContext, *, today: Optional[Union[date, datetime]] = None) -> List[ConsistencyIssue]:
    """Compare stored product stock with the reconstructed movements.

    Estimated baselines take part in the reconstruction so unconfigured
    products are checked too. Mismatches are logged and returned; nothing is
    corrected automatically.
    """

    issues = audit_consistency(
        list_products(context),
        movements_for(context, include_estimates=True),
        to_day(today or datetime.now()),
        tolerance=context.settings.audit_tolerance,
    )
    log.info("Consistency audit finished with %d issue(s)", len(issues))
    return issues
