"""Final stock calculation for a single product.

:func:`compute_stock` is a pure function of a checkpoint and the sale events
that belong to the product: the same inputs always yield the same
:class:`StockResult`. :class:`StockCache` is an optional memoisation layer on
top of it; correctness never depends on the cache.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import ROUND_CEILING, Decimal
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import ESTIMATE_FACTOR, ESTIMATE_FLOOR, StockStatus
from .models import Product, ProductKey, SaleEvent, StockCheckpoint, round_money


@dataclass(frozen=True)
class StockResult:
    """Outcome of :func:`compute_stock` for one product."""

    stock: int
    quantity_sold: int
    stock_value: Decimal
    last_sale: Optional[datetime]
    initial_quantity: int
    price: Decimal
    estimated: bool
    ignored_count: int = 0
    ignored_quantity: int = 0

    @property
    def has_inconsistent_stock(self) -> bool:
        """True when sales exist before the checkpoint's effective date."""

        return self.ignored_count > 0


@dataclass(frozen=True)
class StockSummary:
    """Aggregated figures across a catalog."""

    total_products: int
    total_stock: int
    total_sold: int
    total_value: Decimal
    out_of_stock: int
    low_stock: int
    inconsistent: int
    unconfigured: int


def estimate_initial_stock(total_sold: int) -> int:
    """Placeholder baseline for products without an operator checkpoint."""

    scaled = (Decimal(total_sold) * ESTIMATE_FACTOR).to_integral_value(rounding=ROUND_CEILING)
    return max(ESTIMATE_FLOOR, int(scaled))


def weighted_average_price(events: Iterable[SaleEvent]) -> Decimal:
    """Quantity-weighted average of the observed unit prices.

    Returns ``0`` when nothing was sold.
    """

    total_quantity = 0
    weighted = Decimal("0")
    for event in events:
        total_quantity += event.quantity
        weighted += event.unit_price * event.quantity
    if total_quantity <= 0:
        return Decimal("0.00")
    return round_money(weighted / total_quantity)


def events_for_product(product_key: ProductKey, events: Iterable[SaleEvent]) -> List[SaleEvent]:
    """Select the events whose normalised identity equals ``product_key``."""

    return [event for event in events if event.key == product_key]


def group_events_by_product(events: Iterable[SaleEvent]) -> Dict[ProductKey, List[SaleEvent]]:
    """Bucket events per product, keeping first-seen order of products."""

    groups: Dict[ProductKey, List[SaleEvent]] = {}
    for event in events:
        groups.setdefault(event.key, []).append(event)
    return groups


def compute_stock(
    checkpoint: Optional[StockCheckpoint],
    events: Iterable[SaleEvent],
    *,
    price: Optional[Decimal] = None,
) -> StockResult:
    """Derive current stock, quantity sold, valuation and last sale.

    Only events dated on or after the checkpoint's effective date deplete
    stock; both sides are compared at day granularity. ``last_sale`` looks at
    every event regardless of the effective date.

    When ``checkpoint`` is absent or not ``configured`` the baseline is
    :func:`estimate_initial_stock` of the total sold and every event counts.
    A configured checkpoint without an effective date also counts every
    event.

    Args:
        checkpoint (StockCheckpoint | None): Baseline for the product.
        events (Iterable[SaleEvent]): Every event matching the product.
        price (Decimal | None): Unit price used for valuation. Defaults to the
            weighted average of the events' unit prices.

    Returns:
        StockResult: Never raises; empty inputs produce zeros.
    """

    events = list(events)
    last_sale = max((event.date for event in events), default=None)
    unit_price = weighted_average_price(events) if price is None else Decimal(price)

    if checkpoint is None or not checkpoint.configured:
        total_sold = sum(event.quantity for event in events)
        initial = estimate_initial_stock(total_sold)
        stock = max(0, initial - total_sold)
        return StockResult(
            stock=stock,
            quantity_sold=total_sold,
            stock_value=round_money(stock * unit_price),
            last_sale=last_sale,
            initial_quantity=initial,
            price=unit_price,
            estimated=True,
        )

    counted, ignored = split_by_effective_date(events, checkpoint.effective_date)
    quantity_sold = sum(event.quantity for event in counted)
    stock = max(0, checkpoint.initial_quantity - quantity_sold)
    return StockResult(
        stock=stock,
        quantity_sold=quantity_sold,
        stock_value=round_money(stock * unit_price),
        last_sale=last_sale,
        initial_quantity=checkpoint.initial_quantity,
        price=unit_price,
        estimated=False,
        ignored_count=len(ignored),
        ignored_quantity=sum(event.quantity for event in ignored),
    )


def split_by_effective_date(
    events: Sequence[SaleEvent],
    effective_date: Optional[date],
) -> Tuple[List[SaleEvent], List[SaleEvent]]:
    """Partition events into (on/after, before) ``effective_date``."""

    if effective_date is None:
        return list(events), []
    counted: List[SaleEvent] = []
    ignored: List[SaleEvent] = []
    for event in events:
        (counted if event.day >= effective_date else ignored).append(event)
    return counted, ignored


def alert_status(result: StockResult, min_stock: int) -> StockStatus:
    """Classify a result for stock alerts.

    Estimated stock is never authoritative, so it maps to ``UNKNOWN``.
    """

    if result.estimated:
        return StockStatus.UNKNOWN
    if result.stock == 0:
        return StockStatus.OUT
    if result.stock <= min_stock:
        return StockStatus.LOW
    return StockStatus.OK


def aggregate_stock_stats(
    products: Sequence[Product],
    results: Mapping[ProductKey, StockResult],
) -> StockSummary:
    """Sum per-product results into catalog-wide figures.

    Products without an entry in ``results`` are counted but contribute no
    stock.
    """

    total_stock = 0
    total_sold = 0
    total_value = Decimal("0.00")
    out_of_stock = low_stock = inconsistent = unconfigured = 0
    for product in products:
        result = results.get(product.key)
        if result is None:
            continue
        total_stock += result.stock
        total_sold += result.quantity_sold
        total_value += result.stock_value
        status = alert_status(result, product.min_stock)
        if status is StockStatus.OUT:
            out_of_stock += 1
        elif status is StockStatus.LOW:
            low_stock += 1
        elif status is StockStatus.UNKNOWN:
            unconfigured += 1
        if result.has_inconsistent_stock:
            inconsistent += 1
    return StockSummary(
        total_products=len(products),
        total_stock=total_stock,
        total_sold=total_sold,
        total_value=round_money(total_value),
        out_of_stock=out_of_stock,
        low_stock=low_stock,
        inconsistent=inconsistent,
        unconfigured=unconfigured,
    )


class StockCache:
    """Explicit memo of :func:`compute_stock` results.

    Entries are keyed by ``(product_key, effective_date, digest)`` where the
    digest covers the event count, the event identities and the checkpoint's
    quantity and flag. Callers must still :meth:`invalidate` a product after
    writing its events or checkpoint; stale entries are otherwise only
    unreachable, not removed.
    """

    def __init__(self) -> None:
        self._entries: Dict[Tuple[ProductKey, Optional[date], Hashable], StockResult] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def digest(
        checkpoint: Optional[StockCheckpoint],
        events: Sequence[SaleEvent],
        price: Optional[Decimal],
    ) -> Hashable:
        baseline = None if checkpoint is None else (checkpoint.initial_quantity, checkpoint.configured)
        identities = tuple(sorted((event.event_id or "", event.identity()) for event in events))
        return (len(events), hash(identities), baseline, price)

    def get_or_compute(
        self,
        product_key: ProductKey,
        checkpoint: Optional[StockCheckpoint],
        events: Iterable[SaleEvent],
        *,
        price: Optional[Decimal] = None,
    ) -> StockResult:
        events = list(events)
        effective_date = checkpoint.effective_date if checkpoint is not None else None
        key = (product_key, effective_date, self.digest(checkpoint, events, price))
        cached = self._entries.get(key)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        result = compute_stock(checkpoint, events, price=price)
        self._entries[key] = result
        return result

    def invalidate(self, *product_keys: ProductKey) -> int:
        """Drop every entry for ``product_keys``; return how many went."""

        doomed = [key for key in self._entries if key[0] in product_keys]
        for key in doomed:
            del self._entries[key]
        if doomed:
            log.debug("Invalidated %d stock cache entries", len(doomed))
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()


def resolve_price(product: Product, events: Sequence[SaleEvent]) -> Decimal:
    """Observed weighted price, or the catalog price when nothing was sold."""

    if any(event.quantity > 0 for event in events):
        return weighted_average_price(events)
    return product.price


def apply_result(product: Product, checkpoint: Optional[StockCheckpoint], result: StockResult) -> Product:
    """Copy a :class:`StockResult` (and an operator checkpoint) onto a product."""

    configured = checkpoint is not None and checkpoint.configured
    return replace(
        product,
        price=result.price,
        initial_stock=result.initial_quantity,
        initial_stock_date=checkpoint.effective_date if configured else product.initial_stock_date,
        stock=result.stock,
        quantity_sold=result.quantity_sold,
        stock_value=result.stock_value,
        last_sale=result.last_sale,
        min_stock=checkpoint.min_stock if configured else product.min_stock,
        configured=configured,
    )
