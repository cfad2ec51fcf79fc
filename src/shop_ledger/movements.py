"""Reconstruct stock as an ordered sequence of signed movements.

Checkpoints and sale events are expanded into :class:`StockMovement`
records so stock can be queried at any day and compared against the cached
catalog figures. Movement order only matters for display: every total is a
plain sum and does not depend on how ties are ordered.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import DEFAULT_AUDIT_TOLERANCE, MovementType
from .models import DayLike, Product, ProductKey, SaleEvent, StockCheckpoint, start_of_day, to_day
from .stock_calculator import estimate_initial_stock, group_events_by_product, split_by_effective_date


@dataclass(frozen=True)
class StockMovement:
    """One signed quantity delta for a product."""

    product_key: ProductKey
    type: MovementType
    quantity: int
    date: datetime
    reference: Optional[str] = None
    description: str = ""
    sequence: int = 0


@dataclass(frozen=True)
class HistoricalStockState:
    """Stock of one product as it stood at the end of a given day."""

    product_key: ProductKey
    stock_at_date: int
    total_added: int
    total_sold: int
    last_movement_date: Optional[datetime]
    movements: Tuple[StockMovement, ...]


@dataclass(frozen=True)
class HistoricalSummary:
    total_products: int
    total_stock: int
    quantity_sold: int
    out_of_stock: int
    low_stock: int
    stock_by_category: Dict[str, int]
    sales_total: int
    initial_total: int
    adjustment_total: int


@dataclass(frozen=True)
class TimelinePoint:
    date: datetime
    stock: int
    movement: Optional[StockMovement] = None


@dataclass(frozen=True)
class ConsistencyIssue:
    """A product whose cached stock disagrees with its movements."""

    product_key: ProductKey
    product_name: str
    current_stock: int
    calculated_stock: int
    message: str


def _naive(moment: datetime) -> datetime:
    return moment.replace(tzinfo=None)


def _undated_baseline(events: Sequence[SaleEvent]) -> datetime:
    # Baselines without a date sit at the start of the first sale day so
    # that every sale falls after them.
    if not events:
        return datetime.min
    return start_of_day(min(_naive(event.date) for event in events))


def build_movements(
    checkpoints: Iterable[StockCheckpoint],
    events: Iterable[SaleEvent],
    *,
    include_estimates: bool = False,
) -> List[StockMovement]:
    """Expand checkpoints and events into movements sorted by date.

    Each configured checkpoint contributes an ``initial`` movement of
    ``+initial_quantity`` on its effective date. Sales recorded before that
    date are offset by one ``adjustment`` movement on the same date, because
    the checkpoint replaces whatever stock those sales had depleted. Every
    event contributes a ``sale`` movement of ``-quantity``.

    With ``include_estimates`` products that lack a configured checkpoint
    receive an ``initial`` movement carrying the estimated baseline, dated at
    the start of their first sale day.

    Ties on date keep insertion order: baselines, then adjustments, then
    sales in event order.
    """

    events = list(events)
    by_product = group_events_by_product(events)
    movements: List[StockMovement] = []

    def add(key: ProductKey, kind: MovementType, quantity: int, when: datetime, reference: Optional[str], description: str) -> None:
        movements.append(
            StockMovement(
                product_key=key,
                type=kind,
                quantity=quantity,
                date=when,
                reference=reference,
                description=description,
                sequence=len(movements),
            )
        )

    seen: set[ProductKey] = set()
    for checkpoint in checkpoints:
        key = checkpoint.key
        if key in seen:
            log.warning("Duplicate checkpoint for %s ignored during reconstruction", key.label())
            continue
        seen.add(key)
        product_events = by_product.get(key, [])
        if not checkpoint.configured:
            if include_estimates:
                sold = sum(event.quantity for event in product_events)
                add(key, MovementType.INITIAL, estimate_initial_stock(sold), _undated_baseline(product_events), None, "Estimated initial stock")
            continue
        if checkpoint.effective_date is None:
            add(key, MovementType.INITIAL, checkpoint.initial_quantity, _undated_baseline(product_events), None, "Initial stock")
            continue
        when = start_of_day(checkpoint.effective_date)
        add(key, MovementType.INITIAL, checkpoint.initial_quantity, when, None, "Initial stock")
        _, earlier = split_by_effective_date(product_events, checkpoint.effective_date)
        if earlier:
            absorbed = sum(event.quantity for event in earlier)
            add(key, MovementType.ADJUSTMENT, absorbed, when, None, f"{len(earlier)} sale(s) before the checkpoint absorbed")

    if include_estimates:
        for key, product_events in by_product.items():
            if key in seen:
                continue
            sold = sum(event.quantity for event in product_events)
            add(key, MovementType.INITIAL, estimate_initial_stock(sold), _undated_baseline(product_events), None, "Estimated initial stock")

    for event in events:
        add(
            event.key,
            MovementType.SALE,
            -event.quantity,
            event.date,
            event.event_id,
            f"Sale - {event.seller} ({event.register})",
        )

    movements.sort(key=lambda movement: (_naive(movement.date), movement.sequence))
    return movements


def stock_as_of(product_key: ProductKey, movements: Iterable[StockMovement], target_date: DayLike) -> int:
    """Sum a product's movements up to the end of ``target_date``, floored at 0."""

    cutoff = to_day(target_date)
    total = sum(
        movement.quantity
        for movement in movements
        if movement.product_key == product_key and to_day(movement.date) <= cutoff
    )
    return max(0, total)


def historical_stock(
    product_keys: Iterable[ProductKey],
    movements: Sequence[StockMovement],
    target_date: DayLike,
) -> List[HistoricalStockState]:
    """Rebuild every requested product's state at the end of ``target_date``."""

    cutoff = to_day(target_date)
    states: List[HistoricalStockState] = []
    for key in product_keys:
        relevant = tuple(m for m in movements if m.product_key == key and to_day(m.date) <= cutoff)
        added = sum(m.quantity for m in relevant if m.quantity > 0)
        sold = sum(-m.quantity for m in relevant if m.quantity < 0)
        last = max((m.date for m in relevant), key=_naive, default=None)
        states.append(
            HistoricalStockState(
                product_key=key,
                stock_at_date=max(0, added - sold),
                total_added=added,
                total_sold=sold,
                last_movement_date=last,
                movements=relevant,
            )
        )
    return states


def summarize_history(
    states: Sequence[HistoricalStockState],
    min_stock: Mapping[ProductKey, int],
    start: Optional[DayLike] = None,
    end: Optional[DayLike] = None,
) -> HistoricalSummary:
    """Summarise historical states, optionally restricting movement totals to a period."""

    stock_by_category: Dict[str, int] = {}
    sales_total = initial_total = adjustment_total = 0
    for state in states:
        category = state.product_key.category
        stock_by_category[category] = stock_by_category.get(category, 0) + state.stock_at_date
        window = state.movements
        if start is not None and end is not None:
            window = tuple(movements_in_period(state.movements, start, end))
        for movement in window:
            if movement.type is MovementType.SALE:
                sales_total += -movement.quantity
            elif movement.type is MovementType.INITIAL:
                initial_total += movement.quantity
            else:
                adjustment_total += movement.quantity

    return HistoricalSummary(
        total_products=len(states),
        total_stock=sum(state.stock_at_date for state in states),
        quantity_sold=sales_total,
        out_of_stock=sum(1 for state in states if state.stock_at_date == 0),
        low_stock=sum(
            1
            for state in states
            if 0 < state.stock_at_date <= min_stock.get(state.product_key, 0)
        ),
        stock_by_category=stock_by_category,
        sales_total=sales_total,
        initial_total=initial_total,
        adjustment_total=adjustment_total,
    )


def movements_in_period(movements: Iterable[StockMovement], start: DayLike, end: DayLike) -> List[StockMovement]:
    """Movements dated within ``[start, end]`` (whole days), newest first."""

    first, last = to_day(start), to_day(end)
    selected = [m for m in movements if first <= to_day(m.date) <= last]
    selected.sort(key=lambda movement: (_naive(movement.date), movement.sequence), reverse=True)
    return selected


def product_timeline(
    product_key: ProductKey,
    movements: Iterable[StockMovement],
    start: DayLike,
    end: DayLike,
) -> List[TimelinePoint]:
    """Running stock of one product across ``[start, end]``.

    The first point carries the stock at the start of ``start``; each
    following point is one movement. Displayed values are floored at 0 while
    the running sum itself is kept exact.
    """

    first, last = to_day(start), to_day(end)
    ordered = sorted(
        (m for m in movements if m.product_key == product_key),
        key=lambda movement: (_naive(movement.date), movement.sequence),
    )
    running = sum(m.quantity for m in ordered if to_day(m.date) < first)
    timeline = [TimelinePoint(date=start_of_day(first), stock=max(0, running))]
    for movement in ordered:
        if first <= to_day(movement.date) <= last:
            running += movement.quantity
            timeline.append(TimelinePoint(date=movement.date, stock=max(0, running), movement=movement))
    return timeline


def audit_consistency(
    products: Iterable[Product],
    movements: Sequence[StockMovement],
    today: DayLike,
    *,
    tolerance: Decimal = DEFAULT_AUDIT_TOLERANCE,
) -> List[ConsistencyIssue]:
    """Compare each product's cached stock with its reconstructed stock.

    Mismatches beyond ``tolerance`` are logged as warnings and returned; the
    ledger itself is never modified.
    """

    issues: List[ConsistencyIssue] = []
    for product in products:
        calculated = stock_as_of(product.key, movements, today)
        if abs(Decimal(calculated) - Decimal(product.stock)) > tolerance:
            issue = ConsistencyIssue(
                product_key=product.key,
                product_name=product.name,
                current_stock=product.stock,
                calculated_stock=calculated,
                message="Cached stock does not match the reconstructed movements",
            )
            log.warning(
                "Stock mismatch for %s: cached=%s reconstructed=%s",
                product.key.label(),
                product.stock,
                calculated,
            )
            issues.append(issue)
    return issues
