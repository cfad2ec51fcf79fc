"""Keep the derived ``Products`` catalog aligned with the sale history."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional

from . import log
from .constants import DEFAULT_MIN_STOCK
from .models import Product, ProductKey, SaleEvent
from .stock_calculator import StockCache, apply_result, compute_stock, group_events_by_product, resolve_price


@dataclass(frozen=True)
class SyncResult:
    updated: List[Product] = field(default_factory=list)
    created: List[Product] = field(default_factory=list)
    unchanged: List[Product] = field(default_factory=list)

    @property
    def changed(self) -> List[Product]:
        return self.updated + self.created


def _sync_configured(product: Product, events: List[SaleEvent], cache: Optional[StockCache]) -> Product:
    checkpoint = product.checkpoint()
    if cache is not None:
        result = cache.get_or_compute(product.key, checkpoint, events, price=product.price)
    else:
        result = compute_stock(checkpoint, events, price=product.price)
    return replace(product, quantity_sold=result.quantity_sold, last_sale=result.last_sale)


def _sync_estimated(product: Product, events: List[SaleEvent], cache: Optional[StockCache]) -> Product:
    price = resolve_price(product, events)
    if cache is not None:
        result = cache.get_or_compute(product.key, None, events, price=price)
    else:
        result = compute_stock(None, events, price=price)
    return apply_result(product, None, result)


def sync_products(
    events: Iterable[SaleEvent],
    existing_products: Iterable[Product],
    *,
    default_min_stock: int = DEFAULT_MIN_STOCK,
    cache: Optional[StockCache] = None,
) -> SyncResult:
    """Derive product records from the event history.

    Products whose checkpoint was set by an operator only receive a fresh
    ``quantity_sold`` (counted from their effective date) and ``last_sale``;
    their stock, initial stock, price and minimum are left alone. Products
    that are unconfigured, or that appear in the events for the first time,
    get the estimated stock fields and stay ``configured=False``.

    Existing products without any events are reported as unchanged.

    Running the function again on its own output with the same events
    yields no updates.
    """

    grouped = group_events_by_product(events)
    existing: Dict[ProductKey, Product] = {}
    for product in existing_products:
        existing.setdefault(product.key, product)

    result = SyncResult()
    for key, product_events in grouped.items():
        current = existing.get(key)
        if current is None:
            first = product_events[0]
            seed = Product(name=first.product, category=first.category, min_stock=default_min_stock)
            synced = _sync_estimated(seed, product_events, cache)
            result.created.append(synced)
            log.debug("Sync created product %s", key.label())
            continue

        if current.configured:
            synced = _sync_configured(current, product_events, cache)
        else:
            synced = _sync_estimated(current, product_events, cache)

        if synced == existing[key]:
            result.unchanged.append(synced)
        else:
            result.updated.append(synced)

    for key, product in existing.items():
        if key not in grouped:
            result.unchanged.append(product)

    log.info(
        "Product sync: %d updated, %d created, %d unchanged",
        len(result.updated),
        len(result.created),
        len(result.unchanged),
    )
    return result


__all__ = ["SyncResult", "sync_products"]
