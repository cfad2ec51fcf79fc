"""Immutable domain records shared by the ledger engines.

Every record here is a frozen dataclass; changes go through
:func:`dataclasses.replace`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple, Optional, Tuple, Union


CENT = Decimal("0.01")

DayLike = Union[date, datetime]


def normalize_text(value: object) -> str:
    """Lower-case ``value`` and collapse runs of whitespace."""

    return " ".join(str(value or "").split()).lower()


def round_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents using commercial rounding."""

    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_day(value: DayLike) -> date:
    """Truncate a ``date`` or ``datetime`` to its calendar day."""

    if isinstance(value, datetime):
        return value.date()
    return value


def start_of_day(value: DayLike) -> datetime:
    """Return midnight (naive) of the day ``value`` falls on."""

    return datetime.combine(to_day(value), time.min)


class ProductKey(NamedTuple):
    """Case and whitespace insensitive product identity (name, category)."""

    name: str
    category: str

    @classmethod
    def of(cls, name: object, category: object) -> "ProductKey":
        return cls(normalize_text(name), normalize_text(category))

    def label(self) -> str:
        return f"{self.name} ({self.category})"


@dataclass(frozen=True)
class SaleEvent:
    """One recorded register transaction. Never mutated once stored."""

    event_id: Optional[str]
    product: str
    category: str
    register: str
    seller: str
    date: datetime
    quantity: int
    unit_price: Decimal
    total: Decimal

    @property
    def key(self) -> ProductKey:
        return ProductKey.of(self.product, self.category)

    @property
    def day(self) -> date:
        return to_day(self.date)

    def identity(self) -> Tuple[str, str, str, str, str, int, Decimal]:
        """Return the seven-field key used to spot duplicate transactions.

        ``unit_price`` and ``event_id`` are not part of it.
        """

        return (
            normalize_text(self.product),
            normalize_text(self.category),
            normalize_text(self.register),
            self.day.isoformat(),
            normalize_text(self.seller),
            int(self.quantity),
            round_money(self.total),
        )


@dataclass(frozen=True)
class StockCheckpoint:
    """Operator declared (or estimated) stock baseline for one product."""

    product: str
    category: str
    initial_quantity: int
    effective_date: Optional[date]
    min_stock: int = 0
    configured: bool = True

    @property
    def key(self) -> ProductKey:
        return ProductKey.of(self.product, self.category)


@dataclass(frozen=True)
class Product:
    """Display entity derived from checkpoints and the sale history."""

    name: str
    category: str
    price: Decimal = Decimal("0")
    initial_stock: int = 0
    initial_stock_date: Optional[date] = None
    stock: int = 0
    quantity_sold: int = 0
    stock_value: Decimal = Decimal("0.00")
    last_sale: Optional[datetime] = None
    min_stock: int = 0
    configured: bool = False

    @property
    def key(self) -> ProductKey:
        return ProductKey.of(self.name, self.category)

    def checkpoint(self) -> StockCheckpoint:
        """Project the product's stock configuration into a checkpoint."""

        return StockCheckpoint(
            product=self.name,
            category=self.category,
            initial_quantity=self.initial_stock,
            effective_date=self.initial_stock_date,
            min_stock=self.min_stock,
            configured=self.configured,
        )


@dataclass(frozen=True)
class RowError:
    """A raw import row that failed parsing or validation."""

    row: int
    field: str
    message: str
    value: object = None


__all__ = [
    "CENT",
    "DayLike",
    "normalize_text",
    "round_money",
    "to_day",
    "start_of_day",
    "ProductKey",
    "SaleEvent",
    "StockCheckpoint",
    "Product",
    "RowError",
]
