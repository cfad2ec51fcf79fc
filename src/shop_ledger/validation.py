"""Advisory checks run before an operator checkpoint is saved.

Only ``error`` severities block the save; ``warning`` and ``info`` entries
are shown to the operator and the checkpoint is stored regardless.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional, Union

from . import log
from .constants import Severity
from .models import SaleEvent, StockCheckpoint, to_day
from .parsing import parse_date, parse_quantity, parse_text
from .stock_calculator import split_by_effective_date


@dataclass(frozen=True)
class CheckpointWarning:
    severity: Severity
    code: str
    message: str

    @property
    def blocking(self) -> bool:
        return self.severity is Severity.ERROR


@dataclass(frozen=True)
class CheckpointDraft:
    """Checkpoint fields as typed by the operator, before parsing."""

    product: str
    category: str
    initial_quantity: object
    effective_date: object
    min_stock: object = 0

    def parsed_date(self) -> Optional[date]:
        parsed = parse_date(self.effective_date)
        return to_day(parsed) if parsed is not None else None

    def to_checkpoint(self) -> StockCheckpoint:
        """Build the checkpoint; only call after validation found no error.

        Raises:
            ValueError: If a numeric field or the date cannot be parsed.
        """

        quantity = parse_quantity(self.initial_quantity)
        min_stock = parse_quantity(self.min_stock) if parse_text(self.min_stock) else 0
        effective = self.parsed_date()
        if quantity is None or quantity < 0 or min_stock is None or min_stock < 0 or effective is None:
            raise ValueError(f"Checkpoint for '{self.product}' has unparsable fields")
        return StockCheckpoint(
            product=parse_text(self.product),
            category=parse_text(self.category),
            initial_quantity=quantity,
            effective_date=effective,
            min_stock=min_stock,
            configured=True,
        )


def _error(code: str, message: str) -> CheckpointWarning:
    return CheckpointWarning(Severity.ERROR, code, message)


def _draft_errors(draft: CheckpointDraft) -> List[CheckpointWarning]:
    errors: List[CheckpointWarning] = []
    if not parse_text(draft.product) or not parse_text(draft.category):
        errors.append(_error("missing-product", "Product name and category are required"))
    if parse_text(draft.effective_date) == "":
        errors.append(_error("missing-date", "The effective date is required"))
    elif draft.parsed_date() is None:
        errors.append(_error("invalid-date", f"Unrecognised effective date: {draft.effective_date!r}"))
    quantity = parse_quantity(draft.initial_quantity)
    if quantity is None or quantity < 0:
        errors.append(_error("invalid-quantity", "Initial quantity must be a whole number, zero or more"))
    if parse_text(draft.min_stock):
        min_stock = parse_quantity(draft.min_stock)
        if min_stock is None or min_stock < 0:
            errors.append(_error("invalid-min-stock", "Minimum stock must be a whole number, zero or more"))
    return errors


def validate_checkpoint(
    candidate: Union[StockCheckpoint, CheckpointDraft],
    events: Iterable[SaleEvent],
    *,
    today: Optional[date] = None,
) -> List[CheckpointWarning]:
    """List the problems with a proposed checkpoint.

    Args:
        candidate: A parsed checkpoint or the operator's raw draft.
        events: Sale events recorded for the product.
        today: Reference day for the "future date" check. Defaults to the
            current day.

    Returns:
        list[CheckpointWarning]: Errors first, then warnings, then infos.
        Empty when nothing is worth mentioning.
    """

    if isinstance(candidate, CheckpointDraft):
        errors = _draft_errors(candidate)
        if errors:
            log.warning("Checkpoint for %s rejected: %s", candidate.product, "; ".join(e.message for e in errors))
            return errors
        candidate = candidate.to_checkpoint()

    if candidate.effective_date is None:
        return [_error("missing-date", "The effective date is required")]
    if candidate.initial_quantity < 0:
        return [_error("invalid-quantity", "Initial quantity must be a whole number, zero or more")]

    today = today or date.today()
    product_events = [event for event in events if event.key == candidate.key]
    counted, earlier = split_by_effective_date(product_events, candidate.effective_date)
    sold_since = sum(event.quantity for event in counted)
    projected = candidate.initial_quantity - sold_since

    warnings: List[CheckpointWarning] = []
    infos: List[CheckpointWarning] = []
    if earlier:
        warnings.append(
            CheckpointWarning(
                Severity.WARNING,
                "sales-before-checkpoint",
                f"{len(earlier)} sale(s) totalling {sum(e.quantity for e in earlier)} unit(s) "
                f"before {candidate.effective_date.isoformat()} will be excluded from stock",
            )
        )
    if candidate.effective_date > today:
        warnings.append(
            CheckpointWarning(
                Severity.WARNING,
                "future-date",
                f"The effective date {candidate.effective_date.isoformat()} is in the future",
            )
        )
    if projected < 0:
        warnings.append(
            CheckpointWarning(
                Severity.WARNING,
                "negative-stock",
                f"{sold_since} unit(s) sold since the effective date exceed the initial "
                f"quantity of {candidate.initial_quantity}; stock will show 0",
            )
        )
    if not counted:
        infos.append(CheckpointWarning(Severity.INFO, "no-sales-since", "No sales recorded since the effective date"))
    if 0 <= projected <= candidate.min_stock and candidate.min_stock > 0:
        infos.append(
            CheckpointWarning(
                Severity.INFO,
                "below-min-stock",
                f"Projected stock {projected} is at or below the minimum of {candidate.min_stock}",
            )
        )

    for warning in warnings:
        log.warning("Checkpoint %s: %s", candidate.key.label(), warning.message)
    return warnings + infos


def has_blocking_errors(warnings: Iterable[CheckpointWarning]) -> bool:
    return any(warning.blocking for warning in warnings)


__all__ = [
    "CheckpointWarning",
    "CheckpointDraft",
    "validate_checkpoint",
    "has_blocking_errors",
]
