"""Ranked fuzzy matching of imported stock rows onto catalog products.

Each strategy is a pure predicate ``(name, category, candidate) -> bool``.
:func:`find_matching_product` tries the strategies in order and returns the
first candidate accepted by the earliest strategy that accepts any.
Sale-event deduplication never goes through here; it uses exact identities.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import SIGNIFICANT_WORD_MIN_LENGTH, TOKEN_MATCH_RATIO
from .models import Product, normalize_text


Matcher = Callable[[str, str, Product], bool]


@dataclass(frozen=True)
class MatchResult:
    product: Product
    strategy: str


def exact_match(name: str, category: str, candidate: Product) -> bool:
    """Same name and category once case and spacing are normalised."""

    return (
        normalize_text(candidate.name) == normalize_text(name)
        and normalize_text(candidate.category) == normalize_text(category)
    )


def substring_match(name: str, category: str, candidate: Product) -> bool:
    """Same category and one name contains the other."""

    if normalize_text(candidate.category) != normalize_text(category):
        return False
    imported = normalize_text(name)
    existing = normalize_text(candidate.name)
    if not imported or not existing:
        return False
    return imported in existing or existing in imported


def significant_words(text: str) -> List[str]:
    return [word for word in normalize_text(text).split() if len(word) >= SIGNIFICANT_WORD_MIN_LENGTH]


def token_overlap_match(name: str, category: str, candidate: Product) -> bool:
    """Same category and enough significant imported words appear in the candidate.

    An imported word counts when it is a substring of one of the
    candidate's significant words. Names with no significant word never
    match.
    """

    if normalize_text(candidate.category) != normalize_text(category):
        return False
    imported_words = significant_words(name)
    if not imported_words:
        return False
    candidate_words = significant_words(candidate.name)
    found = sum(1 for word in imported_words if any(word in other for other in candidate_words))
    required = (Decimal(len(imported_words)) * TOKEN_MATCH_RATIO).to_integral_value(rounding=ROUND_CEILING)
    return found >= int(required)


DEFAULT_STRATEGIES: Tuple[Tuple[str, Matcher], ...] = (
    ("exact", exact_match),
    ("substring", substring_match),
    ("token", token_overlap_match),
)


def find_matching_product(
    name: str,
    category: str,
    candidates: Iterable[Product],
    strategies: Sequence[Tuple[str, Matcher]] = DEFAULT_STRATEGIES,
) -> Optional[MatchResult]:
    """Return the best match for an imported ``(name, category)`` pair.

    Returns:
        MatchResult | None: ``None`` means the row describes a new product.
    """

    candidates = list(candidates)
    for label, matcher in strategies:
        for candidate in candidates:
            if matcher(name, category, candidate):
                log.debug("Matched '%s' (%s) to '%s' via %s", name, category, candidate.name, label)
                return MatchResult(product=candidate, strategy=label)
    return None
