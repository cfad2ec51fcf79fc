"""Enumerations and tunables shared across the shop ledger modules.

Centralises domain constants so that the data access layer, the stock
engines and the CLI rely on a single source of truth for sheet names,
movement kinds and the thresholds used by the estimation heuristics.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Mapping, Sequence


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Number of rows written per store call during an import commit.
DEFAULT_BATCH_SIZE = 100

DEFAULT_MIN_STOCK = 5

# Placeholder stock for products without an operator checkpoint:
# max(ESTIMATE_FLOOR, ceil(total_sold * ESTIMATE_FACTOR)).
ESTIMATE_FLOOR = 10
ESTIMATE_FACTOR = Decimal("1.5")

# New products created by the stock importer get 20% of the imported
# quantity as their alert threshold.
NEW_PRODUCT_MIN_STOCK_RATIO = Decimal("0.2")

DEFAULT_AUDIT_TOLERANCE = Decimal("0.01")

# Share of significant words that must overlap for a token match.
TOKEN_MATCH_RATIO = Decimal("0.7")
SIGNIFICANT_WORD_MIN_LENGTH = 3


class MovementType(str, Enum):
    """Enumerate the kinds of signed stock deltas the reconstructor emits."""

    INITIAL = "initial"
    SALE = "sale"
    ADJUSTMENT = "adjustment"


class Severity(str, Enum):
    """Severity attached to checkpoint validation findings."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class StockStatus(str, Enum):
    """Stock-alert status of a product."""

    OK = "ok"
    LOW = "low"
    OUT = "out"
    UNKNOWN = "unknown"


class ImportField(str, Enum):
    """Logical fields recognised in raw import rows."""

    PRODUCT = "product"
    CATEGORY = "category"
    REGISTER = "register"
    DATE = "date"
    SELLER = "seller"
    QUANTITY = "quantity"
    TOTAL = "total"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    SALE_EVENTS = "SaleEvents"
    CHECKPOINTS = "StockCheckpoints"
    PRODUCTS = "Products"


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.SALE_EVENTS.value: [
        "EventID",
        "Product",
        "Category",
        "Register",
        "Seller",
        "Date",
        "Quantity",
        "UnitPrice",
        "Total",
    ],
    SheetName.CHECKPOINTS.value: [
        "Product",
        "Category",
        "InitialQuantity",
        "EffectiveDate",
        "MinStock",
        "Configured",
    ],
    SheetName.PRODUCTS.value: [
        "Product",
        "Category",
        "Price",
        "InitialStock",
        "InitialStockDate",
        "Stock",
        "QuantitySold",
        "StockValue",
        "LastSale",
        "MinStock",
        "Configured",
    ],
}

SALES_TEMPLATE_COLUMNS: Sequence[str] = (
    "Product",
    "Category",
    "Register",
    "Date",
    "Seller",
    "Quantity",
    "Amount",
)

STOCK_TEMPLATE_COLUMNS: Sequence[str] = ("Product", "Category", "Quantity", "Date")

# One illustrative row per template; amounts are transaction totals.
SALES_TEMPLATE_EXAMPLE: Sequence[object] = ("T-shirt logo", "Textile", "Caisse 1", "15/06/2024", "Marie", 2, "39,90")
STOCK_TEMPLATE_EXAMPLE: Sequence[object] = ("T-shirt logo", "Textile", 24, "01/06/2024")


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MIN_STOCK",
    "ESTIMATE_FLOOR",
    "ESTIMATE_FACTOR",
    "NEW_PRODUCT_MIN_STOCK_RATIO",
    "DEFAULT_AUDIT_TOLERANCE",
    "TOKEN_MATCH_RATIO",
    "SIGNIFICANT_WORD_MIN_LENGTH",
    "MovementType",
    "Severity",
    "StockStatus",
    "ImportField",
    "SheetName",
    "SHEET_COLUMNS",
    "SALES_TEMPLATE_COLUMNS",
    "STOCK_TEMPLATE_COLUMNS",
    "SALES_TEMPLATE_EXAMPLE",
    "STOCK_TEMPLATE_EXAMPLE",
]
