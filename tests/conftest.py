"""Shared pytest fixtures and utilities for shop ledger tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from shop_ledger import constants, core_logic, data_manager  # noqa: E402
from shop_ledger.models import Product, ProductKey, SaleEvent, StockCheckpoint  # noqa: E402
from setup_excel import create_ledger_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Import]\n"
    "BatchSize = {batch_size}\n"
    "DefaultMinStock = {default_min_stock}\n\n"
    "[Audit]\n"
    "Tolerance = 0.01\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


class InMemoryStore:
    """List-backed :class:`LedgerStore` used to exercise the engines.

    ``fail_on_call`` makes the n-th ``append_events`` call (1-based) raise
    after nothing of that batch has been stored.
    """

    def __init__(
        self,
        events: Sequence[SaleEvent] = (),
        checkpoints: Sequence[StockCheckpoint] = (),
        products: Sequence[Product] = (),
        *,
        fail_on_call: Optional[int] = None,
    ) -> None:
        self.events: List[SaleEvent] = list(events)
        self.checkpoints: Dict[ProductKey, StockCheckpoint] = {c.key: c for c in checkpoints}
        self.products: Dict[ProductKey, Product] = {p.key: p for p in products}
        self.fail_on_call = fail_on_call
        self.append_calls = 0

    def list_events(self, product_filter: Optional[ProductKey] = None) -> List[SaleEvent]:
        if product_filter is None:
            return list(self.events)
        return [event for event in self.events if event.key == product_filter]

    def append_events(self, batch: Sequence[SaleEvent]) -> None:
        self.append_calls += 1
        if self.fail_on_call == self.append_calls:
            raise IOError("disk full")
        for event in batch:
            if event.event_id is None:
                event = replace(event, event_id=f"E-{len(self.events) + 1:05d}")
            self.events.append(event)

    def get_checkpoint(self, product_key: ProductKey) -> Optional[StockCheckpoint]:
        return self.checkpoints.get(product_key)

    def put_checkpoint(self, product_key: ProductKey, checkpoint: StockCheckpoint) -> None:
        self.checkpoints[product_key] = checkpoint

    def list_checkpoints(self) -> List[StockCheckpoint]:
        return list(self.checkpoints.values())

    def list_products(self) -> List[Product]:
        return list(self.products.values())

    def put_product(self, product: Product) -> None:
        self.products[product.key] = product

    def delete_checkpoint(self, product_key: ProductKey) -> bool:
        return self.checkpoints.pop(product_key, None) is not None

    def delete_product(self, product_key: ProductKey) -> bool:
        return self.products.pop(product_key, None) is not None


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def make_event() -> Callable[..., SaleEvent]:
    """Factory for sale events with sensible defaults."""

    counter = {"n": 0}

    def _make(
        product: str = "Mug",
        category: str = "Kitchen",
        *,
        when: datetime | date = datetime(2024, 6, 2, 10, 0),
        quantity: int = 1,
        total: str = "10.00",
        register: str = "Caisse 1",
        seller: str = "Alice",
        event_id: Optional[str] = "auto",
    ) -> SaleEvent:
        counter["n"] += 1
        if not isinstance(when, datetime):
            when = datetime(when.year, when.month, when.day, 12, 0)
        total_amount = Decimal(total)
        unit_price = (total_amount / quantity).quantize(Decimal("0.01")) if quantity else total_amount
        return SaleEvent(
            event_id=f"E{counter['n']:04d}" if event_id == "auto" else event_id,
            product=product,
            category=category,
            register=register,
            seller=seller,
            date=when,
            quantity=quantity,
            unit_price=unit_price,
            total=total_amount,
        )

    return _make


@pytest.fixture
def make_checkpoint() -> Callable[..., StockCheckpoint]:
    """Factory for configured checkpoints."""

    def _make(
        product: str = "Mug",
        category: str = "Kitchen",
        *,
        initial: int = 100,
        effective: Optional[date] = date(2024, 6, 1),
        min_stock: int = 5,
        configured: bool = True,
    ) -> StockCheckpoint:
        return StockCheckpoint(
            product=product,
            category=category,
            initial_quantity=initial,
            effective_date=effective,
            min_stock=min_stock,
            configured=configured,
        )

    return _make


@pytest.fixture
def raw_sale_row() -> Callable[..., Dict[str, object]]:
    """Factory for header-keyed rows shaped like the sales import template."""

    def _make(**overrides: object) -> Dict[str, object]:
        row: Dict[str, object] = {
            "Product": "Mug",
            "Category": "Kitchen",
            "Register": "Caisse 1",
            "Date": "02/06/2024",
            "Seller": "Alice",
            "Quantity": "2",
            "Amount": "19,80 €",
        }
        row.update(overrides)
        return row

    return _make


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_ledger_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        batch_size: int = 100,
        default_min_stock: int = 5,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                batch_size=batch_size,
                default_min_stock=default_min_stock,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        shop_name="Test Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        batch_size=2,
        default_min_stock=5,
    )


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def context(settings: data_manager.ConfigSettings, memory_store: InMemoryStore) -> core_logic.RuntimeContext:
    """Assemble a runtime context over the in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=memory_store)
