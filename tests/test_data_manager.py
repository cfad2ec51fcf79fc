"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from shop_ledger import constants, data_manager
from shop_ledger.models import Product, ProductKey, SaleEvent, StockCheckpoint


def _event(**overrides) -> SaleEvent:
    values = dict(
        event_id="E1",
        product="Mug",
        category="Kitchen",
        register="Caisse 1",
        seller="Alice",
        date=datetime(2024, 6, 2, 10, 30),
        quantity=2,
        unit_price=Decimal("9.90"),
        total=Decimal("19.80"),
    )
    values.update(overrides)
    return SaleEvent(**values)


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent(tmp_path, monkeypatch):
    """Auto-discovery walks up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_reads_all_sections(config_factory):
    """Import and audit options are typed; relative paths are anchored."""

    bundle = config_factory(make_relative=True, batch_size=25, default_min_stock=3)
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.directory)

    assert settings.data_file == bundle.workbook_path.resolve()
    assert settings.shop_name == "Test Shop"
    assert settings.batch_size == 25
    assert settings.default_min_stock == 3
    assert settings.audit_tolerance == Decimal("0.01")


def test_parse_settings_applies_defaults():
    """Optional sections may be omitted entirely."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=/tmp/ledger.xlsx\nShopName=S\nSchemaVersion=1.0.0\n")

    settings = data_manager.parse_settings(parser)

    assert settings.batch_size == constants.DEFAULT_BATCH_SIZE
    assert settings.default_min_stock == constants.DEFAULT_MIN_STOCK
    assert settings.audit_tolerance == constants.DEFAULT_AUDIT_TOLERANCE


def test_parse_settings_requires_system_entries():
    """Missing mandatory entries surface as KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=ledger.xlsx\n")

    with pytest.raises(KeyError):
        data_manager.parse_settings(parser)


@pytest.mark.parametrize(
    "extra",
    ["[Import]\nBatchSize=0\n", "[Import]\nDefaultMinStock=-1\n", "[Audit]\nTolerance=abc\n"],
)
def test_parse_settings_rejects_bad_optional_values(extra):
    """Out-of-range or malformed tunables are ValueErrors."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=l.xlsx\nShopName=S\nSchemaVersion=1.0.0\n" + extra)

    with pytest.raises(ValueError):
        data_manager.parse_settings(parser)


def test_open_workbook_returns_openpyxl_instance(workbook_factory):
    """A bootstrapped workbook opens with every ledger sheet."""

    workbook = data_manager.open_workbook(workbook_factory())

    assert isinstance(workbook, OpenpyxlWorkbook)
    assert workbook.sheetnames == [sheet.value for sheet in constants.SheetName]
    assert set(constants.SHEET_COLUMNS) == set(workbook.sheetnames)


def test_open_workbook_missing_file_raises(tmp_path):
    """Opening a nonexistent workbook is a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_missing_sheet_raises(tmp_path):
    """A workbook lacking ledger sheets is rejected."""

    path = tmp_path / "other.xlsx"
    openpyxl.Workbook().save(path)

    with pytest.raises(KeyError):
        data_manager.open_workbook(path)


def test_sale_events_survive_a_save(workbook_factory):
    """Appended events read back equal after saving and reopening."""

    path = workbook_factory()
    workbook = data_manager.open_workbook(path)
    data_manager.append_sale_events(workbook, [_event(), _event(event_id="E2", total=Decimal("-5.00"), quantity=1, unit_price=Decimal("-5.00"))])
    data_manager.save_workbook(workbook, path)

    reloaded = list(data_manager.iter_sale_events(data_manager.refresh_workbook(path)))

    assert reloaded == [
        _event(),
        _event(event_id="E2", total=Decimal("-5.00"), quantity=1, unit_price=Decimal("-5.00")),
    ]


def test_append_sale_events_is_all_or_nothing(workbook_factory):
    """A record that cannot be serialised leaves the sheet untouched."""

    workbook = data_manager.open_workbook(workbook_factory())
    broken = _event(quantity="two")

    with pytest.raises(ValueError):
        data_manager.append_sale_events(workbook, [_event(), broken])

    assert list(data_manager.iter_sale_events(workbook)) == []


def test_upsert_keyed_row_replaces_matching_product(workbook_factory):
    """Rows are located by normalised product and category."""

    workbook = data_manager.open_workbook(workbook_factory())
    sheet = data_manager.PRODUCTS_SHEET
    key = ProductKey.of("Mug", "Kitchen")

    first = data_manager.upsert_keyed_row(workbook, sheet, key, data_manager.serialize_product(Product("Mug", "Kitchen", stock=3)))
    second = data_manager.upsert_keyed_row(workbook, sheet, key, data_manager.serialize_product(Product("mug", " kitchen", stock=9)))

    assert first == second == 2
    [product] = data_manager.iter_products(workbook)
    assert product.stock == 9


def test_locate_product_row_returns_none_when_missing(workbook_factory):
    """Unknown keys have no row."""

    workbook = data_manager.open_workbook(workbook_factory())

    assert data_manager.locate_product_row(workbook, data_manager.CHECKPOINTS_SHEET, ProductKey.of("x", "y")) is None


def test_generate_event_id_is_sortable():
    """Identifiers embed the timestamp and a zero-padded sequence."""

    event_id = data_manager.generate_event_id(when=datetime(2024, 6, 2, 10, 30, 1, 5), sequence=7)

    assert event_id == "E20240602103001000005-0007"


def test_serialize_checkpoint_preserves_order():
    """Column order follows the StockCheckpoints header."""

    checkpoint = StockCheckpoint("Mug", "Kitchen", 12, date(2024, 6, 1), 3, True)

    assert data_manager.serialize_checkpoint(checkpoint) == ["Mug", "Kitchen", 12, date(2024, 6, 1), 3, True]


def test_deserialize_product_handles_excel_types():
    """Floats, datetimes and blanks from Excel map onto the product fields."""

    raw = ("Mug", "Kitchen", 9.9, 20, datetime(2024, 6, 1), 18, 2, 178.2, None, 5, True)

    product = data_manager.deserialize_product(raw)

    assert product.price == Decimal("9.9")
    assert product.initial_stock_date == date(2024, 6, 1)
    assert product.stock_value == Decimal("178.20")
    assert product.last_sale is None
    assert product.configured is True


def test_deserialize_sale_event_requires_a_date():
    """An event row without a date cannot be used."""

    with pytest.raises(ValueError):
        data_manager.deserialize_sale_event(("E1", "Mug", "Kitchen", "1", "A", None, 1, 1, 1))


def test_workbook_store_stamps_missing_ids(workbook_factory):
    """Events appended without an identifier receive one."""

    store = data_manager.WorkbookLedgerStore(data_manager.open_workbook(workbook_factory()))

    store.append_events([_event(event_id=None), _event(event_id=None, seller="Bob")])

    ids = [event.event_id for event in store.list_events()]
    assert all(ids)
    assert len(set(ids)) == 2
    assert store.list_events(ProductKey.of("MUG", "kitchen")) == store.list_events()


def test_workbook_store_checkpoint_round_trip(workbook_factory):
    """Checkpoints are upserted per product key."""

    store = data_manager.WorkbookLedgerStore(data_manager.open_workbook(workbook_factory()))
    key = ProductKey.of("Mug", "Kitchen")

    store.put_checkpoint(key, StockCheckpoint("Mug", "Kitchen", 10, date(2024, 6, 1), 2))
    store.put_checkpoint(key, StockCheckpoint("Mug", "Kitchen", 15, date(2024, 6, 5), 2))

    assert store.get_checkpoint(key).initial_quantity == 15
    assert len(store.list_checkpoints()) == 1
    assert store.get_checkpoint(ProductKey.of("Cap", "Textile")) is None


def test_workbook_store_deletes_rows_by_key(workbook_factory):
    """Deleting removes only the matching row and reports a miss."""

    store = data_manager.WorkbookLedgerStore(data_manager.open_workbook(workbook_factory()))
    mug = ProductKey.of("Mug", "Kitchen")
    store.put_product(Product("Mug", "Kitchen", stock=3))
    store.put_product(Product("Cap", "Textile", stock=1))
    store.put_checkpoint(mug, StockCheckpoint("Mug", "Kitchen", 10, date(2024, 6, 1)))

    assert store.delete_product(ProductKey.of("mug", "KITCHEN")) is True
    assert store.delete_checkpoint(mug) is True
    assert store.delete_product(mug) is False
    assert [product.name for product in store.list_products()] == ["Cap"]
    assert store.list_checkpoints() == []


def test_workbook_store_rejects_mismatched_checkpoint_key(workbook_factory):
    """A checkpoint cannot be filed under another product."""

    store = data_manager.WorkbookLedgerStore(data_manager.open_workbook(workbook_factory()))

    with pytest.raises(KeyError):
        store.put_checkpoint(ProductKey.of("Cap", "Textile"), StockCheckpoint("Mug", "Kitchen", 1, date(2024, 6, 1)))


def test_read_table_rows_from_csv_and_tsv(tmp_path):
    """Delimited files become header-keyed rows."""

    csv_path = tmp_path / "sales.csv"
    csv_path.write_text("Product,Quantity\nMug,2\n", encoding="utf-8")
    tsv_path = tmp_path / "paste.txt"
    tsv_path.write_text("Product\tQuantity\nCap\t1\n", encoding="utf-8")

    assert data_manager.read_table_rows(csv_path) == [{"Product": "Mug", "Quantity": "2"}]
    assert data_manager.read_table_rows(tsv_path) == [{"Product": "Cap", "Quantity": "1"}]


def test_read_table_rows_from_xlsx(tmp_path):
    """The first worksheet of an .xlsx file is read with native cell types."""

    path = tmp_path / "sales.xlsx"
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.append(["Product", "Date", None])
    sheet.append(["Mug", datetime(2024, 6, 2), "ignored"])
    workbook.save(path)

    assert data_manager.read_table_rows(path) == [{"Product": "Mug", "Date": datetime(2024, 6, 2)}]


def test_read_table_rows_rejects_unknown_type(tmp_path):
    """Only spreadsheet and delimited text files are supported."""

    path = tmp_path / "sales.pdf"
    path.write_bytes(b"%PDF")

    with pytest.raises(ValueError):
        data_manager.read_table_rows(path)


def test_write_template_creates_headers_and_example(tmp_path):
    """Templates carry bold headers and one example row."""

    path = data_manager.write_template(
        tmp_path / "stock.xlsx",
        constants.STOCK_TEMPLATE_COLUMNS,
        constants.STOCK_TEMPLATE_EXAMPLE,
        title="Stock",
    )

    sheet = openpyxl.load_workbook(path)["Stock"]
    rows = list(sheet.iter_rows(values_only=True))
    assert rows[0] == tuple(constants.STOCK_TEMPLATE_COLUMNS)
    assert rows[1] == tuple(constants.STOCK_TEMPLATE_EXAMPLE)
    assert sheet["A1"].font.bold is True
    with pytest.raises(FileExistsError):
        data_manager.write_template(path, constants.STOCK_TEMPLATE_COLUMNS)
