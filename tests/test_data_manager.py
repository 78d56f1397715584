"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from till_ledger import constants, data_manager
from till_ledger.constants import (
    AdjustmentReason,
    AdjustmentType,
    InvoiceType,
    PaymentMethod,
    ReturnReason,
    ReturnStatus,
    ReturnType,
)
from till_ledger.models import Category, OrderReturn, ReturnItem, TaxBucket
from till_ledger.pricing import LegacyDefaults


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in a parent of the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=till_ledger.xlsx")
    nested = tmp_path / "nested" / "deeper"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Corner Shop"
    assert parser.get("Analytics", "TopProducts") == "10"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.store_name == "Corner Shop"
    assert settings.max_line_quantity == 999
    assert settings.price_tolerance == Decimal("0.005")
    assert settings.loss_per_unit == Decimal("10")
    assert settings.legacy_defaults is None


def test_parse_settings_optional_sections_fall_back(tmp_path):
    """Only the [System] section is mandatory."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = data.xlsx\nStoreName = Shop\nSchemaVersion = 1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.top_products == constants.DEFAULT_TOP_PRODUCTS
    assert settings.max_line_quantity == constants.DEFAULT_MAX_LINE_QUANTITY
    assert settings.data_file == (tmp_path / "data.xlsx").resolve()


def test_parse_settings_reads_legacy_defaults(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nStoreName = Shop\nSchemaVersion = 1.0.0\n"
        "[Pricing]\nLegacyTaxPercent = 21\nLegacyMarginPercent = 30\n"
    )

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.legacy_defaults == LegacyDefaults(tax_percent=Decimal("21"), margin_percent=Decimal("30"))


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object with every sheet."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(constants.SHEET_COLUMNS) <= set(workbook.sheetnames)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_creates_parent_directories(tmp_path):
    workbook = openpyxl.Workbook()
    destination = tmp_path / "a" / "b" / "out.xlsx"

    data_manager.save_workbook(workbook, destination)

    assert destination.exists()


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def test_iter_categories_reads_seeded_category(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)

    (category,) = list(data_manager.iter_categories(workbook))

    assert category.name == "General"
    assert category.default_margin_percent == Decimal("30")
    assert category.default_tax_percent == Decimal("21")


def test_append_category_is_visible_to_iteration(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_category(workbook, Category("C2", "Drinks", Decimal("25"), Decimal("10"), sort_order=2))

    names = [category.name for category in data_manager.iter_categories(workbook)]

    assert names == ["General", "Drinks"]


def test_append_order_round_trips_through_disk(master_workbook_path, order_factory, order_item_factory):
    """Orders, items and tax rows are reassembled after a save and reload."""

    order = order_factory(
        "O1",
        items=[order_item_factory("B1", quantity=2), order_item_factory("B2", tax_percent="10")],
        discount="0.50",
        payment_method=PaymentMethod.TRANSFER,
    )
    order = replace(
        order,
        tax_breakdown=(TaxBucket(Decimal("21"), Decimal("26.00"), Decimal("5.46"), Decimal("31.46")),),
        invoice_type=InvoiceType.FULL,
        customer_name="Ana",
        customer_tax_id="X123",
    )
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_order(workbook, order)
    data_manager.save_workbook(workbook, master_workbook_path)

    (loaded,) = list(data_manager.iter_orders(data_manager.open_workbook(master_workbook_path)))

    assert loaded.order_id == "O1"
    assert loaded.timestamp == order.timestamp
    assert loaded.payment_method is PaymentMethod.TRANSFER
    assert loaded.invoice_type is InvoiceType.FULL
    assert loaded.customer_tax_id == "X123"
    assert loaded.total_amount == order.total_amount
    assert loaded.discount_amount == Decimal("0.50")
    assert [item.barcode for item in loaded.items] == ["B1", "B2"]
    assert loaded.items[0].line_total == Decimal("31.46")
    assert loaded.items[1].tax_percent == Decimal("10")
    assert loaded.tax_breakdown[0].tax_amount == Decimal("5.46")
    assert loaded.archived is False


def test_update_order_sets_archive_flag(master_workbook_path, order_factory, order_item_factory):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_order(workbook, order_factory("O1", items=[order_item_factory()]))

    data_manager.update_order(workbook, "O1", field_values={"Archived": True})

    (loaded,) = list(data_manager.iter_orders(workbook))
    assert loaded.archived is True


def test_update_order_unknown_order_or_field(master_workbook_path, order_factory):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_order(workbook, order_factory("O1"))

    with pytest.raises(KeyError):
        data_manager.update_order(workbook, "O404", field_values={"Archived": True})
    with pytest.raises(KeyError):
        data_manager.update_order(workbook, "O1", field_values={"Colour": "red"})


def test_locate_row_returns_excel_index(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert data_manager.locate_row(workbook, "Categories", "CategoryName", "General") == 2
    assert data_manager.locate_row(workbook, "Categories", "CategoryName", "Missing") is None
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, "Categories", "Nope", "General")


def test_adjustments_round_trip(master_workbook_path, adjustment_factory):
    record = adjustment_factory(
        "A1",
        quantity=3,
        adjustment_type=AdjustmentType.INCREASE,
        reason=AdjustmentReason.COUNT_ERROR,
        effective_at=datetime(2024, 5, 1, 9, 30, tzinfo=UTC),
    )
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_adjustment(workbook, record)
    data_manager.save_workbook(workbook, master_workbook_path)

    (loaded,) = list(data_manager.iter_adjustments(data_manager.open_workbook(master_workbook_path)))

    assert loaded == record


def _order_return(return_id: str = "R1", **overrides) -> OrderReturn:
    values = dict(
        return_id=return_id,
        return_number="000001",
        order_id="O1",
        order_number="000001",
        return_type=ReturnType.PARTIAL,
        reason=ReturnReason.OTHER,
        items=(
            ReturnItem("B1", "Milk", "General", 1, 3, Decimal("15.73"), Decimal("15.73")),
            ReturnItem("B2", "Bread", "General", 2, 2, Decimal("1.25"), Decimal("2.50")),
        ),
        refund_amount=Decimal("18.23"),
        created_at=datetime(2024, 5, 2, 8, 15, tzinfo=UTC),
        other_reason="Wrong size",
        notes="Counter 2",
    )
    values.update(overrides)
    return OrderReturn(**values)


def test_returns_round_trip_with_items(master_workbook_path):
    record = _order_return()
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_return(workbook, record)
    data_manager.append_return(
        workbook,
        _order_return("R2", reason=ReturnReason.DEFECTIVE, other_reason=None, items=(), notes=""),
    )
    data_manager.save_workbook(workbook, master_workbook_path)

    first, second = data_manager.iter_returns(data_manager.open_workbook(master_workbook_path))

    assert first == record
    assert first.returned_quantities == {"B1": 1, "B2": 2}
    assert second.items == ()
    assert second.status is ReturnStatus.PENDING
    assert second.processed_at is None


def test_update_return_sets_status_columns(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_return(workbook, _order_return())
    processed_at = datetime(2024, 5, 3, tzinfo=UTC)

    data_manager.update_return(
        workbook,
        "R1",
        field_values={
            "Status": "processed",
            "ProcessedAt": processed_at.isoformat(),
            "StockRestored": True,
            "StatusNotes": "Back on shelf",
        },
    )

    (loaded,) = data_manager.iter_returns(workbook)
    assert loaded.status is ReturnStatus.PROCESSED
    assert loaded.processed_at == processed_at
    assert loaded.stock_restored is True
    assert loaded.status_notes == "Back on shelf"
    with pytest.raises(KeyError):
        data_manager.update_return(workbook, "R404", field_values={"Status": "rejected"})


def test_deserialize_order_treats_naive_timestamps_as_utc():
    row = ["O1", "000001", "2024-01-01T10:00:00", 10, 0, "cash", None, None, None, None, None]

    order = data_manager.deserialize_order(row)

    assert order.timestamp == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
    assert order.invoice_type is InvoiceType.SIMPLIFIED
    assert order.customer_notes == ""
    assert order.archived is False
