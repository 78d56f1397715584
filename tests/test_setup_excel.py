"""Tests for the master workbook bootstrap script."""

from __future__ import annotations

from decimal import Decimal

import openpyxl
import pytest

from till_ledger import constants, data_manager, setup_excel


def test_create_master_workbook_writes_every_sheet(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "nested" / "ledger.xlsx")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == list(constants.SHEET_COLUMNS)
    for sheet_name, columns in constants.SHEET_COLUMNS.items():
        header = [cell.value for cell in workbook[sheet_name][1]]
        assert header == list(columns)
        assert workbook[sheet_name]["A1"].font.bold is True


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "ledger.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(destination)
    assert setup_excel.create_master_workbook(destination, categories=(), overwrite=True) == destination
    assert list(data_manager.iter_categories(data_manager.open_workbook(destination))) == []


def test_load_settings_reads_defaults_section(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[System]\nDataFile = data/ledger.xlsx\n"
        "[Defaults]\nDefaultCategory = Groceries\nDefaultMargin = 12.5\nDefaultTax = 10\n"
    )

    settings = setup_excel.load_settings(config_path)

    assert settings.data_file == (tmp_path / "data" / "ledger.xlsx").resolve()
    assert settings.default_category.name == "Groceries"
    assert settings.default_category.default_margin_percent == Decimal("12.5")
    assert settings.default_category.default_tax_percent == Decimal("10")


def test_load_settings_blank_category_disables_seeding(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = ledger.xlsx\n[Defaults]\nDefaultCategory =\n")

    assert setup_excel.load_settings(config_path).default_category is None


def test_load_settings_requires_data_file(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nStoreName = Shop\n")

    with pytest.raises(KeyError):
        setup_excel.load_settings(config_path)


def test_main_creates_workbook_from_config(tmp_path, capsys):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = ledger.xlsx\n")

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert "[SUCCESS]" in capsys.readouterr().out

    (category,) = data_manager.iter_categories(data_manager.open_workbook(tmp_path / "ledger.xlsx"))
    assert category.name == setup_excel.DEFAULT_CATEGORY.name

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
