"""Utility for initializing the Till Ledger master workbook.

The module doubles as a script (``python -m till_ledger.setup_excel``) and as
a library used by tests or other tooling. Shared helpers keep the workbook
bootstrap logic consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from .constants import SHEET_COLUMNS, SheetName
from .data_manager import CONFIG_FILE_NAME, serialize_category
from .models import Category

DEFAULT_CATEGORY = Category(
    category_id="C00000000",
    name="General",
    default_margin_percent=Decimal("30"),
    default_tax_percent=Decimal("21"),
    sort_order=0,
)


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    default_category: Optional[Category] = DEFAULT_CATEGORY


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory. The optional ``[Defaults]`` section overrides the seeded
    category; ``DefaultCategory`` set to an empty value disables seeding.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    default_category: Optional[Category] = DEFAULT_CATEGORY
    if parser.has_section("Defaults"):
        name = parser.get("Defaults", "DefaultCategory", fallback=DEFAULT_CATEGORY.name).strip()
        if name:
            default_category = Category(
                category_id=DEFAULT_CATEGORY.category_id,
                name=name,
                default_margin_percent=Decimal(
                    parser.get("Defaults", "DefaultMargin", fallback=str(DEFAULT_CATEGORY.default_margin_percent))
                ),
                default_tax_percent=Decimal(
                    parser.get("Defaults", "DefaultTax", fallback=str(DEFAULT_CATEGORY.default_tax_percent))
                ),
            )
        else:
            default_category = None

    return SetupSettings(data_file=data_file_path, default_category=default_category)


def create_master_workbook(
    destination: Path,
    *,
    categories: Iterable[Category] = (DEFAULT_CATEGORY,),
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the Till Ledger master workbook at ``destination``.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    categories_sheet = workbook[SheetName.CATEGORIES.value]
    for category in categories:
        categories_sheet.append(serialize_category(category))

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config_path``, seeding its default category."""

    settings = load_settings(config_path)
    seeded = (settings.default_category,) if settings.default_category is not None else ()
    return create_master_workbook(
        settings.data_file,
        categories=seeded,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the Till Ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Till Ledger Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
