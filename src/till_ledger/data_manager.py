"""Data access layer for Till Ledger.

This module provides low-level helpers that read from and write to the
``till_ledger.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.

Monetary cells are written as :class:`~decimal.Decimal` values and read back
through ``Decimal(str(value))`` so that Excel's floating storage never leaks
binary rounding into the domain. Instants are stored as ISO-8601 text.
"""


from __future__ import annotations

import configparser
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from .constants import (
    DEFAULT_LOSS_PER_UNIT,
    DEFAULT_MAX_LINE_QUANTITY,
    DEFAULT_TOP_PRODUCTS,
    PRICE_TOLERANCE,
    AdjustmentReason,
    AdjustmentType,
    InvoiceType,
    PaymentMethod,
    ReturnReason,
    ReturnStatus,
    ReturnType,
    SheetName,
)
from .models import Category, InventoryAdjustment, Order, OrderItem, OrderReturn, ReturnItem, TaxBucket
from .pricing import LegacyDefaults


CONFIG_FILE_NAME = "config.ini"
CATEGORIES_SHEET = SheetName.CATEGORIES.value
ORDERS_SHEET = SheetName.ORDERS.value
ORDER_ITEMS_SHEET = SheetName.ORDER_ITEMS.value
TAX_BREAKDOWN_SHEET = SheetName.TAX_BREAKDOWN.value
ADJUSTMENTS_SHEET = SheetName.ADJUSTMENTS.value
RETURNS_SHEET = SheetName.RETURNS.value
RETURN_ITEMS_SHEET = SheetName.RETURN_ITEMS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    max_line_quantity: int = DEFAULT_MAX_LINE_QUANTITY
    price_tolerance: Decimal = PRICE_TOLERANCE
    legacy_defaults: Optional[LegacyDefaults] = None
    top_products: int = DEFAULT_TOP_PRODUCTS
    loss_per_unit: Decimal = DEFAULT_LOSS_PER_UNIT


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function
    walks up from the current working directory toward the filesystem root
    looking for a file named ``CONFIG_FILE_NAME``. The first match that exists
    on disk is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Checkout]``, ``[Pricing]`` and
    ``[Analytics]`` are optional and fall back to the package defaults. The
    legacy pricing fallback is only enabled when both ``LegacyTaxPercent`` and
    ``LegacyMarginPercent`` are present. Relative ``DataFile`` paths are
    anchored at ``base_path`` (or the current working directory).

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If an optional numeric entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    legacy_tax = parser.get("Pricing", "LegacyTaxPercent", fallback=None)
    legacy_margin = parser.get("Pricing", "LegacyMarginPercent", fallback=None)
    legacy_defaults = None
    if legacy_tax is not None and legacy_margin is not None:
        legacy_defaults = LegacyDefaults(
            tax_percent=Decimal(legacy_tax),
            margin_percent=Decimal(legacy_margin),
        )

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        max_line_quantity=parser.getint("Checkout", "MaxLineQuantity", fallback=DEFAULT_MAX_LINE_QUANTITY),
        price_tolerance=Decimal(parser.get("Pricing", "PriceTolerance", fallback=str(PRICE_TOLERANCE))),
        legacy_defaults=legacy_defaults,
        top_products=parser.getint("Analytics", "TopProducts", fallback=DEFAULT_TOP_PRODUCTS),
        loss_per_unit=Decimal(parser.get("Analytics", "LossPerUnit", fallback=str(DEFAULT_LOSS_PER_UNIT))),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_categories(workbook: Workbook) -> Iterable[Category]:
    """Iterate over category records stored on the ``Categories`` worksheet."""

    for raw in _iter_rows(workbook, CATEGORIES_SHEET):
        yield deserialize_category(raw)


def iter_adjustments(workbook: Workbook) -> Iterable[InventoryAdjustment]:
    """Stream inventory adjustments from the ``Adjustments`` worksheet."""

    for raw in _iter_rows(workbook, ADJUSTMENTS_SHEET):
        yield deserialize_adjustment(raw)


def iter_orders(workbook: Workbook) -> Iterable[Order]:
    """Assemble orders from the header, item and tax breakdown worksheets.

    Item and tax rows are grouped by ``OrderID`` first, then each header row
    is turned into an :class:`Order` carrying its items in sheet order.

    Yields:
        Order: One record per populated row of the ``Orders`` sheet.
    """

    items_by_order: Dict[str, List[OrderItem]] = defaultdict(list)
    for raw in _iter_rows(workbook, ORDER_ITEMS_SHEET):
        order_id, item = deserialize_order_item(raw)
        items_by_order[order_id].append(item)

    tax_by_order: Dict[str, List[TaxBucket]] = defaultdict(list)
    for raw in _iter_rows(workbook, TAX_BREAKDOWN_SHEET):
        order_id, bucket = deserialize_tax_bucket(raw)
        tax_by_order[order_id].append(bucket)

    for raw in _iter_rows(workbook, ORDERS_SHEET):
        order_id = str(raw[0])
        yield deserialize_order(
            raw,
            items=items_by_order.get(order_id, []),
            tax_breakdown=tax_by_order.get(order_id, []),
        )


def iter_returns(workbook: Workbook) -> Iterable[OrderReturn]:
    """Assemble returns from the ``Returns`` and ``ReturnItems`` worksheets."""

    items_by_return: Dict[str, List[ReturnItem]] = defaultdict(list)
    for raw in _iter_rows(workbook, RETURN_ITEMS_SHEET):
        return_id, item = deserialize_return_item(raw)
        items_by_return[return_id].append(item)

    for raw in _iter_rows(workbook, RETURNS_SHEET):
        yield deserialize_return(raw, items=items_by_return.get(str(raw[0]), []))


def append_category(workbook: Workbook, record: Category) -> None:
    workbook[CATEGORIES_SHEET].append(serialize_category(record))


def append_adjustment(workbook: Workbook, record: InventoryAdjustment) -> None:
    workbook[ADJUSTMENTS_SHEET].append(serialize_adjustment(record))


def append_order(workbook: Workbook, record: Order) -> None:
    """Append an order header plus its item and tax breakdown rows.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.
    """

    workbook[ORDERS_SHEET].append(serialize_order(record))
    items_sheet = workbook[ORDER_ITEMS_SHEET]
    for item in record.items:
        items_sheet.append(serialize_order_item(record.order_id, item))
    tax_sheet = workbook[TAX_BREAKDOWN_SHEET]
    for bucket in record.tax_breakdown:
        tax_sheet.append(serialize_tax_bucket(record.order_id, bucket))


def append_return(workbook: Workbook, record: OrderReturn) -> None:
    workbook[RETURNS_SHEET].append(serialize_return(record))
    items_sheet = workbook[RETURN_ITEMS_SHEET]
    for item in record.items:
        items_sheet.append(serialize_return_item(record.return_id, item))


def update_order(workbook: Workbook, order_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns of an existing order header.

    Raises:
        KeyError: If the order or any referenced column cannot be found.
    """

    _update_row(workbook, ORDERS_SHEET, "OrderID", order_id, field_values, record_label="Order")


def update_return(workbook: Workbook, return_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns of an existing return header.

    Raises:
        KeyError: If the return or any referenced column cannot be found.
    """

    _update_row(workbook, RETURNS_SHEET, "ReturnID", return_id, field_values, record_label="Return")


def _update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: dict[str, Any],
    *,
    record_label: str,
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{record_label} not found: {key_value}")

    sheet = workbook[sheet_name]
    headers = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(headers)}

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {record_label.lower()} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def _decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _instant(raw: object) -> datetime:
    if isinstance(raw, datetime):
        moment = raw
    else:
        moment = datetime.fromisoformat(str(raw))
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def serialize_category(record: Category) -> list[object]:
    return [
        record.category_id,
        record.name,
        record.default_margin_percent,
        record.default_tax_percent,
        record.sort_order,
    ]


def deserialize_category(raw_row: Sequence[object]) -> Category:
    category_id, name, margin_raw, tax_raw, order_raw = raw_row[:5]
    return Category(
        category_id=str(category_id),
        name=str(name),
        default_margin_percent=_decimal(margin_raw),
        default_tax_percent=_decimal(tax_raw),
        sort_order=int(order_raw) if order_raw is not None else 0,
    )


def serialize_order(record: Order) -> list[object]:
    """Convert an order header into the ``Orders`` column ordering."""

    return [
        record.order_id,
        record.order_number,
        record.timestamp.isoformat(),
        record.total_amount,
        record.discount_amount,
        record.payment_method.value,
        record.invoice_type.value,
        record.customer_name,
        record.customer_tax_id,
        record.customer_notes,
        record.archived,
    ]


def deserialize_order(
    raw_row: Sequence[object],
    *,
    items: Sequence[OrderItem] = (),
    tax_breakdown: Sequence[TaxBucket] = (),
) -> Order:
    """Convert an ``Orders`` row plus its child rows into an :class:`Order`."""

    (
        order_id,
        order_number,
        timestamp_raw,
        total_raw,
        discount_raw,
        payment_raw,
        invoice_raw,
        customer_name,
        customer_tax_id,
        customer_notes,
        archived,
    ) = raw_row[:11]

    return Order(
        order_id=str(order_id),
        order_number=str(order_number),
        timestamp=_instant(timestamp_raw),
        items=tuple(items),
        total_amount=_decimal(total_raw, "0.00"),
        discount_amount=_decimal(discount_raw, "0.00"),
        payment_method=PaymentMethod(str(payment_raw)),
        tax_breakdown=tuple(tax_breakdown),
        invoice_type=InvoiceType(str(invoice_raw)) if invoice_raw is not None else InvoiceType.SIMPLIFIED,
        customer_name=_text(customer_name),
        customer_tax_id=_text(customer_tax_id),
        customer_notes=str(customer_notes) if customer_notes is not None else "",
        archived=bool(archived),
    )


def serialize_order_item(order_id: str, record: OrderItem) -> list[object]:
    return [
        order_id,
        record.barcode,
        record.name,
        record.category,
        record.quantity,
        record.cost_basis,
        record.margin_percent,
        record.tax_percent,
        record.unit_price,
        record.line_total,
    ]


def deserialize_order_item(raw_row: Sequence[object]) -> tuple[str, OrderItem]:
    """Return ``(order_id, item)`` for an ``OrderItems`` row."""

    (
        order_id,
        barcode,
        name,
        category,
        quantity_raw,
        cost_raw,
        margin_raw,
        tax_raw,
        price_raw,
        total_raw,
    ) = raw_row[:10]

    item = OrderItem(
        barcode=str(barcode),
        name=str(name),
        category=str(category) if category is not None else "",
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        cost_basis=_decimal(cost_raw, "0.00"),
        margin_percent=_decimal(margin_raw),
        tax_percent=_decimal(tax_raw),
        unit_price=_decimal(price_raw, "0.00"),
        line_total=_decimal(total_raw, "0.00"),
    )
    return str(order_id), item


def serialize_tax_bucket(order_id: str, record: TaxBucket) -> list[object]:
    return [order_id, record.rate, record.base_amount, record.tax_amount, record.taxable_amount]


def deserialize_tax_bucket(raw_row: Sequence[object]) -> tuple[str, TaxBucket]:
    order_id, rate_raw, base_raw, tax_raw, taxable_raw = raw_row[:5]
    bucket = TaxBucket(
        rate=_decimal(rate_raw),
        base_amount=_decimal(base_raw, "0.00"),
        tax_amount=_decimal(tax_raw, "0.00"),
        taxable_amount=_decimal(taxable_raw, "0.00"),
    )
    return str(order_id), bucket


def serialize_adjustment(record: InventoryAdjustment) -> list[object]:
    return [
        record.adjustment_id,
        record.barcode,
        record.product_name,
        record.quantity,
        record.adjustment_type.value,
        record.reason.value,
        record.effective_at.isoformat(),
        record.notes,
    ]


def deserialize_adjustment(raw_row: Sequence[object]) -> InventoryAdjustment:
    (
        adjustment_id,
        barcode,
        product_name,
        quantity_raw,
        type_raw,
        reason_raw,
        effective_raw,
        notes,
    ) = raw_row[:8]

    return InventoryAdjustment(
        adjustment_id=str(adjustment_id),
        barcode=str(barcode),
        product_name=str(product_name),
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        adjustment_type=AdjustmentType(str(type_raw)),
        reason=AdjustmentReason(str(reason_raw)),
        effective_at=_instant(effective_raw),
        notes=str(notes) if notes is not None else "",
    )


def serialize_return(record: OrderReturn) -> list[object]:
    return [
        record.return_id,
        record.return_number,
        record.order_id,
        record.order_number,
        record.return_type.value,
        record.reason.value,
        record.other_reason,
        record.refund_amount,
        record.status.value,
        record.created_at.isoformat(),
        record.processed_at.isoformat() if record.processed_at is not None else None,
        record.stock_restored,
        record.notes,
        record.status_notes,
    ]


def deserialize_return(raw_row: Sequence[object], *, items: Sequence[ReturnItem] = ()) -> OrderReturn:
    """Convert a ``Returns`` row plus its item rows into an :class:`OrderReturn`."""

    (
        return_id,
        return_number,
        order_id,
        order_number,
        type_raw,
        reason_raw,
        other_reason,
        refund_raw,
        status_raw,
        created_raw,
        processed_raw,
        stock_restored,
        notes,
        status_notes,
    ) = raw_row[:14]

    return OrderReturn(
        return_id=str(return_id),
        return_number=str(return_number),
        order_id=str(order_id),
        order_number=str(order_number),
        return_type=ReturnType(str(type_raw)),
        reason=ReturnReason(str(reason_raw)),
        items=tuple(items),
        refund_amount=_decimal(refund_raw, "0.00"),
        created_at=_instant(created_raw),
        status=ReturnStatus(str(status_raw)) if status_raw is not None else ReturnStatus.PENDING,
        other_reason=_text(other_reason),
        processed_at=_instant(processed_raw) if processed_raw is not None else None,
        stock_restored=bool(stock_restored),
        notes=str(notes) if notes is not None else "",
        status_notes=_text(status_notes),
    )


def serialize_return_item(return_id: str, record: ReturnItem) -> list[object]:
    return [
        return_id,
        record.barcode,
        record.name,
        record.category,
        record.returned_quantity,
        record.original_quantity,
        record.refund_per_unit,
        record.total_refund,
    ]


def deserialize_return_item(raw_row: Sequence[object]) -> tuple[str, ReturnItem]:
    """Return ``(return_id, item)`` for a ``ReturnItems`` row."""

    return_id, barcode, name, category, returned_raw, original_raw, unit_raw, total_raw = raw_row[:8]
    item = ReturnItem(
        barcode=str(barcode),
        name=str(name),
        category=str(category) if category is not None else "",
        returned_quantity=int(returned_raw) if returned_raw is not None else 0,
        original_quantity=int(original_raw) if original_raw is not None else 0,
        refund_per_unit=_decimal(unit_raw, "0.00"),
        total_refund=_decimal(total_raw, "0.00"),
    )
    return str(return_id), item
