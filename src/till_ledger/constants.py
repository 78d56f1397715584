"""Enumerations and fixed values shared across Till Ledger modules.

Centralises domain constants so that the pricing engine, the analytics layer,
the workbook data access layer (DAL) and the CLI rely on a single source of
truth for identifiers, tax rates and margin bands.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Flat VAT percentages a line item may carry.
TAX_RATES: tuple[int, ...] = (0, 4, 10, 21)

CENT = Decimal("0.01")
PRICE_TOLERANCE = Decimal("0.005")
DEFAULT_MAX_LINE_QUANTITY = 999
DEFAULT_TOP_PRODUCTS = 10
DEFAULT_LOSS_PER_UNIT = Decimal("10")
ADJUSTMENT_PAGE_SIZE = 10_000

# Lower bounds of the margin histogram bands; the last band is open ended.
MARGIN_BANDS: tuple[tuple[str, Decimal], ...] = (
    ("0-10", Decimal("0")),
    ("10-20", Decimal("10")),
    ("20-30", Decimal("20")),
    ("30-40", Decimal("30")),
    ("40+", Decimal("40")),
)


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for checkout."""

    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class InvoiceType(str, Enum):
    """Enumerate the invoice documents a checkout may produce."""

    SIMPLIFIED = "simplified"
    FULL = "full"


class AdjustmentType(str, Enum):
    """Direction of an inventory adjustment."""

    INCREASE = "increase"
    DECREASE = "decrease"


class AdjustmentReason(str, Enum):
    """Reason codes recorded with inventory adjustments."""

    THEFT = "theft"
    BROKEN = "broken"
    EXPIRED = "expired"
    LOST = "lost"
    COUNT_ERROR = "count_error"


class ReturnType(str, Enum):
    """How much of an order a return covers."""

    FULL = "full"
    PARTIAL = "partial"
    CANCELLATION = "cancellation"


class ReturnReason(str, Enum):
    """Customer-facing reason recorded with a return."""

    DEFECTIVE = "defective"
    INCORRECT = "incorrect"
    CHANGE_OF_MIND = "change_of_mind"
    OTHER = "other"


class ReturnStatus(str, Enum):
    """Review state of a return; only ``pending`` returns may change."""

    PENDING = "pending"
    PROCESSED = "processed"
    REJECTED = "rejected"


class Period(str, Enum):
    """Coarse report periods understood by the date-range resolver."""

    LAST_7_DAYS = "last-7-days"
    LAST_30_DAYS = "last-30-days"
    LAST_3_MONTHS = "last-3-months"
    LAST_6_MONTHS = "last-6-months"
    LAST_1_YEAR = "last-1-year"
    CUSTOM = "custom"


PERIOD_DAYS: dict[Period, int] = {
    Period.LAST_7_DAYS: 7,
    Period.LAST_30_DAYS: 30,
    Period.LAST_3_MONTHS: 90,
    Period.LAST_6_MONTHS: 180,
    Period.LAST_1_YEAR: 365,
}


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CATEGORIES = "Categories"
    ORDERS = "Orders"
    ORDER_ITEMS = "OrderItems"
    TAX_BREAKDOWN = "TaxBreakdown"
    ADJUSTMENTS = "Adjustments"
    RETURNS = "Returns"
    RETURN_ITEMS = "ReturnItems"


# Column headers per sheet, in worksheet order.
SHEET_COLUMNS: dict[str, tuple[str, ...]] = {
    SheetName.CATEGORIES.value: (
        "CategoryID",
        "CategoryName",
        "DefaultMargin",
        "DefaultTax",
        "SortOrder",
    ),
    SheetName.ORDERS.value: (
        "OrderID",
        "OrderNumber",
        "Timestamp",
        "TotalAmount",
        "DiscountAmount",
        "PaymentMethod",
        "InvoiceType",
        "CustomerName",
        "CustomerTaxID",
        "CustomerNotes",
        "Archived",
    ),
    SheetName.ORDER_ITEMS.value: (
        "OrderID",
        "Barcode",
        "ProductName",
        "CategoryName",
        "Quantity",
        "CostBasis",
        "MarginPercent",
        "TaxPercent",
        "UnitPrice",
        "LineTotal",
    ),
    SheetName.TAX_BREAKDOWN.value: (
        "OrderID",
        "TaxRate",
        "BaseAmount",
        "TaxAmount",
        "TaxableAmount",
    ),
    SheetName.ADJUSTMENTS.value: (
        "AdjustmentID",
        "Barcode",
        "ProductName",
        "Quantity",
        "AdjustmentType",
        "Reason",
        "EffectiveAt",
        "Notes",
    ),
    SheetName.RETURNS.value: (
        "ReturnID",
        "ReturnNumber",
        "OrderID",
        "OrderNumber",
        "ReturnType",
        "Reason",
        "OtherReason",
        "RefundAmount",
        "Status",
        "CreatedAt",
        "ProcessedAt",
        "StockRestored",
        "Notes",
        "StatusNotes",
    ),
    SheetName.RETURN_ITEMS.value: (
        "ReturnID",
        "Barcode",
        "ProductName",
        "CategoryName",
        "ReturnedQuantity",
        "OriginalQuantity",
        "RefundPerUnit",
        "TotalRefund",
    ),
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TAX_RATES",
    "CENT",
    "PRICE_TOLERANCE",
    "DEFAULT_MAX_LINE_QUANTITY",
    "DEFAULT_TOP_PRODUCTS",
    "DEFAULT_LOSS_PER_UNIT",
    "ADJUSTMENT_PAGE_SIZE",
    "MARGIN_BANDS",
    "PaymentMethod",
    "InvoiceType",
    "AdjustmentType",
    "AdjustmentReason",
    "ReturnType",
    "ReturnReason",
    "ReturnStatus",
    "Period",
    "PERIOD_DAYS",
    "SheetName",
    "SHEET_COLUMNS",
]
