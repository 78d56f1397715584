"""Domain records exchanged between the checkout, analytics and data layers.

Every record is an immutable dataclass. Monetary fields are
:class:`~decimal.Decimal` values with two-decimal semantics; quantities are
plain integers; instants are timezone-aware :class:`~datetime.datetime`
objects.

Line items come in two shapes. :class:`PricedItem` carries the cost basis,
margin and tax inputs that the pricing formula needs, while
:class:`LegacyItem` only knows its shelf price. Code that needs pricing inputs
dispatches on the variant instead of assuming defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from .constants import (
    AdjustmentReason,
    AdjustmentType,
    InvoiceType,
    PaymentMethod,
    ReturnReason,
    ReturnStatus,
    ReturnType,
)


@dataclass(frozen=True)
class PricedItem:
    """Cart or order line whose price derives from cost, margin and tax."""

    barcode: str
    name: str
    category: str
    quantity: int
    cost_basis: Decimal
    margin_percent: Decimal
    tax_percent: Decimal
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class LegacyItem:
    """Line that only records its unit price (custom or imported items)."""

    barcode: str
    name: str
    category: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


LineItem = Union[PricedItem, LegacyItem]


@dataclass(frozen=True)
class OrderItem:
    """Historical line item as stored with a recorded order."""

    barcode: str
    name: str
    category: str
    quantity: int
    cost_basis: Decimal
    margin_percent: Decimal
    tax_percent: Decimal
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class TaxBucket:
    """Per-rate decomposition of base, tax and taxable amounts."""

    rate: Decimal
    base_amount: Decimal
    tax_amount: Decimal
    taxable_amount: Decimal


@dataclass(frozen=True)
class Order:
    """A recorded checkout transaction."""

    order_id: str
    order_number: str
    timestamp: datetime
    items: tuple[OrderItem, ...]
    total_amount: Decimal
    discount_amount: Decimal
    payment_method: PaymentMethod
    tax_breakdown: tuple[TaxBucket, ...] = ()
    invoice_type: InvoiceType = InvoiceType.SIMPLIFIED
    customer_name: Optional[str] = None
    customer_tax_id: Optional[str] = None
    customer_notes: str = ""
    archived: bool = False

    @property
    def items_total(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))


@dataclass(frozen=True)
class InventoryAdjustment:
    """Stock correction produced by the inventory-management collaborator."""

    adjustment_id: str
    barcode: str
    product_name: str
    quantity: int
    adjustment_type: AdjustmentType
    reason: AdjustmentReason
    effective_at: datetime
    notes: str = ""


@dataclass(frozen=True)
class ReturnItem:
    """Quantity of one order line handed back, with its refund."""

    barcode: str
    name: str
    category: str
    returned_quantity: int
    original_quantity: int
    refund_per_unit: Decimal
    total_refund: Decimal


@dataclass(frozen=True)
class OrderReturn:
    """Full return, partial return or cancellation of a recorded order.

    A return starts ``pending``. Processing it restores stock; rejecting it
    closes it without restoring anything.
    """

    return_id: str
    return_number: str
    order_id: str
    order_number: str
    return_type: ReturnType
    reason: ReturnReason
    items: tuple[ReturnItem, ...]
    refund_amount: Decimal
    created_at: datetime
    status: ReturnStatus = ReturnStatus.PENDING
    other_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    stock_restored: bool = False
    notes: str = ""
    status_notes: Optional[str] = None

    @property
    def returned_quantities(self) -> dict[str, int]:
        quantities: dict[str, int] = {}
        for item in self.items:
            quantities[item.barcode] = quantities.get(item.barcode, 0) + item.returned_quantity
        return quantities


@dataclass(frozen=True)
class Category:
    """Catalogue category providing default margin and tax percentages."""

    category_id: str
    name: str
    default_margin_percent: Decimal
    default_tax_percent: Decimal
    sort_order: int = 0


@dataclass(frozen=True)
class OrderSnapshot:
    """Historical orders returned by a fetch, split by archival state."""

    active_orders: tuple[Order, ...] = ()
    archived_orders: tuple[Order, ...] = ()

    @property
    def all_orders(self) -> list[Order]:
        return [*self.active_orders, *self.archived_orders]


@dataclass(frozen=True)
class CheckoutRequest:
    """Payload handed to the order-recording collaborator at checkout."""

    items: tuple[OrderItem, ...]
    payment_method: PaymentMethod
    discount_amount: Decimal
    tax_breakdown: tuple[TaxBucket, ...]
    invoice_type: InvoiceType = InvoiceType.SIMPLIFIED
    customer_name: Optional[str] = None
    customer_tax_id: Optional[str] = None
    customer_notes: str = ""
    print_receipt: bool = False
    warnings: tuple[str, ...] = field(default=(), compare=False)

    @property
    def subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    @property
    def total_amount(self) -> Decimal:
        return self.subtotal - self.discount_amount


__all__ = [
    "PricedItem",
    "LegacyItem",
    "LineItem",
    "OrderItem",
    "TaxBucket",
    "Order",
    "InventoryAdjustment",
    "ReturnItem",
    "OrderReturn",
    "Category",
    "OrderSnapshot",
    "CheckoutRequest",
]
