"""In-progress checkout cart owned by a single session.

A :class:`Cart` is created per checkout session and passed explicitly to
whatever drives it; there is no module-level cart. Persisting a cart across
restarts goes through :meth:`Cart.to_dict` and :meth:`Cart.from_dict` at the
session boundary.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from . import log
from .constants import DEFAULT_MAX_LINE_QUANTITY
from .errors import InvalidInput, MissingReferenceError
from .models import LegacyItem, LineItem, PricedItem, TaxBucket
from .pricing import (
    LegacyDefaults,
    Number,
    calculate_final_price,
    calculate_tax_breakdown,
    parse_decimal_input,
    require_positive_cost_basis,
    require_supported_tax_rate,
    to_decimal,
)


class CartState(str, Enum):
    EMPTY = "empty"
    POPULATED = "populated"


@dataclass(frozen=True)
class CartEntry:
    """Request to put a product in the cart.

    Pricing inputs are optional individually; a line is priced once cost,
    margin and tax are all known. ``unit_price`` overrides the derived price.
    """

    barcode: str
    name: str
    category: str = ""
    quantity: int = 1
    unit_price: Optional[Number] = None
    cost_basis: Optional[Number] = None
    margin_percent: Optional[Number] = None
    tax_percent: Optional[Number] = None
    is_custom: bool = False


@dataclass
class CartLine:
    """Mutable line held by the cart."""

    barcode: str
    name: str
    category: str
    quantity: int
    unit_price: Decimal
    is_custom: bool = False
    cost_basis: Optional[Decimal] = None
    margin_percent: Optional[Decimal] = None
    tax_percent: Optional[Decimal] = None

    @property
    def is_priced(self) -> bool:
        return None not in (self.cost_basis, self.margin_percent, self.tax_percent)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def as_line_item(self) -> LineItem:
        if self.is_priced:
            return PricedItem(
                barcode=self.barcode,
                name=self.name,
                category=self.category,
                quantity=self.quantity,
                cost_basis=self.cost_basis,
                margin_percent=self.margin_percent,
                tax_percent=self.tax_percent,
                unit_price=self.unit_price,
            )
        return LegacyItem(
            barcode=self.barcode,
            name=self.name,
            category=self.category,
            quantity=self.quantity,
            unit_price=self.unit_price,
        )


def _optional_decimal(value: Optional[Number], field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    result = to_decimal(value, field_name)
    if result < 0:
        raise InvalidInput(f"{field_name} must be zero or positive")
    return result


def _cost_basis(value: Optional[Number]) -> Optional[Decimal]:
    if value is None:
        return None
    return require_positive_cost_basis(value)


def _parse_quantity(raw: Union[int, str], max_quantity: int) -> int:
    if isinstance(raw, bool):
        raise InvalidInput(f"Quantity must be an integer, got {raw!r}")
    try:
        quantity = int(str(raw).strip()) if isinstance(raw, str) else int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"Quantity must be an integer, got {raw!r}") from exc
    if quantity != raw and not isinstance(raw, str):
        raise InvalidInput(f"Quantity must be an integer, got {raw!r}")
    if quantity < 1 or quantity > max_quantity:
        raise InvalidInput(f"Quantity must be between 1 and {max_quantity}, got {quantity}")
    return quantity


class Cart:
    """Line items and running totals of one checkout session."""

    def __init__(self, *, max_quantity: int = DEFAULT_MAX_LINE_QUANTITY) -> None:
        self.max_quantity = max_quantity
        self._lines: List[CartLine] = []
        self._lock = threading.Lock()

    @property
    def state(self) -> CartState:
        return CartState.POPULATED if self._lines else CartState.EMPTY

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines)

    @property
    def total(self) -> Decimal:
        """Sum of ``unit_price * quantity``; manual price overrides are kept."""
        return sum((line.line_total for line in self._lines), Decimal("0"))

    @property
    def subtotal(self) -> Decimal:
        return self.total

    def get_line(self, barcode: str) -> CartLine:
        for line in self._lines:
            if line.barcode == barcode:
                return line
        log.warning("Cart lookup failed for barcode '%s'", barcode)
        raise MissingReferenceError(f"Barcode not in cart: {barcode}")

    def _find(self, barcode: str) -> Optional[CartLine]:
        return next((line for line in self._lines if line.barcode == barcode), None)

    def add_item(self, entry: CartEntry) -> CartLine:
        """Insert a product or merge it into the existing line for its barcode.

        Merging adds the quantities and refreshes only the pricing fields the
        entry supplies. When the merged line is fully priced and its pricing
        inputs changed, the unit price is re-derived; an explicit
        ``entry.unit_price`` always wins. Re-scanning a product with the same
        inputs keeps a manual price override.

        Raises:
            InvalidInput: On a bad quantity, a cost basis that is not above zero,
                a negative or unsupported pricing input, or a new line that has
                neither a price nor full pricing inputs. The cart is left unchanged.
        """
        quantity = _parse_quantity(entry.quantity, self.max_quantity)
        cost = _cost_basis(entry.cost_basis)
        margin = _optional_decimal(entry.margin_percent, "margin_percent")
        tax = require_supported_tax_rate(entry.tax_percent) if entry.tax_percent is not None else None
        explicit_price = _optional_decimal(entry.unit_price, "unit_price")

        with self._lock:
            existing = self._find(entry.barcode)
            if existing is not None:
                merged_quantity = existing.quantity + quantity
                if merged_quantity > self.max_quantity:
                    log.warning("Rejected merge for '%s': quantity %s exceeds %s", entry.barcode, merged_quantity, self.max_quantity)
                    raise InvalidInput(f"Quantity must be between 1 and {self.max_quantity}, got {merged_quantity}")
                previous_inputs = (existing.cost_basis, existing.margin_percent, existing.tax_percent)
                existing.quantity = merged_quantity
                existing.cost_basis = cost if cost is not None else existing.cost_basis
                existing.margin_percent = margin if margin is not None else existing.margin_percent
                existing.tax_percent = tax if tax is not None else existing.tax_percent
                existing.category = entry.category or existing.category
                current_inputs = (existing.cost_basis, existing.margin_percent, existing.tax_percent)
                if explicit_price is not None:
                    existing.unit_price = explicit_price
                elif existing.is_priced and current_inputs != previous_inputs:
                    existing.unit_price = calculate_final_price(
                        existing.cost_basis, existing.tax_percent, existing.margin_percent
                    )
                log.info("Merged '%s' into cart (quantity=%s)", entry.barcode, existing.quantity)
                return existing

            line = CartLine(
                barcode=entry.barcode,
                name=entry.name,
                category=entry.category,
                quantity=quantity,
                unit_price=Decimal("0"),
                is_custom=entry.is_custom,
                cost_basis=cost,
                margin_percent=margin,
                tax_percent=tax,
            )
            if explicit_price is not None:
                line.unit_price = explicit_price
            elif line.is_priced:
                line.unit_price = calculate_final_price(cost, tax, margin)
            else:
                log.error("Cannot price new cart line '%s'", entry.barcode)
                raise InvalidInput(f"Line '{entry.barcode}' needs a unit price or cost, margin and tax")
            self._lines.insert(0, line)
            log.info("Added '%s' to cart (quantity=%s, price=%s)", entry.barcode, quantity, line.unit_price)
            return line

    def remove_item(self, barcode: str) -> None:
        with self._lock:
            line = self.get_line(barcode)
            self._lines.remove(line)
        log.info("Removed '%s' from cart", barcode)

    def set_quantity(self, barcode: str, quantity: Union[int, str]) -> CartLine:
        """Replace a line's quantity; out-of-range values leave it untouched."""
        with self._lock:
            line = self.get_line(barcode)
            try:
                line.quantity = _parse_quantity(quantity, self.max_quantity)
            except InvalidInput:
                log.warning("Rejected quantity %r for '%s'", quantity, barcode)
                raise
        log.info("Set quantity of '%s' to %s", barcode, line.quantity)
        return line

    def set_price(self, barcode: str, raw_price: Union[str, Number]) -> CartLine:
        """Override a line's unit price from keyboard input such as ``"12,50"``."""
        with self._lock:
            line = self.get_line(barcode)
            try:
                price = parse_decimal_input(raw_price, "unit_price")
            except InvalidInput:
                log.warning("Rejected price %r for '%s'", raw_price, barcode)
                raise
            if price < 0:
                log.warning("Rejected negative price %s for '%s'", price, barcode)
                raise InvalidInput("unit_price must be zero or positive")
            line.unit_price = price
        log.info("Set price of '%s' to %s", barcode, price)
        return line

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()
        log.info("Cleared cart")

    def line_items(self) -> List[LineItem]:
        return [line.as_line_item() for line in self._lines]

    def tax_breakdown(self, *, legacy_defaults: Optional[LegacyDefaults] = None) -> List[TaxBucket]:
        return calculate_tax_breakdown(self.line_items(), legacy_defaults=legacy_defaults)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the cart with Decimals rendered as strings."""

        def _text(value: Optional[Decimal]) -> Optional[str]:
            return None if value is None else str(value)

        return {
            "max_quantity": self.max_quantity,
            "lines": [
                {
                    "barcode": line.barcode,
                    "name": line.name,
                    "category": line.category,
                    "quantity": line.quantity,
                    "unit_price": str(line.unit_price),
                    "is_custom": line.is_custom,
                    "cost_basis": _text(line.cost_basis),
                    "margin_percent": _text(line.margin_percent),
                    "tax_percent": _text(line.tax_percent),
                }
                for line in self._lines
            ],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Cart":
        cart = cls(max_quantity=int(payload.get("max_quantity", DEFAULT_MAX_LINE_QUANTITY)))
        for raw in payload.get("lines", []):
            cart._lines.append(
                CartLine(
                    barcode=str(raw["barcode"]),
                    name=str(raw["name"]),
                    category=str(raw.get("category") or ""),
                    quantity=_parse_quantity(raw["quantity"], cart.max_quantity),
                    unit_price=to_decimal(raw["unit_price"], "unit_price"),
                    is_custom=bool(raw.get("is_custom", False)),
                    cost_basis=_cost_basis(raw.get("cost_basis")),
                    margin_percent=_optional_decimal(raw.get("margin_percent"), "margin_percent"),
                    tax_percent=_optional_decimal(raw.get("tax_percent"), "tax_percent"),
                )
            )
        return cart


__all__ = ["Cart", "CartEntry", "CartLine", "CartState"]
