"""Shelf-price formula, tax decomposition and price consistency checks.

The sale price of a product is derived from its cost basis, its margin
percentage and its VAT percentage in four steps::

    profit_amount    = round2(cost_basis * margin / 100)
    price_before_tax = round2(cost_basis + profit_amount)
    tax_amount       = round2(price_before_tax * tax / 100)
    sale_price       = round2(price_before_tax + tax_amount)

Every step is rounded half away from zero to cents before the next step
consumes it. Two independent evaluations (checkout, order recording, audit)
only agree because of that intermediate rounding, so the helpers in this
module are the single implementation shared by the cart, the checkout
submission and the analytics audit.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Sequence, Union

from . import log
from .constants import CENT, PRICE_TOLERANCE, TAX_RATES
from .errors import InvalidInput
from .models import Category, LegacyItem, OrderItem, PricedItem, TaxBucket

Number = Union[Decimal, int, float, str]
TaxableItem = Union[PricedItem, LegacyItem, OrderItem]

ONE_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PriceBreakdown:
    """Every intermediate amount produced by :func:`calculate_sale_price`."""

    cost_basis: Decimal
    profit_amount: Decimal
    price_before_tax: Decimal
    tax_amount: Decimal
    sale_price: Decimal


@dataclass(frozen=True)
class LegacyDefaults:
    """Tax and margin assumed for line items that carry no pricing inputs."""

    tax_percent: Decimal
    margin_percent: Decimal


@dataclass(frozen=True)
class PriceCheck:
    """Outcome of comparing a local price with an independently computed one."""

    matches: bool
    local_price: Decimal
    remote_price: Decimal
    difference: Decimal
    cost_basis: Decimal
    tax_percent: Decimal
    margin_percent: Decimal


def to_decimal(value: Number, field_name: str = "value") -> Decimal:
    """Coerce user or collaborator input into a finite :class:`Decimal`.

    Floats travel through ``str`` so that ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion.

    Raises:
        InvalidInput: If ``value`` is a boolean, cannot be parsed, or is not
            finite.
    """
    if isinstance(value, bool):
        raise InvalidInput(f"{field_name} must be numeric, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise InvalidInput(f"{field_name} must be numeric, got {value!r}") from exc
    if not result.is_finite():
        raise InvalidInput(f"{field_name} must be finite, got {value!r}")
    return result


def parse_decimal_input(raw: Union[str, Number], field_name: str = "value") -> Decimal:
    """Parse keyboard input that may use a comma as decimal separator."""
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            raise InvalidInput(f"{field_name} cannot be blank")
        return to_decimal(text.replace(",", "."), field_name)
    return to_decimal(raw, field_name)


def round2(value: Decimal) -> Decimal:
    """Round to cents, half away from zero."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _require_nonnegative(value: Decimal, field_name: str) -> Decimal:
    if value < 0:
        log.error("%s validation failed: %s", field_name, value)
        raise InvalidInput(f"{field_name} must be zero or positive")
    return value


def calculate_sale_price(cost_basis: Number, tax_percent: Number, margin_percent: Number) -> PriceBreakdown:
    """Derive the shelf price from cost basis, VAT and margin percentages.

    Args:
        cost_basis: Unit cost of the product, non-negative.
        tax_percent: VAT percentage applied after the margin.
        margin_percent: Markup percentage applied to the cost basis.

    Returns:
        PriceBreakdown: The profit, pre-tax price, tax and final sale price,
            each rounded to cents.

    Raises:
        InvalidInput: If any input is non-numeric or negative.
    """
    cost = _require_nonnegative(to_decimal(cost_basis, "cost_basis"), "cost_basis")
    tax = _require_nonnegative(to_decimal(tax_percent, "tax_percent"), "tax_percent")
    margin = _require_nonnegative(to_decimal(margin_percent, "margin_percent"), "margin_percent")

    profit_amount = round2(cost * margin / ONE_HUNDRED)
    price_before_tax = round2(cost + profit_amount)
    tax_amount = round2(price_before_tax * tax / ONE_HUNDRED)
    sale_price = round2(price_before_tax + tax_amount)
    return PriceBreakdown(
        cost_basis=cost,
        profit_amount=profit_amount,
        price_before_tax=price_before_tax,
        tax_amount=tax_amount,
        sale_price=sale_price,
    )


def calculate_final_price(cost_basis: Number, tax_percent: Number, margin_percent: Number) -> Decimal:
    """Shorthand returning only the sale price."""
    return calculate_sale_price(cost_basis, tax_percent, margin_percent).sale_price


def require_positive_cost_basis(cost_basis: Number) -> Decimal:
    """Reject a zero or negative cost basis before pricing a product.

    The formula itself accepts zero, but a product priced from nothing is
    treated as invalid input by checkout and catalogue flows.
    """
    cost = to_decimal(cost_basis, "cost_basis")
    if cost <= 0:
        log.error("Cost basis validation failed: %s", cost)
        raise InvalidInput("Cost basis must be greater than zero")
    return cost


def require_supported_tax_rate(tax_percent: Number) -> Decimal:
    """Validate that ``tax_percent`` is one of :data:`TAX_RATES`."""
    tax = to_decimal(tax_percent, "tax_percent")
    if tax not in TAX_RATES:
        log.error("Unsupported tax rate: %s", tax)
        raise InvalidInput(f"Unsupported tax rate {tax}; expected one of {TAX_RATES}")
    return tax


def resolve_pricing_defaults(
    category: Category,
    margin_percent: Optional[Number] = None,
    tax_percent: Optional[Number] = None,
) -> tuple[Decimal, Decimal]:
    """Return explicit margin/tax values, falling back to category defaults."""
    margin = (
        to_decimal(margin_percent, "margin_percent")
        if margin_percent is not None
        else category.default_margin_percent
    )
    tax = to_decimal(tax_percent, "tax_percent") if tax_percent is not None else category.default_tax_percent
    return margin, tax


def check_sale_price(
    cost_basis: Number,
    tax_percent: Number,
    margin_percent: Number,
    remote_sale_price: Number,
    *,
    tolerance: Decimal = PRICE_TOLERANCE,
) -> PriceCheck:
    """Recompute a sale price locally and compare it with a remote figure."""
    local = calculate_sale_price(cost_basis, tax_percent, margin_percent)
    remote = to_decimal(remote_sale_price, "remote_sale_price")
    difference = abs(local.sale_price - remote)
    return PriceCheck(
        matches=difference <= tolerance,
        local_price=local.sale_price,
        remote_price=remote,
        difference=difference,
        cost_basis=local.cost_basis,
        tax_percent=to_decimal(tax_percent, "tax_percent"),
        margin_percent=to_decimal(margin_percent, "margin_percent"),
    )


def verify_sale_price(
    cost_basis: Number,
    tax_percent: Number,
    margin_percent: Number,
    remote_sale_price: Number,
    *,
    tolerance: Decimal = PRICE_TOLERANCE,
) -> bool:
    """Return whether the remote sale price agrees with the local formula.

    A mismatch never blocks the caller; it is logged as a warning carrying the
    inputs and both prices so it can be audited.
    """
    result = check_sale_price(
        cost_basis,
        tax_percent,
        margin_percent,
        remote_sale_price,
        tolerance=tolerance,
    )
    if not result.matches:
        log.warning(
            "Price mismatch: local=%s remote=%s difference=%s (cost=%s tax=%s margin=%s)",
            result.local_price,
            result.remote_price,
            result.difference,
            result.cost_basis,
            result.tax_percent,
            result.margin_percent,
        )
    return result.matches


def resolve_pricing_inputs(item: TaxableItem, legacy_defaults: Optional[LegacyDefaults]) -> tuple[Decimal, Decimal, Decimal]:
    """Return ``(cost_basis, tax_percent, margin_percent)`` for an item."""
    if not isinstance(item, LegacyItem):
        return item.cost_basis, item.tax_percent, item.margin_percent

    if legacy_defaults is None:
        log.error("Line '%s' has no pricing inputs and no legacy defaults are configured", item.barcode)
        raise InvalidInput(f"Line '{item.barcode}' lacks cost, margin and tax information")

    tax = legacy_defaults.tax_percent
    margin = legacy_defaults.margin_percent
    divisor = (1 + margin / ONE_HUNDRED) * (1 + tax / ONE_HUNDRED)
    cost = item.unit_price / divisor
    log.warning(
        "Back-solving cost basis for legacy line '%s' (price=%s tax=%s margin=%s)",
        item.barcode,
        item.unit_price,
        tax,
        margin,
    )
    return cost, tax, margin


def calculate_tax_breakdown(
    items: Iterable[TaxableItem],
    *,
    legacy_defaults: Optional[LegacyDefaults] = None,
) -> List[TaxBucket]:
    """Group line items by VAT rate into base, tax and taxable subtotals.

    The pricing formula runs once per item; its pre-tax price, tax amount and
    sale price are multiplied by the item quantity and accumulated into the
    bucket of the item's rate.

    Args:
        items: Priced, legacy or stored order items.
        legacy_defaults: Tax and margin used to back-solve the cost basis of
            :class:`LegacyItem` lines. Without it legacy lines are rejected.

    Returns:
        list[TaxBucket]: One bucket per distinct rate, sorted ascending.

    Raises:
        InvalidInput: If a legacy line is present and no defaults are given.
    """
    totals: Dict[Decimal, list[Decimal]] = {}
    for item in items:
        cost, tax, margin = resolve_pricing_inputs(item, legacy_defaults)
        breakdown = calculate_sale_price(cost, tax, margin)
        quantity = Decimal(item.quantity)
        bucket = totals.setdefault(tax, [Decimal("0"), Decimal("0"), Decimal("0")])
        bucket[0] += breakdown.price_before_tax * quantity
        bucket[1] += breakdown.tax_amount * quantity
        bucket[2] += breakdown.sale_price * quantity

    result = [
        TaxBucket(rate=rate, base_amount=base, tax_amount=tax_amount, taxable_amount=taxable)
        for rate, (base, tax_amount, taxable) in sorted(totals.items())
    ]
    log.debug("Calculated tax breakdown with %d rate buckets", len(result))
    return result


def tax_breakdown_discrepancy(items: Sequence[TaxableItem], buckets: Iterable[TaxBucket]) -> Decimal:
    """Absolute gap between bucket taxable totals and the items' line totals."""
    taxable = sum((bucket.taxable_amount for bucket in buckets), Decimal("0"))
    lines = sum((item.line_total for item in items), Decimal("0"))
    return abs(taxable - lines)


__all__ = [
    "PriceBreakdown",
    "LegacyDefaults",
    "PriceCheck",
    "to_decimal",
    "parse_decimal_input",
    "round2",
    "calculate_sale_price",
    "calculate_final_price",
    "require_positive_cost_basis",
    "require_supported_tax_rate",
    "resolve_pricing_defaults",
    "check_sale_price",
    "verify_sale_price",
    "resolve_pricing_inputs",
    "calculate_tax_breakdown",
    "tax_breakdown_discrepancy",
]
