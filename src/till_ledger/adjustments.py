"""Inventory adjustment impact analysis.

Adjustments are grouped per product barcode into increase/decrease counts, a
net quantity and an estimated loss. How a decrease translates into money is
delegated to a valuation callable so callers can plug in real unit costs;
:func:`flat_unit_valuation` is only a stand-in for when no cost data is
available.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from . import log
from .constants import DEFAULT_LOSS_PER_UNIT, AdjustmentType
from .models import InventoryAdjustment

Valuation = Callable[[InventoryAdjustment], Decimal]


@dataclass
class AdjustmentImpact:
    """Per-product summary of inventory adjustments."""

    barcode: str
    product_name: str
    latest_date: datetime
    decrease_count: int = 0
    increase_count: int = 0
    net_quantity: int = 0
    estimated_loss: Decimal = Decimal("0")
    adjustments: List[InventoryAdjustment] = field(default_factory=list, repr=False)


def flat_unit_valuation(loss_per_unit: Decimal = DEFAULT_LOSS_PER_UNIT) -> Valuation:
    """Value every lost unit at the same fixed amount."""

    def _value(adjustment: InventoryAdjustment) -> Decimal:
        return loss_per_unit * adjustment.quantity

    return _value


def unit_cost_valuation(unit_costs: Mapping[str, Decimal]) -> Valuation:
    """Value lost units at each product's cost basis.

    Barcodes missing from ``unit_costs`` are valued at zero and logged.
    """

    def _value(adjustment: InventoryAdjustment) -> Decimal:
        cost = unit_costs.get(adjustment.barcode)
        if cost is None:
            log.warning("No unit cost for '%s'; valuing adjustment at zero", adjustment.barcode)
            return Decimal("0")
        return cost * adjustment.quantity

    return _value


def analyze_adjustments(
    adjustments: Iterable[InventoryAdjustment],
    valuation: Optional[Valuation] = None,
) -> List[AdjustmentImpact]:
    """Summarise adjustments per product, most costly first.

    Args:
        adjustments: Immutable adjustment records in any order.
        valuation: Converts a decrease into a loss amount. Defaults to
            :func:`flat_unit_valuation`.

    Returns:
        list[AdjustmentImpact]: One entry per barcode sorted by estimated loss
            descending; products with equal loss keep first-seen order.
    """
    value_of = valuation or flat_unit_valuation()
    impacts: Dict[str, AdjustmentImpact] = {}
    for adjustment in adjustments:
        impact = impacts.get(adjustment.barcode)
        if impact is None:
            impact = AdjustmentImpact(
                barcode=adjustment.barcode,
                product_name=adjustment.product_name,
                latest_date=adjustment.effective_at,
            )
            impacts[adjustment.barcode] = impact

        impact.adjustments.append(adjustment)
        if adjustment.adjustment_type is AdjustmentType.DECREASE:
            impact.decrease_count += 1
            impact.net_quantity -= adjustment.quantity
            impact.estimated_loss += value_of(adjustment)
        else:
            impact.increase_count += 1
            impact.net_quantity += adjustment.quantity

        if adjustment.effective_at > impact.latest_date:
            impact.latest_date = adjustment.effective_at

    ranked = sorted(impacts.values(), key=lambda impact: impact.estimated_loss, reverse=True)
    log.debug("Analyzed adjustments for %d products", len(ranked))
    return ranked


__all__ = [
    "AdjustmentImpact",
    "Valuation",
    "flat_unit_valuation",
    "unit_cost_valuation",
    "analyze_adjustments",
]
