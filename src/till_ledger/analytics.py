"""Sales analytics: report windows, category filtering, aggregation, ranking.

All functions here are synchronous and pure. They take already-fetched
collections of :class:`~till_ledger.models.Order` records and return new
values; nothing is cached or mutated between calls, so a report can be
recomputed whenever its filters change.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from . import log
from .constants import (
    DEFAULT_TOP_PRODUCTS,
    MARGIN_BANDS,
    PERIOD_DAYS,
    PaymentMethod,
    Period,
)
from .errors import InvalidInput, InvalidRange
from .models import Order, OrderSnapshot

ONE_HUNDRED = Decimal("100")
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

Bound = Union[date, datetime, int]


@dataclass(frozen=True)
class DateRange:
    """Inclusive report window expressed as timezone-aware instants."""

    start: datetime
    end: datetime

    @property
    def start_ns(self) -> int:
        return to_nanoseconds(self.start)

    @property
    def end_ns(self) -> int:
        return to_nanoseconds(self.end)

    def contains(self, instant: datetime) -> bool:
        return self.start <= _as_aware(instant) <= self.end


@dataclass(frozen=True)
class FilteredOrders:
    """Orders kept by :func:`filter_orders` plus active/archived counts."""

    orders: tuple[Order, ...]
    active_count: int
    archived_count: int

    @property
    def is_empty(self) -> bool:
        return not self.orders


@dataclass
class ProductStats:
    """Running per-barcode totals collected by :func:`aggregate_orders`."""

    barcode: str
    name: str
    margin_percent: Decimal
    profit: Decimal = Decimal("0")
    revenue: Decimal = Decimal("0")
    quantity: int = 0


@dataclass
class AggregationResult:
    """Revenue, profit and distribution figures for a set of orders."""

    total_revenue: Decimal = Decimal("0")
    total_profit: Decimal = Decimal("0")
    total_cost_basis: Decimal = Decimal("0")
    total_discount: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    order_count: int = 0
    category_profit: Dict[str, Decimal] = field(default_factory=dict)
    product_stats: Dict[str, ProductStats] = field(default_factory=dict)
    payment_method_profit: Dict[PaymentMethod, Decimal] = field(default_factory=dict)
    margin_histogram: Dict[str, int] = field(
        default_factory=lambda: {label: 0 for label, _ in MARGIN_BANDS}
    )

    @property
    def average_margin(self) -> Decimal:
        """Cost-weighted margin percentage across every aggregated item."""
        if self.total_cost_basis > 0:
            return self.total_profit / self.total_cost_basis * ONE_HUNDRED
        return Decimal("0")


@dataclass(frozen=True)
class ChartPoint:
    name: str
    value: Union[Decimal, int]


def to_nanoseconds(instant: datetime) -> int:
    """Convert an instant to integer nanoseconds since the Unix epoch."""
    return (_as_aware(instant) - EPOCH) // timedelta(microseconds=1) * 1000


def from_nanoseconds(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value // 1000)


def _as_aware(instant: datetime) -> datetime:
    return instant if instant.tzinfo is not None else instant.replace(tzinfo=UTC)


def _lower_bound(value: Bound) -> datetime:
    if isinstance(value, int):
        return from_nanoseconds(value)
    if isinstance(value, datetime):
        return _as_aware(value)
    return datetime.combine(value, time.min, tzinfo=UTC)


def _upper_bound(value: Bound) -> datetime:
    if isinstance(value, int):
        return from_nanoseconds(value)
    if isinstance(value, datetime):
        return _as_aware(value)
    return datetime.combine(value, time.max, tzinfo=UTC)


def coerce_period(period: Union[Period, str]) -> Period:
    try:
        return Period(period)
    except ValueError as exc:
        log.error("Unknown report period: %s", period)
        raise InvalidInput(f"Unknown report period: {period}") from exc


def resolve_date_range(
    period: Union[Period, str],
    custom_from: Optional[Bound] = None,
    custom_to: Optional[Bound] = None,
    *,
    now: Optional[datetime] = None,
) -> DateRange:
    """Map a period selector, or explicit bounds, to an inclusive window.

    Fixed periods end at ``now`` and start the period's number of days
    earlier. ``custom`` requires both bounds; plain dates cover the whole
    day, naive datetimes are read as UTC and integers are nanoseconds since
    the Unix epoch.

    Raises:
        InvalidInput: If ``period`` is not a known selector.
        InvalidRange: If a custom bound is missing or ``from`` is after
            ``to``.
    """
    selected = coerce_period(period)
    if selected is Period.CUSTOM:
        if custom_from is None or custom_to is None:
            log.error("Custom range requires both bounds (from=%s, to=%s)", custom_from, custom_to)
            raise InvalidRange("Custom range requires both a start and an end date")
        start = _lower_bound(custom_from)
        end = _upper_bound(custom_to)
        if start > end:
            log.error("Custom range is inverted: %s > %s", start, end)
            raise InvalidRange("The start date must be on or before the end date")
        return DateRange(start=start, end=end)

    end = _as_aware(now) if now is not None else datetime.now(UTC)
    return DateRange(start=end - timedelta(days=PERIOD_DAYS[selected]), end=end)


def filter_orders(snapshot: OrderSnapshot, category_name: Optional[str] = None) -> FilteredOrders:
    """Restrict orders to the items of one category.

    Without a category every order is returned unchanged. With a category,
    each order keeps only matching items, orders left empty are dropped and
    ``total_amount`` becomes the sum of the kept line totals. The discount
    is carried over unscaled. Active and archived counts are taken over the
    original partitions using the same "has a matching item" test.
    """
    if category_name is None:
        return FilteredOrders(
            orders=tuple(snapshot.all_orders),
            active_count=len(snapshot.active_orders),
            archived_count=len(snapshot.archived_orders),
        )

    def _has_match(order: Order) -> bool:
        return any(item.category == category_name for item in order.items)

    kept: List[Order] = []
    for order in snapshot.all_orders:
        items = tuple(item for item in order.items if item.category == category_name)
        if not items:
            continue
        total = sum((item.line_total for item in items), Decimal("0"))
        kept.append(replace(order, items=items, total_amount=total))

    result = FilteredOrders(
        orders=tuple(kept),
        active_count=sum(1 for order in snapshot.active_orders if _has_match(order)),
        archived_count=sum(1 for order in snapshot.archived_orders if _has_match(order)),
    )
    log.debug("Category '%s' kept %d of %d orders", category_name, len(kept), len(snapshot.all_orders))
    return result


def margin_band(margin_percent: Decimal) -> str:
    """Return the histogram band label for a margin percentage."""
    label = MARGIN_BANDS[0][0]
    for candidate, lower in MARGIN_BANDS:
        if margin_percent >= lower:
            label = candidate
    return label


def item_profit(cost_basis: Decimal, margin_percent: Decimal, quantity: int) -> Decimal:
    return cost_basis * margin_percent / ONE_HUNDRED * quantity


def aggregate_orders(orders: Iterable[Order]) -> AggregationResult:
    """Accumulate revenue, profit, cost, discount and tax over orders.

    Revenue and discount come from the order headers. Profit, cost and tax
    are recomputed per item from the stored cost basis, margin and tax
    percentages without intermediate rounding. Items are grouped by
    category, by barcode and into margin bands (counted per item line);
    payment-method profit is summed per order from that order's own items.
    """
    result = AggregationResult()
    for order in orders:
        result.order_count += 1
        result.total_revenue += order.total_amount
        result.total_discount += order.discount_amount

        for item in order.items:
            profit = item_profit(item.cost_basis, item.margin_percent, item.quantity)
            unit_before_tax = item.cost_basis + item.cost_basis * item.margin_percent / ONE_HUNDRED
            result.total_profit += profit
            result.total_cost_basis += item.cost_basis * item.quantity
            result.total_tax += unit_before_tax * item.tax_percent / ONE_HUNDRED * item.quantity

            result.category_profit[item.category] = result.category_profit.get(item.category, Decimal("0")) + profit

            stats = result.product_stats.get(item.barcode)
            if stats is None:
                stats = ProductStats(barcode=item.barcode, name=item.name, margin_percent=item.margin_percent)
                result.product_stats[item.barcode] = stats
            stats.profit += profit
            stats.revenue += item.line_total
            stats.quantity += item.quantity

            result.margin_histogram[margin_band(item.margin_percent)] += 1

        order_profit = sum(
            (item_profit(item.cost_basis, item.margin_percent, item.quantity) for item in order.items),
            Decimal("0"),
        )
        method = order.payment_method
        result.payment_method_profit[method] = result.payment_method_profit.get(method, Decimal("0")) + order_profit

    log.debug(
        "Aggregated %d orders: revenue=%s profit=%s cost=%s",
        result.order_count,
        result.total_revenue,
        result.total_profit,
        result.total_cost_basis,
    )
    return result


def top_products(product_stats: Mapping[str, ProductStats], n: int = DEFAULT_TOP_PRODUCTS) -> List[ProductStats]:
    """Best sellers by quantity, ties broken by higher profit."""
    ranked = sorted(product_stats.values(), key=lambda stats: (-stats.quantity, -stats.profit))
    return ranked[:n]


def profit_chart_series(
    result: AggregationResult,
    *,
    category_filter_active: bool,
    limit: int = DEFAULT_TOP_PRODUCTS,
) -> List[ChartPoint]:
    """Profit series for the category chart.

    Without a category filter every category is listed by profit, highest
    first. With a filter the chart drills down to products and keeps only the
    ``limit`` most profitable ones.
    """
    if not category_filter_active:
        points = [ChartPoint(name=name, value=profit) for name, profit in result.category_profit.items()]
        return sorted(points, key=lambda point: point.value, reverse=True)

    points = [ChartPoint(name=stats.name, value=stats.profit) for stats in result.product_stats.values()]
    return sorted(points, key=lambda point: point.value, reverse=True)[:limit]


def margin_chart_series(histogram: Mapping[str, int]) -> List[ChartPoint]:
    return [ChartPoint(name=label, value=count) for label, count in histogram.items() if count > 0]


def payment_method_series(result: AggregationResult) -> List[ChartPoint]:
    return [ChartPoint(name=method.label, value=profit) for method, profit in result.payment_method_profit.items()]


def orders_in_range(orders: Sequence[Order], window: DateRange) -> List[Order]:
    return [order for order in orders if window.contains(order.timestamp)]


__all__ = [
    "DateRange",
    "FilteredOrders",
    "ProductStats",
    "AggregationResult",
    "ChartPoint",
    "to_nanoseconds",
    "from_nanoseconds",
    "coerce_period",
    "resolve_date_range",
    "filter_orders",
    "margin_band",
    "item_profit",
    "aggregate_orders",
    "top_products",
    "profit_chart_series",
    "margin_chart_series",
    "payment_method_series",
    "orders_in_range",
]
