"""Unit tests for report windows, category filtering, aggregation and ranking."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from till_ledger import analytics
from till_ledger.constants import PaymentMethod, Period
from till_ledger.errors import InvalidInput, InvalidRange
from till_ledger.models import OrderSnapshot

NOW = datetime(2024, 6, 30, 18, 30, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Date ranges
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("period", "days"),
    [
        (Period.LAST_7_DAYS, 7),
        (Period.LAST_30_DAYS, 30),
        (Period.LAST_3_MONTHS, 90),
        (Period.LAST_6_MONTHS, 180),
        (Period.LAST_1_YEAR, 365),
    ],
)
def test_resolve_date_range_fixed_periods(period, days):
    window = analytics.resolve_date_range(period, now=NOW)

    assert window.end == NOW
    assert window.start == NOW - timedelta(days=days)


def test_resolve_date_range_accepts_period_text():
    window = analytics.resolve_date_range("last-7-days", now=NOW)
    assert window.end - window.start == timedelta(days=7)


def test_resolve_date_range_rejects_unknown_period():
    with pytest.raises(InvalidInput):
        analytics.resolve_date_range("yesterday", now=NOW)


def test_resolve_date_range_custom_dates_cover_whole_days():
    window = analytics.resolve_date_range(Period.CUSTOM, date(2024, 1, 1), date(2024, 1, 31))

    assert window.start == datetime(2024, 1, 1, tzinfo=UTC)
    assert window.end == datetime(2024, 1, 31, 23, 59, 59, 999999, tzinfo=UTC)
    assert window.contains(datetime(2024, 1, 31, 22, 0, tzinfo=UTC))


def test_resolve_date_range_custom_same_day_is_valid():
    window = analytics.resolve_date_range(Period.CUSTOM, date(2024, 2, 2), date(2024, 2, 2))
    assert window.start < window.end


@pytest.mark.parametrize(
    ("start", "end"),
    [(None, date(2024, 1, 1)), (date(2024, 1, 1), None), (None, None)],
)
def test_resolve_date_range_custom_requires_both_bounds(start, end):
    with pytest.raises(InvalidRange):
        analytics.resolve_date_range(Period.CUSTOM, start, end)


def test_resolve_date_range_custom_rejects_inverted_bounds():
    with pytest.raises(InvalidRange):
        analytics.resolve_date_range(Period.CUSTOM, date(2024, 2, 1), date(2024, 1, 1))


def test_resolve_date_range_accepts_nanosecond_bounds():
    start = datetime(2024, 1, 1, 0, 0, 0, 250, tzinfo=UTC)
    end = datetime(2024, 1, 31, 23, 59, 59, 999999, tzinfo=UTC)

    window = analytics.resolve_date_range(
        Period.CUSTOM,
        analytics.to_nanoseconds(start),
        analytics.to_nanoseconds(end),
    )

    assert (window.start, window.end) == (start, end)
    assert window.start_ns == 1_704_067_200_000_250_000


def test_naive_datetimes_are_read_as_utc():
    window = analytics.resolve_date_range(
        Period.CUSTOM,
        datetime(2024, 1, 1, 8, 0),
        datetime(2024, 1, 1, 9, 0),
    )
    assert window.start.tzinfo is UTC


def test_nanosecond_conversion_is_exact():
    instant = datetime(2024, 1, 1, 0, 0, 0, 123456, tzinfo=UTC)

    value = analytics.to_nanoseconds(instant)

    assert value == 1_704_067_200_123_456_000
    assert analytics.from_nanoseconds(value) == instant
    assert analytics.DateRange(instant, instant).start_ns == value


# ---------------------------------------------------------------------------
# Category filter
# ---------------------------------------------------------------------------


def test_filter_orders_without_category_keeps_everything(order_factory, order_item_factory):
    active = order_factory("O1", items=[order_item_factory("B1")])
    archived = order_factory("O2", items=[order_item_factory("B2")], archived=True)

    result = analytics.filter_orders(OrderSnapshot((active,), (archived,)))

    assert result.orders == (active, archived)
    assert (result.active_count, result.archived_count) == (1, 1)


def test_filter_orders_restricts_items_and_recomputes_totals(order_factory, order_item_factory):
    """Only matching items survive and the total becomes their sum; discount is kept."""

    order = order_factory(
        "O1",
        items=[
            order_item_factory("B1", category="Drinks", quantity=2),
            order_item_factory("B2", category="Snacks"),
        ],
        discount="1.00",
    )
    snapshot = OrderSnapshot(active_orders=(order,))

    result = analytics.filter_orders(snapshot, "Drinks")

    (filtered,) = result.orders
    assert [item.barcode for item in filtered.items] == ["B1"]
    assert filtered.total_amount == Decimal("31.46")
    assert filtered.discount_amount == Decimal("1.00")
    assert order.total_amount == Decimal("46.19")


def test_filter_orders_drops_orders_without_matches(order_factory, order_item_factory):
    snapshot = OrderSnapshot(
        active_orders=(
            order_factory("O1", items=[order_item_factory("B1", category="Drinks")]),
            order_factory("O2", items=[order_item_factory("B2", category="Snacks")]),
        ),
        archived_orders=(order_factory("O3", items=[order_item_factory("B3", category="Drinks")], archived=True),),
    )

    result = analytics.filter_orders(snapshot, "Drinks")

    assert [order.order_id for order in result.orders] == ["O1", "O3"]
    assert (result.active_count, result.archived_count) == (1, 1)


def test_filter_orders_unknown_category_is_empty_not_error(order_factory, order_item_factory):
    snapshot = OrderSnapshot(active_orders=(order_factory("O1", items=[order_item_factory("B1")]),))

    result = analytics.filter_orders(snapshot, "Nonexistent")

    assert result.is_empty
    assert (result.active_count, result.archived_count) == (0, 0)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def test_aggregate_orders_totals(order_factory, order_item_factory):
    orders = [
        order_factory("O1", items=[order_item_factory("B1", quantity=2)], discount="1.46"),
        order_factory(
            "O2",
            items=[order_item_factory("B2", category="Snacks", cost_basis="5.00", margin_percent="20", tax_percent="10")],
            payment_method=PaymentMethod.CARD,
        ),
    ]

    result = analytics.aggregate_orders(orders)

    assert result.order_count == 2
    assert result.total_revenue == Decimal("30.00") + Decimal("6.60")
    assert result.total_discount == Decimal("1.46")
    assert result.total_profit == Decimal("7.00")
    assert result.total_cost_basis == Decimal("25.00")
    assert result.total_tax == Decimal("5.46") + Decimal("0.60")
    assert result.average_margin == Decimal("28")
    assert result.category_profit == {"General": Decimal("6.00"), "Snacks": Decimal("1.00")}
    assert result.payment_method_profit == {PaymentMethod.CASH: Decimal("6.00"), PaymentMethod.CARD: Decimal("1.00")}


def test_aggregate_orders_sums_category_profit_equals_total(order_factory, order_item_factory):
    orders = [
        order_factory(
            f"O{index}",
            items=[
                order_item_factory(f"B{index}", category=category, quantity=index, cost_basis="3.33", margin_percent="17")
                for category in ("A", "B", "C")
            ],
        )
        for index in range(1, 4)
    ]

    result = analytics.aggregate_orders(orders)

    assert sum(result.category_profit.values()) == result.total_profit
    assert sum(result.payment_method_profit.values()) == result.total_profit
    assert sum(stats.profit for stats in result.product_stats.values()) == result.total_profit


def test_aggregate_orders_product_stats_and_first_seen_margin(order_factory, order_item_factory):
    orders = [
        order_factory("O1", items=[order_item_factory("B1", quantity=2, margin_percent="30")]),
        order_factory("O2", items=[order_item_factory("B1", quantity=1, margin_percent="50")]),
    ]

    stats = analytics.aggregate_orders(orders).product_stats["B1"]

    assert stats.quantity == 3
    assert stats.margin_percent == Decimal("30")
    assert stats.profit == Decimal("11.00")


def test_aggregate_orders_margin_histogram_counts_item_lines(order_factory, order_item_factory):
    order = order_factory(
        "O1",
        items=[
            order_item_factory("B1", margin_percent="5", quantity=10),
            order_item_factory("B2", margin_percent="10"),
            order_item_factory("B3", margin_percent="39.99"),
            order_item_factory("B4", margin_percent="40"),
            order_item_factory("B5", margin_percent="120"),
        ],
    )

    histogram = analytics.aggregate_orders([order]).margin_histogram

    assert histogram == {"0-10": 1, "10-20": 1, "20-30": 0, "30-40": 1, "40+": 2}


def test_aggregate_orders_empty_has_zero_average_margin():
    result = analytics.aggregate_orders([])

    assert result.order_count == 0
    assert result.average_margin == Decimal("0")


# ---------------------------------------------------------------------------
# Ranking and chart series
# ---------------------------------------------------------------------------


def test_top_products_ties_broken_by_profit():
    stats = {
        "X": analytics.ProductStats("X", "X", Decimal("10"), profit=Decimal("10"), quantity=5),
        "Y": analytics.ProductStats("Y", "Y", Decimal("10"), profit=Decimal("20"), quantity=5),
        "Z": analytics.ProductStats("Z", "Z", Decimal("10"), profit=Decimal("99"), quantity=1),
    }

    ranked = analytics.top_products(stats)

    assert [entry.barcode for entry in ranked] == ["Y", "X", "Z"]
    assert len(analytics.top_products(stats, 2)) == 2


def test_profit_chart_series_by_category_is_sorted_and_unbounded():
    result = analytics.AggregationResult(category_profit={"A": Decimal("5"), "B": Decimal("10")})

    series = analytics.profit_chart_series(result, category_filter_active=False)

    assert [(point.name, point.value) for point in series] == [("B", Decimal("10")), ("A", Decimal("5"))]


def test_profit_chart_series_by_product_keeps_top_ten():
    result = analytics.AggregationResult(
        product_stats={
            f"P{index}": analytics.ProductStats(f"P{index}", f"Product {index}", Decimal("0"), profit=Decimal(index))
            for index in range(15)
        }
    )

    series = analytics.profit_chart_series(result, category_filter_active=True)

    assert len(series) == 10
    assert series[0].name == "Product 14"
    assert series[-1].value == Decimal("5")


def test_margin_chart_series_drops_empty_bands():
    series = analytics.margin_chart_series({"0-10": 0, "10-20": 2, "40+": 1})
    assert [(point.name, point.value) for point in series] == [("10-20", 2), ("40+", 1)]


def test_payment_method_series_uses_labels():
    result = analytics.AggregationResult(payment_method_profit={PaymentMethod.CARD: Decimal("3")})
    assert analytics.payment_method_series(result) == [analytics.ChartPoint("Card", Decimal("3"))]


def test_orders_in_range_is_inclusive(order_factory):
    window = analytics.DateRange(NOW - timedelta(days=1), NOW)
    inside = order_factory("O1", timestamp=NOW)
    outside = order_factory("O2", timestamp=NOW + timedelta(microseconds=1))

    assert analytics.orders_in_range([inside, outside], window) == [inside]
