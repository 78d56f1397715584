"""Business logic layer for Till Ledger.

This module orchestrates checkout submission, order archiving, returns and
cancellations, inventory adjustment recording and sales reporting. It
consumes the Data Access Layer (DAL) for all workbook I/O and the pure
pricing/analytics modules for every monetary computation, so the rules
enforced here are validation and sequencing only.

Reports are assembled by a :class:`ReportSession`, which talks to an
:class:`OrderGateway` across an async boundary. Only the most recent request
issued on a session is adopted; older requests that finish later are
discarded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Collection, Dict, List, Optional, Protocol, Sequence, Union

from openpyxl import Workbook as NewWorkbook
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import data_manager, log
from .adjustments import AdjustmentImpact, Valuation, analyze_adjustments, flat_unit_valuation
from .analytics import (
    AggregationResult,
    ChartPoint,
    DateRange,
    ProductStats,
    aggregate_orders,
    filter_orders,
    margin_chart_series,
    orders_in_range,
    payment_method_series,
    profit_chart_series,
    resolve_date_range,
    top_products,
)
from .cart import Cart
from .constants import (
    ADJUSTMENT_PAGE_SIZE,
    DEFAULT_TOP_PRODUCTS,
    EXPECTED_SCHEMA_VERSION,
    PRICE_TOLERANCE,
    AdjustmentReason,
    AdjustmentType,
    InvoiceType,
    PaymentMethod,
    Period,
    ReturnReason,
    ReturnStatus,
    ReturnType,
    SheetName,
)
from .errors import BusinessRuleViolation, InvalidInput, MissingReferenceError, UpstreamFailure
from .models import (
    Category,
    CheckoutRequest,
    InventoryAdjustment,
    LineItem,
    Order,
    OrderItem,
    OrderReturn,
    OrderSnapshot,
    ReturnItem,
)
from .pricing import (
    LegacyDefaults,
    Number,
    PriceCheck,
    calculate_tax_breakdown,
    check_sale_price,
    parse_decimal_input,
    require_supported_tax_rate,
    resolve_pricing_inputs,
    round2,
    tax_breakdown_discrepancy,
    to_decimal,
)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class CategoryCommand:
    """User intent for adding a catalogue category."""

    name: str
    default_margin_percent: Number
    default_tax_percent: Number
    sort_order: int = 0


@dataclass(frozen=True)
class AdjustmentCommand:
    """User intent for recording an inventory adjustment."""

    barcode: str
    product_name: str
    quantity: int
    adjustment_type: Union[AdjustmentType, str]
    reason: Union[AdjustmentReason, str]
    timestamp: Optional[datetime] = None
    notes: str = ""


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for returning or cancelling a recorded order.

    ``items`` lists ``(barcode, quantity)`` pairs and is only read for partial
    returns; full returns and cancellations cover every remaining unit.
    """

    order_id: str
    return_type: Union[ReturnType, str]
    reason: Union[ReturnReason, str]
    items: Sequence[tuple[str, int]] = ()
    other_reason: Optional[str] = None
    notes: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ReportRequest:
    """Parameters of one sales report.

    ``top_n`` falls back to the session default when omitted. Custom bounds
    are only read when ``period`` is ``custom``.
    """

    period: Union[Period, str] = Period.LAST_30_DAYS
    custom_from: Optional[Union[date, datetime, int]] = None
    custom_to: Optional[Union[date, datetime, int]] = None
    category_name: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    include_archived: bool = False
    include_adjustments: bool = False
    top_n: Optional[int] = None


@dataclass(frozen=True)
class OrderQuery:
    """Historical order fetch sent to an :class:`OrderGateway`.

    The category is never part of the query; category filtering is local.
    """

    start: datetime
    end: datetime
    payment_method: Optional[PaymentMethod] = None
    include_archived: bool = False


@dataclass(frozen=True)
class AdjustmentQuery:
    start: datetime
    end: datetime
    page_number: int = 0
    page_size: int = ADJUSTMENT_PAGE_SIZE


class OrderGateway(Protocol):
    """Async collaborator that materializes orders and adjustments."""

    async def fetch_orders(self, query: OrderQuery) -> OrderSnapshot:
        ...

    async def fetch_adjustments(self, query: AdjustmentQuery) -> Sequence[InventoryAdjustment]:
        ...


class ReportStatus(str, Enum):
    NOT_REQUESTED = "not_requested"
    EMPTY = "empty"
    READY = "ready"


@dataclass(frozen=True)
class SalesReport:
    """Every figure shown for one adopted report request."""

    window: DateRange
    category_name: Optional[str]
    orders: tuple[Order, ...]
    active_count: int
    archived_count: int
    aggregation: AggregationResult
    top_products: tuple[ProductStats, ...]
    profit_chart: tuple[ChartPoint, ...]
    margin_chart: tuple[ChartPoint, ...]
    payment_chart: tuple[ChartPoint, ...]
    adjustment_impacts: tuple[AdjustmentImpact, ...] = ()


@dataclass(frozen=True)
class ReportOutcome:
    """Result slot of a :class:`ReportSession`.

    ``EMPTY`` means the request ran and matched no orders, which is distinct
    from ``NOT_REQUESTED``.
    """

    status: ReportStatus
    report: Optional[SalesReport] = None
    window: Optional[DateRange] = None


NOT_REQUESTED = ReportOutcome(status=ReportStatus.NOT_REQUESTED)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp, usually sourced
            from a command object.

    Returns:
        datetime: ``candidate`` as-is when provided, otherwise the current UTC
            datetime generated via :func:`datetime.now`.
    """

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business logic layer keeps in-memory caches keyed by domain area
    (categories, orders, adjustments) so repeated queries do not re-scan the
    workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Args:
        context (RuntimeContext): Active runtime context whose cache should be
            pruned.
        *names (str): Bucket identifiers to remove. Missing buckets are
            ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_categories_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "categories")
    if "all" not in bucket:
        all_categories = list(data_manager.iter_categories(context.workbook))
        bucket["all"] = sorted(all_categories, key=lambda category: category.sort_order)
        bucket["by_name"] = {category.name: category for category in all_categories}
        log.debug("Populated categories cache with %d entries", len(all_categories))
    return bucket


def _ensure_orders_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the order cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` orders in workbook order and
            a ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "orders")
    if "all" not in bucket:
        all_orders = list(data_manager.iter_orders(context.workbook))
        bucket["all"] = all_orders
        bucket["by_id"] = {order.order_id: order for order in all_orders}
        log.debug("Populated orders cache with %d entries", len(all_orders))
    return bucket


def _ensure_adjustments_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "adjustments")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_adjustments(context.workbook))
        log.debug("Populated adjustments cache with %d entries", len(bucket["all"]))
    return bucket


def _ensure_returns_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "returns")
    if "all" not in bucket:
        all_returns = list(data_manager.iter_returns(context.workbook))
        bucket["all"] = all_returns
        bucket["by_id"] = {record.return_id: record for record in all_returns}
        log.debug("Populated returns cache with %d entries", len(all_returns))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper resolves ``config.ini``, parses settings, and opens the Excel
    workbook that stores orders and adjustments. The resulting
    :class:`RuntimeContext` bundles the immutable settings with a mutable
    workbook handle and an empty cache store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_categories(context: RuntimeContext) -> List[Category]:
    """Return catalogue categories ordered by their ``sort_order``."""
    return list(_ensure_categories_cache(context)["all"])


def get_category(context: RuntimeContext, name: str) -> Category:
    """Resolve a category by name.

    Raises:
        MissingReferenceError: If no category carries ``name``.
    """
    cache = _ensure_categories_cache(context)
    category = cache["by_name"].get(name)
    if category is None:
        log.warning("Category lookup failed for '%s'", name)
        raise MissingReferenceError(f"Category '{name}' not found")
    return category


def list_orders(context: RuntimeContext, *, include_archived: bool = True) -> List[Order]:
    """Return recorded orders in workbook order.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        include_archived (bool): When ``False`` archived orders are skipped.

    Returns:
        list[Order]: Copy of the cached order list.
    """
    cache = _ensure_orders_cache(context)
    if include_archived:
        return list(cache["all"])
    return [order for order in cache["all"] if not order.archived]


def get_order(context: RuntimeContext, order_id: str) -> Order:
    """Resolve an order record by its identifier.

    Raises:
        MissingReferenceError: If ``order_id`` is absent from the workbook.
    """
    cache = _ensure_orders_cache(context)
    order = cache["by_id"].get(order_id)
    if order is None:
        log.warning("Order lookup failed for '%s'", order_id)
        raise MissingReferenceError(f"Order '{order_id}' not found")
    return order


def list_adjustments(context: RuntimeContext) -> List[InventoryAdjustment]:
    return list(_ensure_adjustments_cache(context)["all"])


def coerce_payment_method(value: Union[PaymentMethod, str]) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError as exc:
        log.error("Unsupported payment method: %s", value)
        raise InvalidInput(f"Unsupported payment method: {value}") from exc


def add_category(context: RuntimeContext, command: CategoryCommand) -> Category:
    """Validate and append a catalogue category.

    Category names are unique. The default tax must be one of the supported
    rates and the default margin must be zero or positive.

    Raises:
        BusinessRuleViolation: If a category with the same name exists.
        InvalidInput: If the margin or tax defaults are invalid.
    """
    name = command.name.strip()
    if not name:
        log.error("Category name validation failed: blank")
        raise InvalidInput("Category name cannot be blank")
    if name in _ensure_categories_cache(context)["by_name"]:
        log.warning("Attempted to add duplicate category '%s'", name)
        raise BusinessRuleViolation(f"Category '{name}' already exists")

    margin = to_decimal(command.default_margin_percent, "default_margin_percent")
    if margin < 0:
        log.error("Category margin validation failed: %s", margin)
        raise InvalidInput("default_margin_percent must be zero or positive")
    tax = require_supported_tax_rate(command.default_tax_percent)

    category = Category(
        category_id=generate_record_id(
            prefix="C",
            taken={existing.category_id for existing in list_categories(context)},
        ),
        name=name,
        default_margin_percent=margin,
        default_tax_percent=tax,
        sort_order=command.sort_order,
    )
    data_manager.append_category(context.workbook, category)
    _invalidate_cache(context, "categories")
    log.info("Added category '%s' (margin=%s, tax=%s)", name, margin, tax)
    return category


def _order_item_from_line(item: LineItem, legacy_defaults: Optional[LegacyDefaults]) -> OrderItem:
    cost, tax, margin = resolve_pricing_inputs(item, legacy_defaults)
    return OrderItem(
        barcode=item.barcode,
        name=item.name,
        category=item.category,
        quantity=item.quantity,
        cost_basis=cost,
        margin_percent=margin,
        tax_percent=tax,
        unit_price=item.unit_price,
        line_total=item.line_total,
    )


def build_checkout_request(
    cart: Cart,
    payment_method: Union[PaymentMethod, str],
    *,
    discount: Union[str, Number] = Decimal("0"),
    invoice_type: Union[InvoiceType, str] = InvoiceType.SIMPLIFIED,
    customer_name: Optional[str] = None,
    customer_tax_id: Optional[str] = None,
    customer_notes: str = "",
    print_receipt: bool = False,
    legacy_defaults: Optional[LegacyDefaults] = None,
    tolerance: Decimal = PRICE_TOLERANCE,
) -> CheckoutRequest:
    """Validate a cart and turn it into a checkout submission.

    Every cart line becomes an :class:`OrderItem` carrying the pricing inputs
    used at sale time. The tax breakdown is computed from the same formula.
    Lines whose unit price no longer agrees with the formula (manual
    overrides) do not block the checkout; each one adds a warning to the
    request.

    Args:
        cart (Cart): Populated cart of the active checkout session.
        payment_method (PaymentMethod | str): How the customer pays.
        discount (str | Number): Order-level discount. Text input may use a
            comma decimal separator.
        invoice_type (InvoiceType | str): ``simplified`` or ``full``.
        customer_name (str | None): Required for full invoices.
        customer_tax_id (str | None): Required for full invoices.
        customer_notes (str): Free-form notes stored with the order.
        print_receipt (bool): Forwarded to the recording collaborator.
        legacy_defaults (LegacyDefaults | None): Fallback used to back-solve
            pricing inputs for lines that only carry a unit price.
        tolerance (Decimal): Allowed gap between a line price and the formula.

    Returns:
        CheckoutRequest: Immutable submission ready for :func:`record_checkout`.

    Raises:
        InvalidInput: If the cart is empty, the discount is negative or larger
            than the subtotal, an enum value is unknown, a full invoice lacks
            customer identity, or a legacy line cannot be priced.
    """
    if not cart.lines:
        log.error("Checkout rejected: cart is empty")
        raise InvalidInput("Cannot check out an empty cart")

    method = coerce_payment_method(payment_method)
    try:
        invoice = InvoiceType(invoice_type)
    except ValueError as exc:
        log.error("Unsupported invoice type: %s", invoice_type)
        raise InvalidInput(f"Unsupported invoice type: {invoice_type}") from exc

    if invoice is InvoiceType.FULL:
        if not (customer_name or "").strip() or not (customer_tax_id or "").strip():
            log.error("Full invoice requested without customer name or tax id")
            raise InvalidInput("A full invoice requires the customer name and tax id")

    line_items = cart.line_items()
    items = tuple(_order_item_from_line(item, legacy_defaults) for item in line_items)
    subtotal = sum((item.line_total for item in items), Decimal("0"))

    discount_amount = parse_decimal_input(discount, "discount")
    if discount_amount < 0 or discount_amount > subtotal:
        log.error("Discount validation failed: %s (subtotal=%s)", discount_amount, subtotal)
        raise InvalidInput(f"Discount must be between 0 and {subtotal}")

    buckets = tuple(calculate_tax_breakdown(items))

    warnings: List[str] = []
    for item in items:
        check = check_sale_price(
            item.cost_basis,
            item.tax_percent,
            item.margin_percent,
            item.unit_price,
            tolerance=tolerance,
        )
        if not check.matches:
            warnings.append(
                f"{item.barcode}: price {check.remote_price} differs from formula price {check.local_price}"
            )
    gap = tax_breakdown_discrepancy(items, buckets)
    if gap > Decimal("0.01") * len(items):
        warnings.append(f"Tax breakdown differs from line totals by {gap}")
    for message in warnings:
        log.warning("Checkout warning: %s", message)

    return CheckoutRequest(
        items=items,
        payment_method=method,
        discount_amount=discount_amount,
        tax_breakdown=buckets,
        invoice_type=invoice,
        customer_name=customer_name.strip() if customer_name else None,
        customer_tax_id=customer_tax_id.strip() if customer_tax_id else None,
        customer_notes=customer_notes,
        print_receipt=print_receipt,
        warnings=tuple(warnings),
    )


def record_checkout(
    context: RuntimeContext,
    request: CheckoutRequest,
    *,
    timestamp: Optional[datetime] = None,
) -> Order:
    """Persist a checkout submission as a new order.

    The order identifier is derived from the timestamp, with a numeric suffix
    when another order already holds it, and the order number is the next
    sequential number in the workbook. ``total_amount`` is the item
    subtotal minus the discount.

    Returns:
        Order: The appended order.
    """
    when = _resolve_timestamp(timestamp)
    orders = list_orders(context)
    order = Order(
        order_id=generate_record_id(prefix="O", when=when, taken={existing.order_id for existing in orders}),
        order_number=f"{len(orders) + 1:06d}",
        timestamp=when,
        items=request.items,
        total_amount=request.total_amount,
        discount_amount=request.discount_amount,
        payment_method=request.payment_method,
        tax_breakdown=request.tax_breakdown,
        invoice_type=request.invoice_type,
        customer_name=request.customer_name,
        customer_tax_id=request.customer_tax_id,
        customer_notes=request.customer_notes,
    )
    data_manager.append_order(context.workbook, order)
    _invalidate_cache(context, "orders")
    log.info(
        "Recorded order '%s' #%s (items=%d, total=%s, discount=%s, payment=%s)",
        order.order_id,
        order.order_number,
        len(order.items),
        order.total_amount,
        order.discount_amount,
        order.payment_method.value,
    )
    return order


def archive_order(context: RuntimeContext, order_id: str) -> Order:
    """Flag an order as archived.

    Raises:
        MissingReferenceError: If the order does not exist.
        BusinessRuleViolation: If the order is already archived.
    """
    order = get_order(context, order_id)
    if order.archived:
        log.warning("Order '%s' is already archived", order_id)
        raise BusinessRuleViolation(f"Order '{order_id}' is already archived")

    data_manager.update_order(context.workbook, order_id, field_values={"Archived": True})
    _invalidate_cache(context, "orders")
    log.info("Archived order '%s'", order_id)
    return get_order(context, order_id)


def record_adjustment(context: RuntimeContext, command: AdjustmentCommand) -> InventoryAdjustment:
    """Validate and append an inventory adjustment.

    Raises:
        InvalidInput: If the quantity is not a positive integer, or the type or
            reason is unknown.
    """
    if isinstance(command.quantity, bool) or not isinstance(command.quantity, int) or command.quantity <= 0:
        log.error("Adjustment quantity validation failed: %s", command.quantity)
        raise InvalidInput("Adjustment quantity must be a positive integer")
    try:
        adjustment_type = AdjustmentType(command.adjustment_type)
        reason = AdjustmentReason(command.reason)
    except ValueError as exc:
        log.error("Unsupported adjustment type or reason: %s / %s", command.adjustment_type, command.reason)
        raise InvalidInput(str(exc)) from exc

    when = _resolve_timestamp(command.timestamp)
    adjustment = InventoryAdjustment(
        adjustment_id=generate_record_id(
            prefix="A",
            when=when,
            taken={existing.adjustment_id for existing in list_adjustments(context)},
        ),
        barcode=command.barcode,
        product_name=command.product_name,
        quantity=command.quantity,
        adjustment_type=adjustment_type,
        reason=reason,
        effective_at=when,
        notes=command.notes,
    )
    data_manager.append_adjustment(context.workbook, adjustment)
    _invalidate_cache(context, "adjustments")
    log.info(
        "Recorded %s adjustment '%s' for '%s' (quantity=%s, reason=%s)",
        adjustment_type.value,
        adjustment.adjustment_id,
        command.barcode,
        command.quantity,
        reason.value,
    )
    return adjustment


def list_returns(
    context: RuntimeContext,
    *,
    order_id: Optional[str] = None,
    status: Optional[Union[ReturnStatus, str]] = None,
) -> List[OrderReturn]:
    """Return recorded returns in workbook order, optionally filtered."""
    wanted_status = _coerce_enum(ReturnStatus, status, "return status") if status is not None else None
    return [
        record
        for record in _ensure_returns_cache(context)["all"]
        if (order_id is None or record.order_id == order_id)
        and (wanted_status is None or record.status is wanted_status)
    ]


def get_return(context: RuntimeContext, return_id: str) -> OrderReturn:
    """Resolve a return by its identifier.

    Raises:
        MissingReferenceError: If ``return_id`` is absent from the workbook.
    """
    record = _ensure_returns_cache(context)["by_id"].get(return_id)
    if record is None:
        log.warning("Return lookup failed for '%s'", return_id)
        raise MissingReferenceError(f"Return '{return_id}' not found")
    return record


def _coerce_enum(enum_type, value, label: str):
    try:
        return enum_type(value)
    except ValueError as exc:
        log.error("Unsupported %s: %s", label, value)
        raise InvalidInput(f"Unsupported {label}: {value}") from exc


def _returnable_quantities(order: Order, previous: Sequence[OrderReturn]) -> Dict[str, int]:
    """Units per barcode still open for return once earlier returns are deducted."""
    remaining: Dict[str, int] = {}
    for item in order.items:
        remaining[item.barcode] = remaining.get(item.barcode, 0) + item.quantity
    for record in previous:
        for barcode, quantity in record.returned_quantities.items():
            remaining[barcode] = remaining.get(barcode, 0) - quantity
    return remaining


def _requested_quantities(order: Order, items: Sequence[tuple[str, int]]) -> Dict[str, int]:
    if not items:
        log.error("Partial return for order '%s' lists no items", order.order_id)
        raise InvalidInput("A partial return must list at least one item")
    sold = {item.barcode for item in order.items}
    requested: Dict[str, int] = {}
    for barcode, quantity in items:
        if barcode not in sold:
            log.warning("Barcode '%s' is not part of order '%s'", barcode, order.order_id)
            raise MissingReferenceError(f"Barcode '{barcode}' is not part of order '{order.order_id}'")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            log.error("Return quantity validation failed for '%s': %s", barcode, quantity)
            raise InvalidInput("Returned quantities must be positive integers")
        requested[barcode] = requested.get(barcode, 0) + quantity
    return requested


def record_return(context: RuntimeContext, command: ReturnCommand) -> OrderReturn:
    """Validate and append a full return, partial return or cancellation.

    Earlier returns that were not rejected count against the order: a
    cancellation is only possible while nothing has been returned, and no
    return is accepted once every unit is back. Partial returns refund
    ``unit_price * quantity`` per line. Full returns and cancellations refund
    what the customer paid, less any refunds already granted.

    Raises:
        MissingReferenceError: If the order, or a listed barcode, is unknown.
        InvalidInput: If the type or reason is unknown, ``other`` comes
            without a description, or a quantity is not between 1 and the
            units still open for return.
        BusinessRuleViolation: If the order was cancelled, is fully returned,
            or a cancellation follows an earlier return.
    """
    order = get_order(context, command.order_id)
    return_type = _coerce_enum(ReturnType, command.return_type, "return type")
    reason = _coerce_enum(ReturnReason, command.reason, "return reason")
    other_reason = (command.other_reason or "").strip() or None
    if reason is ReturnReason.OTHER and other_reason is None:
        log.error("Return for order '%s' gives reason 'other' without a description", order.order_id)
        raise InvalidInput("Describe the reason when it is 'other'")
    if reason is not ReturnReason.OTHER:
        other_reason = None

    previous = [
        record
        for record in list_returns(context, order_id=order.order_id)
        if record.status is not ReturnStatus.REJECTED
    ]
    if any(record.return_type is ReturnType.CANCELLATION for record in previous):
        log.warning("Order '%s' is already cancelled", order.order_id)
        raise BusinessRuleViolation(f"Order '{order.order_id}' is already cancelled")
    if return_type is ReturnType.CANCELLATION and previous:
        log.warning("Order '%s' has returns and cannot be cancelled", order.order_id)
        raise BusinessRuleViolation(f"Order '{order.order_id}' already has returns and cannot be cancelled")

    remaining = _returnable_quantities(order, previous)
    if sum(quantity for quantity in remaining.values() if quantity > 0) == 0:
        log.warning("Order '%s' is already fully returned", order.order_id)
        raise BusinessRuleViolation(f"Order '{order.order_id}' is already fully returned")

    if return_type is ReturnType.PARTIAL:
        requested = _requested_quantities(order, command.items)
        for barcode, quantity in requested.items():
            if quantity > remaining[barcode]:
                log.error(
                    "Return of %s x '%s' exceeds the %s units open on order '%s'",
                    quantity,
                    barcode,
                    remaining[barcode],
                    order.order_id,
                )
                raise InvalidInput(
                    f"Cannot return {quantity} of '{barcode}'; {remaining[barcode]} still open for return"
                )
    else:
        if command.items:
            log.error("Full return or cancellation of '%s' must not list items", order.order_id)
            raise InvalidInput("Only partial returns list individual items")
        requested = {barcode: quantity for barcode, quantity in remaining.items() if quantity > 0}

    lines: Dict[str, OrderItem] = {}
    sold: Dict[str, int] = {}
    for item in order.items:
        lines.setdefault(item.barcode, item)
        sold[item.barcode] = sold.get(item.barcode, 0) + item.quantity
    items = tuple(
        ReturnItem(
            barcode=barcode,
            name=lines[barcode].name,
            category=lines[barcode].category,
            returned_quantity=quantity,
            original_quantity=sold[barcode],
            refund_per_unit=lines[barcode].unit_price,
            total_refund=round2(lines[barcode].unit_price * quantity),
        )
        for barcode, quantity in requested.items()
    )
    if return_type is ReturnType.PARTIAL:
        refund = sum((item.total_refund for item in items), Decimal("0"))
    else:
        already_refunded = sum((record.refund_amount for record in previous), Decimal("0"))
        refund = max(order.total_amount - already_refunded, Decimal("0"))

    when = _resolve_timestamp(command.timestamp)
    existing = list_returns(context)
    record = OrderReturn(
        return_id=generate_record_id(prefix="R", when=when, taken={item.return_id for item in existing}),
        return_number=f"{len(existing) + 1:06d}",
        order_id=order.order_id,
        order_number=order.order_number,
        return_type=return_type,
        reason=reason,
        items=items,
        refund_amount=refund,
        created_at=when,
        other_reason=other_reason,
        notes=command.notes,
    )
    data_manager.append_return(context.workbook, record)
    _invalidate_cache(context, "returns")
    log.info(
        "Recorded %s return '%s' for order '%s' (units=%d, refund=%s)",
        return_type.value,
        record.return_id,
        order.order_id,
        sum(item.returned_quantity for item in items),
        refund,
    )
    return record


def update_return_status(
    context: RuntimeContext,
    return_id: str,
    new_status: Union[ReturnStatus, str],
    *,
    notes: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> OrderReturn:
    """Close a pending return as processed or rejected.

    Processing marks the returned stock as restored; rejecting does not.

    Raises:
        MissingReferenceError: If the return does not exist.
        InvalidInput: If ``new_status`` is unknown.
        BusinessRuleViolation: If the return is no longer pending or the
            target status is ``pending``.
    """
    status = _coerce_enum(ReturnStatus, new_status, "return status")
    record = get_return(context, return_id)
    if record.status is not ReturnStatus.PENDING:
        log.warning("Return '%s' is already %s", return_id, record.status.value)
        raise BusinessRuleViolation(f"Return '{return_id}' is already {record.status.value}")
    if status is ReturnStatus.PENDING:
        log.warning("Return '%s' cannot be moved back to pending", return_id)
        raise BusinessRuleViolation("A pending return can only be processed or rejected")

    when = _resolve_timestamp(timestamp)
    data_manager.update_return(
        context.workbook,
        return_id,
        field_values={
            "Status": status.value,
            "ProcessedAt": when.isoformat(),
            "StockRestored": status is ReturnStatus.PROCESSED,
            "StatusNotes": notes,
        },
    )
    _invalidate_cache(context, "returns")
    log.info("Return '%s' marked %s", return_id, status.value)
    return get_return(context, return_id)


def audit_order_prices(order: Order, *, tolerance: Decimal = PRICE_TOLERANCE) -> List[PriceCheck]:
    """Recompute every item price of a stored order and return the mismatches.

    Mismatches are reported, never raised; each one is logged as a warning.
    """
    mismatches: List[PriceCheck] = []
    for item in order.items:
        check = check_sale_price(
            item.cost_basis,
            item.tax_percent,
            item.margin_percent,
            item.unit_price,
            tolerance=tolerance,
        )
        if not check.matches:
            log.warning(
                "Order '%s' item '%s': stored=%s formula=%s difference=%s",
                order.order_id,
                item.barcode,
                check.remote_price,
                check.local_price,
                check.difference,
            )
            mismatches.append(check)
    return mismatches


class WorkbookGateway:
    """:class:`OrderGateway` backed by the runtime workbook."""

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    async def fetch_orders(self, query: OrderQuery) -> OrderSnapshot:
        window = DateRange(start=query.start, end=query.end)
        active: List[Order] = []
        archived: List[Order] = []
        for order in orders_in_range(list_orders(self.context), window):
            if query.payment_method is not None and order.payment_method is not query.payment_method:
                continue
            if order.archived:
                if query.include_archived:
                    archived.append(order)
            else:
                active.append(order)
        return OrderSnapshot(active_orders=tuple(active), archived_orders=tuple(archived))

    async def fetch_adjustments(self, query: AdjustmentQuery) -> List[InventoryAdjustment]:
        window = DateRange(start=query.start, end=query.end)
        matching = [adj for adj in list_adjustments(self.context) if window.contains(adj.effective_at)]
        offset = query.page_number * query.page_size
        return matching[offset:offset + query.page_size]


def build_sales_report(
    request: ReportRequest,
    window: DateRange,
    snapshot: OrderSnapshot,
    adjustments: Sequence[InventoryAdjustment] = (),
    *,
    valuation: Optional[Valuation] = None,
    top_n: int = 10,
) -> ReportOutcome:
    """Filter, aggregate and rank already-fetched orders into a report.

    Returns:
        ReportOutcome: ``EMPTY`` when no order survives the category filter,
            otherwise ``READY`` with the assembled :class:`SalesReport`.
    """
    filtered = filter_orders(snapshot, request.category_name)
    if filtered.is_empty:
        log.info("Report for %s..%s matched no orders", window.start, window.end)
        return ReportOutcome(status=ReportStatus.EMPTY, window=window)

    limit = request.top_n if request.top_n is not None else top_n
    aggregation = aggregate_orders(filtered.orders)
    impacts = analyze_adjustments(adjustments, valuation) if request.include_adjustments else []
    report = SalesReport(
        window=window,
        category_name=request.category_name,
        orders=filtered.orders,
        active_count=filtered.active_count,
        archived_count=filtered.archived_count,
        aggregation=aggregation,
        top_products=tuple(top_products(aggregation.product_stats, limit)),
        profit_chart=tuple(
            profit_chart_series(
                aggregation,
                category_filter_active=request.category_name is not None,
                limit=DEFAULT_TOP_PRODUCTS,
            )
        ),
        margin_chart=tuple(margin_chart_series(aggregation.margin_histogram)),
        payment_chart=tuple(payment_method_series(aggregation)),
        adjustment_impacts=tuple(impacts),
    )
    return ReportOutcome(status=ReportStatus.READY, report=report, window=window)


class ReportSession:
    """Owns the report shown to one user and drops superseded requests.

    Each call to :meth:`generate` takes a new generation number. When the
    gateway answers, the result is adopted only if no newer call started in
    the meantime; otherwise it is discarded and ``None`` is returned.
    """

    def __init__(
        self,
        gateway: OrderGateway,
        *,
        valuation: Optional[Valuation] = None,
        top_n: int = 10,
    ) -> None:
        self.gateway = gateway
        self.valuation = valuation
        self.top_n = top_n
        self.outcome: ReportOutcome = NOT_REQUESTED
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    async def generate(
        self,
        request: ReportRequest,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[ReportOutcome]:
        """Fetch, aggregate and adopt a report.

        Raises:
            InvalidRange: Before any fetch, when custom bounds are unusable.
            UpstreamFailure: When a gateway call fails for the latest request.
                The previously adopted outcome is kept.
        """
        window = resolve_date_range(request.period, request.custom_from, request.custom_to, now=now)
        self._generation += 1
        generation = self._generation

        try:
            snapshot = await self.gateway.fetch_orders(
                OrderQuery(
                    start=window.start,
                    end=window.end,
                    payment_method=request.payment_method,
                    include_archived=request.include_archived,
                )
            )
            adjustments: Sequence[InventoryAdjustment] = ()
            if request.include_adjustments:
                adjustments = await self.gateway.fetch_adjustments(
                    AdjustmentQuery(start=window.start, end=window.end)
                )
        except Exception as exc:
            if generation != self._generation:
                log.warning("Ignoring failure of superseded report request #%d: %s", generation, exc)
                return None
            log.error("Report request #%d failed upstream: %s", generation, exc)
            raise UpstreamFailure(f"Unable to load report data: {exc}") from exc

        if generation != self._generation:
            log.warning("Discarding superseded report request #%d (latest is #%d)", generation, self._generation)
            return None

        outcome = build_sales_report(
            request,
            window,
            snapshot,
            adjustments,
            valuation=self.valuation,
            top_n=self.top_n,
        )
        self.outcome = outcome
        log.info("Adopted report request #%d (%s)", generation, outcome.status.value)
        return outcome


def create_report_session(context: RuntimeContext) -> ReportSession:
    """Build a workbook-backed session using the configured analytics settings."""
    return ReportSession(
        WorkbookGateway(context),
        valuation=flat_unit_valuation(context.settings.loss_per_unit),
        top_n=context.settings.top_products,
    )


def _write_sheet(workbook: NewWorkbook, title: str, headers: Sequence[str], rows: Sequence[Sequence[object]]) -> None:
    sheet = workbook.create_sheet(title=title)
    sheet.append(list(headers))
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append(list(row))


def export_report(report: SalesReport, destination: Path) -> Path:
    """Write a report to a standalone ``.xlsx`` file.

    Amounts are written as Decimals. One sheet is produced per report section.

    Returns:
        Path: Resolved destination path.
    """
    workbook = NewWorkbook()
    default_sheet = workbook.active
    if default_sheet is not None:
        workbook.remove(default_sheet)

    aggregation = report.aggregation
    _write_sheet(
        workbook,
        "Summary",
        ("Metric", "Value"),
        [
            ("From", report.window.start.isoformat()),
            ("To", report.window.end.isoformat()),
            ("Category", report.category_name or "All"),
            ("Orders", aggregation.order_count),
            ("Active orders", report.active_count),
            ("Archived orders", report.archived_count),
            ("Revenue", aggregation.total_revenue),
            ("Profit", aggregation.total_profit),
            ("Cost basis", aggregation.total_cost_basis),
            ("Discount", aggregation.total_discount),
            ("Tax", aggregation.total_tax),
            ("Average margin %", aggregation.average_margin),
        ],
    )
    _write_sheet(workbook, "Profit", ("Name", "Profit"), [(p.name, p.value) for p in report.profit_chart])
    _write_sheet(
        workbook,
        "Top Products",
        ("Barcode", "Name", "Quantity", "Revenue", "Profit", "Margin %"),
        [(s.barcode, s.name, s.quantity, s.revenue, s.profit, s.margin_percent) for s in report.top_products],
    )
    _write_sheet(workbook, "Margins", ("Band", "Items"), [(p.name, p.value) for p in report.margin_chart])
    _write_sheet(workbook, "Payments", ("Method", "Profit"), [(p.name, p.value) for p in report.payment_chart])
    if report.adjustment_impacts:
        _write_sheet(
            workbook,
            SheetName.ADJUSTMENTS.value,
            ("Barcode", "Product", "Decreases", "Increases", "Net quantity", "Estimated loss", "Latest"),
            [
                (
                    impact.barcode,
                    impact.product_name,
                    impact.decrease_count,
                    impact.increase_count,
                    impact.net_quantity,
                    impact.estimated_loss,
                    impact.latest_date.isoformat(),
                )
                for impact in report.adjustment_impacts
            ],
        )

    dest = Path(destination).expanduser().resolve()
    data_manager.save_workbook(workbook, dest)
    log.info("Exported report to '%s'", dest)
    return dest


def generate_record_id(
    *,
    prefix: str = "O",
    when: Optional[datetime] = None,
    taken: Collection[str] = (),
) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier: ``"O"`` for
            orders, ``"A"`` for adjustments, ``"C"`` for categories and
            ``"R"`` for returns.
        when (datetime | None): Timestamp used for deterministically producing
            the identifier. When ``None`` the current UTC time is used.
        taken (Collection[str]): Identifiers already in the workbook. A
            collision gets a ``-2``, ``-3``... suffix.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``.
    """
    when = when or _resolve_timestamp(None)
    base = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    candidate = base
    sequence = 1
    while candidate in taken:
        sequence += 1
        candidate = f"{base}-{sequence}"
    return candidate


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
