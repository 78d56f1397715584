"""Command-line entry points for the Till Ledger toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .cart import Cart, CartEntry
from .constants import (
    AdjustmentReason,
    AdjustmentType,
    InvoiceType,
    PaymentMethod,
    Period,
    ReturnReason,
    ReturnStatus,
    ReturnType,
)
from .errors import BusinessRuleViolation, InvalidInput
from .pricing import (
    calculate_sale_price,
    check_sale_price,
    parse_decimal_input,
    resolve_pricing_defaults,
    verify_sale_price,
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="till-ledger",
        description="Command-line tools for the Till Ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as checkouts, adjustments and returns."""
    specs = {
        "add-category": register_add_category_command(subparsers),
        "checkout": register_checkout_command(subparsers),
        "adjust": register_adjust_command(subparsers),
        "archive": register_archive_command(subparsers),
        "return": register_return_command(subparsers),
        "return-status": register_return_status_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as price checks and reports."""
    specs = {
        "price": register_price_command(subparsers),
        "verify-price": register_verify_price_command(subparsers),
        "report": register_report_command(subparsers),
        "orders": register_orders_command(subparsers),
        "returns": register_returns_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""
    name = "add-category"
    help_text = "Register a catalogue category with default margin and tax."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--margin", required=True, help="Default margin percentage.")
        parser.add_argument("--tax", required=True, help="Default VAT percentage (0, 4, 10 or 21).")
        parser.add_argument("--sort-order", type=int, default=0)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_category)


def register_checkout_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``checkout``."""
    name = "checkout"
    help_text = "Ring up items and record the resulting order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            nargs=4,
            action="append",
            required=True,
            metavar=("BARCODE", "NAME", "QUANTITY", "COST"),
            help="Line to add; repeat for more items. Repeated barcodes merge.",
        )
        parser.add_argument("--category", required=True, help="Category supplying margin and tax defaults.")
        parser.add_argument("--margin", default=None, help="Override the category margin.")
        parser.add_argument("--tax", default=None, help="Override the category tax rate.")
        parser.add_argument(
            "--price",
            nargs=2,
            action="append",
            default=[],
            metavar=("BARCODE", "PRICE"),
            help="Manual unit price override, e.g. 12,50.",
        )
        parser.add_argument("--payment", choices=[method.value for method in PaymentMethod], required=True)
        parser.add_argument("--discount", default="0")
        parser.add_argument("--invoice", choices=[kind.value for kind in InvoiceType], default=InvoiceType.SIMPLIFIED.value)
        parser.add_argument("--customer-name", default=None)
        parser.add_argument("--customer-tax-id", default=None)
        parser.add_argument("--notes", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_checkout)


def register_adjust_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust``."""
    name = "adjust"
    help_text = "Record an inventory adjustment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--barcode", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--type", dest="adjustment_type", choices=[kind.value for kind in AdjustmentType], required=True)
        parser.add_argument("--reason", choices=[reason.value for reason in AdjustmentReason], required=True)
        parser.add_argument("--notes", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust)


def register_archive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``archive``."""
    name = "archive"
    help_text = "Archive a recorded order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_archive)


def register_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return``."""
    name = "return"
    help_text = "Record a full return, partial return or cancellation of an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--type", dest="return_type", choices=[kind.value for kind in ReturnType], required=True)
        parser.add_argument("--reason", choices=[reason.value for reason in ReturnReason], required=True)
        parser.add_argument("--other-reason", default=None, help="Description required with --reason other.")
        parser.add_argument(
            "--item",
            nargs=2,
            action="append",
            default=[],
            metavar=("BARCODE", "QUANTITY"),
            help="Units to hand back on a partial return; repeat for more items.",
        )
        parser.add_argument("--notes", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return)


def register_return_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return-status``."""
    name = "return-status"
    help_text = "Process or reject a pending return."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--return-id", required=True)
        parser.add_argument(
            "--status",
            choices=[ReturnStatus.PROCESSED.value, ReturnStatus.REJECTED.value],
            required=True,
        )
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return_status)


def register_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``price``."""
    name = "price"
    help_text = "Compute a shelf price from cost, tax and margin."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cost", required=True)
        parser.add_argument("--tax", required=True)
        parser.add_argument("--margin", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_price)


def register_verify_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``verify-price``."""
    name = "verify-price"
    help_text = "Compare an externally computed sale price with the local formula."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cost", required=True)
        parser.add_argument("--tax", required=True)
        parser.add_argument("--margin", required=True)
        parser.add_argument("--remote", required=True, help="Sale price computed elsewhere.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_verify_price)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Summarise revenue, profit and margins for a period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--period", choices=[period.value for period in Period], default=Period.LAST_30_DAYS.value)
        parser.add_argument("--from", dest="custom_from", type=date.fromisoformat, default=None)
        parser.add_argument("--to", dest="custom_to", type=date.fromisoformat, default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--payment", choices=[method.value for method in PaymentMethod], default=None)
        parser.add_argument("--include-archived", action="store_true")
        parser.add_argument("--include-adjustments", action="store_true")
        parser.add_argument("--top", type=int, default=None)
        parser.add_argument("--export", type=Path, default=None, help="Write the report to an .xlsx file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List recorded orders."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--include-archived", action="store_true")
        parser.add_argument("--audit", action="store_true", help="Recompute item prices and report mismatches.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders)


def register_returns_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``returns``."""
    name = "returns"
    help_text = "List recorded returns and cancellations."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", default=None)
        parser.add_argument("--status", choices=[status.value for status in ReturnStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_returns)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_category(args: argparse.Namespace) -> core_logic.CategoryCommand:
    """Translate CLI args into a category command object."""
    return core_logic.CategoryCommand(
        name=args.name,
        default_margin_percent=parse_decimal_input(args.margin, "margin"),
        default_tax_percent=parse_decimal_input(args.tax, "tax"),
        sort_order=args.sort_order,
    )


def translate_adjust(args: argparse.Namespace) -> core_logic.AdjustmentCommand:
    """Translate CLI args into an adjustment command object."""
    return core_logic.AdjustmentCommand(
        barcode=args.barcode,
        product_name=args.product_name,
        quantity=args.quantity,
        adjustment_type=AdjustmentType(args.adjustment_type),
        reason=AdjustmentReason(args.reason),
        notes=args.notes,
    )


def translate_return(args: argparse.Namespace) -> core_logic.ReturnCommand:
    """Translate CLI args into a return command object."""
    items = []
    for barcode, quantity in args.item:
        try:
            items.append((barcode, int(quantity)))
        except ValueError as exc:
            raise InvalidInput(f"Quantity must be an integer, got {quantity!r}") from exc
    return core_logic.ReturnCommand(
        order_id=args.order_id,
        return_type=ReturnType(args.return_type),
        reason=ReturnReason(args.reason),
        items=tuple(items),
        other_reason=args.other_reason,
        notes=args.notes,
    )


def translate_report(args: argparse.Namespace) -> core_logic.ReportRequest:
    """Translate CLI args into a report request."""
    return core_logic.ReportRequest(
        period=Period(args.period),
        custom_from=args.custom_from,
        custom_to=args.custom_to,
        category_name=args.category,
        payment_method=PaymentMethod(args.payment) if args.payment else None,
        include_archived=args.include_archived,
        include_adjustments=args.include_adjustments,
        top_n=args.top,
    )


def build_cart(context: core_logic.RuntimeContext, args: argparse.Namespace) -> Cart:
    """Fill a fresh cart from ``--item`` and ``--price`` arguments."""
    category = core_logic.get_category(context, args.category)
    margin, tax = resolve_pricing_defaults(category, args.margin, args.tax)
    cart = Cart(max_quantity=context.settings.max_line_quantity)
    for barcode, name, quantity, cost in args.item:
        cart.add_item(
            CartEntry(
                barcode=barcode,
                name=name,
                category=category.name,
                quantity=quantity,
                cost_basis=parse_decimal_input(cost, "cost_basis"),
                margin_percent=margin,
                tax_percent=tax,
            )
        )
    for barcode, price in args.price:
        cart.set_price(barcode, price)
    return cart


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-category workflow in the BLL."""
    category = core_logic.add_category(context, translate_add_category(args))
    print(f"Added category '{category.name}' ({category.category_id})")
    return 0


def run_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the checkout workflow via the BLL."""
    core_logic.ensure_schema_version(context)
    cart = build_cart(context, args)
    request = core_logic.build_checkout_request(
        cart,
        PaymentMethod(args.payment),
        discount=args.discount,
        invoice_type=InvoiceType(args.invoice),
        customer_name=args.customer_name,
        customer_tax_id=args.customer_tax_id,
        customer_notes=args.notes,
        legacy_defaults=context.settings.legacy_defaults,
        tolerance=context.settings.price_tolerance,
    )
    order = core_logic.record_checkout(context, request)
    for warning in request.warnings:
        print(f"[WARNING] {warning}")
    print(f"Recorded order {order.order_id} #{order.order_number}: total {order.total_amount}")
    for bucket in order.tax_breakdown:
        print(f"  VAT {bucket.rate}%: base {bucket.base_amount} tax {bucket.tax_amount}")
    return 0


def run_adjust(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the adjustment workflow via the BLL."""
    core_logic.ensure_schema_version(context)
    adjustment = core_logic.record_adjustment(context, translate_adjust(args))
    print(f"Recorded adjustment {adjustment.adjustment_id}")
    return 0


def run_archive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the archive workflow via the BLL."""
    order = core_logic.archive_order(context, args.order_id)
    print(f"Archived order {order.order_id}")
    return 0


def run_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every step of the pricing formula."""
    breakdown = calculate_sale_price(
        parse_decimal_input(args.cost, "cost_basis"),
        parse_decimal_input(args.tax, "tax_percent"),
        parse_decimal_input(args.margin, "margin_percent"),
    )
    print(f"Profit:           {breakdown.profit_amount}")
    print(f"Price before tax: {breakdown.price_before_tax}")
    print(f"Tax:              {breakdown.tax_amount}")
    print(f"Sale price:       {breakdown.sale_price}")
    return 0


def run_verify_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Report whether a remote price agrees with the local formula."""
    inputs = (
        parse_decimal_input(args.cost, "cost_basis"),
        parse_decimal_input(args.tax, "tax_percent"),
        parse_decimal_input(args.margin, "margin_percent"),
        parse_decimal_input(args.remote, "remote_sale_price"),
    )
    tolerance = context.settings.price_tolerance
    status = "MATCH" if verify_sale_price(*inputs, tolerance=tolerance) else "MISMATCH"
    check = check_sale_price(*inputs, tolerance=tolerance)
    print(f"{status}: local {check.local_price} remote {check.remote_price} difference {check.difference}")
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Generate a report through a workbook-backed session."""
    session = core_logic.create_report_session(context)
    outcome = asyncio.run(session.generate(translate_report(args)))
    if outcome is None or outcome.report is None:
        print("No orders match the selected filters.")
        return 0

    report = outcome.report
    totals = report.aggregation
    print(f"Orders: {totals.order_count} (active {report.active_count}, archived {report.archived_count})")
    print(f"Revenue: {totals.total_revenue:.2f}")
    print(f"Profit: {totals.total_profit:.2f}")
    print(f"Average margin: {totals.average_margin:.2f}%")
    print(f"Discount: {totals.total_discount:.2f}  Tax: {totals.total_tax:.2f}")
    for stats in report.top_products:
        print(f"  {stats.name}: {stats.quantity} sold, profit {stats.profit:.2f}")
    for impact in report.adjustment_impacts:
        print(f"  [adjustment] {impact.product_name}: net {impact.net_quantity}, loss {impact.estimated_loss:.2f}")
    if args.export is not None:
        destination = core_logic.export_report(report, args.export)
        print(f"Exported report to {destination}")
    return 0


def run_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List orders, optionally auditing their stored item prices."""
    mismatched = 0
    for order in core_logic.list_orders(context, include_archived=args.include_archived):
        flag = " [archived]" if order.archived else ""
        print(f"{order.order_id} #{order.order_number} {order.timestamp.isoformat()} {order.total_amount:.2f}{flag}")
        if args.audit:
            checks = core_logic.audit_order_prices(order, tolerance=context.settings.price_tolerance)
            mismatched += len(checks)
            for check in checks:
                print(f"  mismatch: stored {check.remote_price:.2f} formula {check.local_price:.2f}")
    if args.audit:
        print(f"Price mismatches: {mismatched}")
    return 0


def run_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the return workflow via the BLL."""
    core_logic.ensure_schema_version(context)
    record = core_logic.record_return(context, translate_return(args))
    print(
        f"Recorded {record.return_type.value} return {record.return_id} #{record.return_number} "
        f"for order #{record.order_number}: refund {record.refund_amount:.2f} ({record.status.value})"
    )
    for item in record.items:
        print(f"  {item.name}: {item.returned_quantity}/{item.original_quantity} refund {item.total_refund:.2f}")
    return 0


def run_return_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Close a pending return via the BLL."""
    record = core_logic.update_return_status(context, args.return_id, ReturnStatus(args.status), notes=args.notes)
    restored = "stock restored" if record.stock_restored else "stock not restored"
    print(f"Return {record.return_id} {record.status.value}; {restored}")
    return 0


def run_returns(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List returns, optionally for one order or status."""
    records = core_logic.list_returns(context, order_id=args.order_id, status=args.status)
    for record in records:
        print(
            f"{record.return_id} #{record.return_number} order #{record.order_number} "
            f"{record.return_type.value} {record.status.value} {record.refund_amount:.2f}"
        )
    print(f"Returns: {len(records)}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
