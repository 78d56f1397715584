"""Shared pytest fixtures and utilities for Till Ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from till_ledger import cli, constants, core_logic, data_manager, models  # noqa: E402
from till_ledger.pricing import calculate_final_price  # noqa: E402
from till_ledger.setup_excel import DEFAULT_CATEGORY, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Checkout]\n"
    "MaxLineQuantity = 999\n\n"
    "[Pricing]\n"
    "PriceTolerance = 0.005\n\n"
    "[Analytics]\n"
    "TopProducts = 10\n"
    "LossPerUnit = 10\n"
)

BASE_TIME = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        categories: Sequence[models.Category] = (DEFAULT_CATEGORY,),
        filename: str = "till_ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, categories=categories, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Corner Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        extra: str = "",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
            )
            + extra
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Domain record builders
# ---------------------------------------------------------------------------


def make_order_item(
    barcode: str = "B1",
    *,
    name: Optional[str] = None,
    category: str = "General",
    quantity: int = 1,
    cost_basis: str = "10.00",
    margin_percent: str = "30",
    tax_percent: str = "21",
    unit_price: Optional[str] = None,
) -> models.OrderItem:
    """Build a stored order item; the unit price defaults to the formula price."""

    price = Decimal(unit_price) if unit_price is not None else calculate_final_price(cost_basis, tax_percent, margin_percent)
    return models.OrderItem(
        barcode=barcode,
        name=name or f"Product {barcode}",
        category=category,
        quantity=quantity,
        cost_basis=Decimal(cost_basis),
        margin_percent=Decimal(margin_percent),
        tax_percent=Decimal(tax_percent),
        unit_price=price,
        line_total=price * quantity,
    )


def make_order(
    order_id: str = "O1",
    *,
    items: Sequence[models.OrderItem] = (),
    discount: str = "0",
    payment_method: constants.PaymentMethod = constants.PaymentMethod.CASH,
    timestamp: datetime = BASE_TIME,
    archived: bool = False,
) -> models.Order:
    """Build an order whose total equals its line totals minus the discount."""

    discount_amount = Decimal(discount)
    subtotal = sum((item.line_total for item in items), Decimal("0"))
    return models.Order(
        order_id=order_id,
        order_number=order_id.lstrip("O").zfill(6),
        timestamp=timestamp,
        items=tuple(items),
        total_amount=subtotal - discount_amount,
        discount_amount=discount_amount,
        payment_method=payment_method,
        archived=archived,
    )


def make_adjustment(
    adjustment_id: str = "A1",
    *,
    barcode: str = "B1",
    product_name: Optional[str] = None,
    quantity: int = 1,
    adjustment_type: constants.AdjustmentType = constants.AdjustmentType.DECREASE,
    reason: constants.AdjustmentReason = constants.AdjustmentReason.BROKEN,
    effective_at: datetime = BASE_TIME,
) -> models.InventoryAdjustment:
    return models.InventoryAdjustment(
        adjustment_id=adjustment_id,
        barcode=barcode,
        product_name=product_name or f"Product {barcode}",
        quantity=quantity,
        adjustment_type=adjustment_type,
        reason=reason,
        effective_at=effective_at,
    )


@pytest.fixture
def order_item_factory() -> Callable[..., models.OrderItem]:
    return make_order_item


@pytest.fixture
def order_factory() -> Callable[..., models.Order]:
    return make_order


@pytest.fixture
def adjustment_factory() -> Callable[..., models.InventoryAdjustment]:
    return make_adjustment


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="till-ledger", description="Till Ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "till_ledger.xlsx",
        store_name="Corner Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
