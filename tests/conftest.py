"""Shared pytest fixtures and utilities for Sertão POS tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, List
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sertao_pos import cli, constants, core_logic, data_manager  # noqa: E402
from sertao_pos.checkout import FinalizedTransaction, Settlement  # noqa: E402
from sertao_pos.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Checkout]\n"
    "SettlementDelay = 0\n"
)


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

    def _create_workbook(*, subdir: str | None = None, filename: str = "pos_master_data.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
            ),
            encoding="utf-8",
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
# Domain fixtures
# ---------------------------------------------------------------------------


def make_product(product_id: str = "P1", **overrides) -> data_manager.ProductRow:
    """Build a product row with sensible defaults for engine tests."""

    values = dict(
        product_id=product_id,
        product_name=f"Product {product_id}",
        category=constants.Category.BEVERAGE_NON_ALCOHOL.value,
        price_wholesale=Decimal("4.00"),
        price_retail=Decimal("5.00"),
        cost=Decimal("2.00"),
        stock_wholesale=50,
        stock_retail=50,
    )
    values.update(overrides)
    return data_manager.ProductRow(**values)


@pytest.fixture
def ice_product() -> data_manager.ProductRow:
    return make_product(
        "ICE-5",
        product_name="Gelo Cubo 5kg",
        category=constants.Category.ICE_CUBE.value,
        price_wholesale=Decimal("8.00"),
        price_retail=Decimal("10.00"),
        cost=Decimal("3.00"),
        stock_wholesale=10,
        stock_retail=20,
        unit="pack",
    )


@pytest.fixture
def beer_product() -> data_manager.ProductRow:
    return make_product(
        "BEER",
        product_name="Cerveja Lata",
        category=constants.Category.BEVERAGE_ALCOHOL.value,
        price_wholesale=Decimal("3.00"),
        price_retail=Decimal("5.00"),
        stock_wholesale=0,
        stock_retail=24,
    )


@pytest.fixture
def soda_product() -> data_manager.ProductRow:
    return make_product(
        "SODA",
        product_name="Refrigerante 2L",
        price_retail=Decimal("13.00"),
        stock_retail=6,
    )


@pytest.fixture
def customer() -> data_manager.CustomerRow:
    return data_manager.CustomerRow(
        customer_id="C1",
        name="Bar do Zé",
        document="12345678000199",
        phone="81999990000",
    )


class RecordingLedger:
    """Ledger callback collecting every finalized transaction it receives."""

    def __init__(self, error: Exception | None = None) -> None:
        self.transactions: List[FinalizedTransaction] = []
        self.error = error

    def __call__(self, transaction: FinalizedTransaction) -> None:
        if self.error is not None:
            raise self.error
        self.transactions.append(transaction)


class InstantSettlement(Settlement):
    """Settlement that completes without waiting, or fails on demand."""

    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list = []
        self.error = error

    async def settle(self, method, amount) -> None:
        self.calls.append((method, amount))
        if self.error is not None:
            raise self.error


@pytest.fixture
def ledger() -> RecordingLedger:
    return RecordingLedger()


@pytest.fixture
def settlement() -> InstantSettlement:
    return InstantSettlement()


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-cli", description="POS CLI")


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser) -> argparse._SubParsersAction:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


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
        data_file=tmp_path / "pos_master_data.xlsx",
        store_name="Test Store",
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
def fixed_moment() -> datetime:
    return datetime(2024, 5, 17, 14, 30, 0, tzinfo=UTC)
