"""Tests for the business logic layer, with mocked and real workbooks."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from conftest import make_product
from sertao_pos import constants, core_logic, data_manager
from sertao_pos.checkout import FinalizedTransaction, SaleItem
from sertao_pos.constants import BusinessUnit, FinancialType, PaymentMethod, SaleStatus
from sertao_pos.errors import BusinessRuleViolation, MissingReferenceError, StockExceeded


MOMENT = datetime(2024, 5, 17, 14, 30, 0, tzinfo=UTC)


def _transaction(*items: SaleItem, unit=BusinessUnit.RETAIL, sale_id="S1", method=PaymentMethod.PIX, **extra):
    return FinalizedTransaction(
        transaction_id=sale_id,
        timestamp=MOMENT,
        unit=unit,
        customer_name="Walk-in",
        items=tuple(items),
        total=sum((item.line_total for item in items), Decimal("0")),
        payment_method=method,
        **extra,
    )


@pytest.fixture
def stocked_context(runtime_context):
    """Real workbook holding one ice product and one beverage."""

    core_logic.add_product(
        runtime_context,
        make_product(
            "ICE-5",
            product_name="Gelo Cubo 5kg",
            category=constants.Category.ICE_CUBE.value,
            price_wholesale=Decimal("8.00"),
            price_retail=Decimal("10.00"),
            stock_wholesale=10,
            stock_retail=20,
            min_stock=5,
        ),
    )
    core_logic.add_product(runtime_context, make_product("BEER", product_name="Cerveja", stock_retail=24))
    return runtime_context


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "master.xlsx",
        store_name="Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


# ---------------------------------------------------------------------------
# Queries (mocked data layer)
# ---------------------------------------------------------------------------


def test_list_products_excludes_inactive_by_default(monkeypatch, context):
    products = [make_product("P1"), make_product("P2", is_active=False)]
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=products))

    assert [row.product_id for row in core_logic.list_products(context)] == ["P1"]
    assert len(core_logic.list_products(context, include_inactive=True)) == 2


def test_list_products_reuses_cache_between_calls(monkeypatch, context):
    iter_mock = Mock(return_value=[make_product("P1")])
    monkeypatch.setattr(data_manager, "iter_products", iter_mock)

    core_logic.list_products(context)
    core_logic.get_product(context, "P1")

    iter_mock.assert_called_once_with(context.workbook)


def test_get_product_unknown_raises(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[]))

    with pytest.raises(MissingReferenceError):
        core_logic.get_product(context, "missing")


def test_financial_summary_aggregates_by_type(monkeypatch, context):
    records = [
        data_manager.FinancialRow("F1", "2024-05-01", "Sale", Decimal("100.00"), "Income", "Sales"),
        data_manager.FinancialRow("F2", "2024-05-02", "Sale", Decimal("50.50"), "Income", "Sales"),
        data_manager.FinancialRow("F3", "2024-05-03", "Energy", Decimal("30.00"), "Expense", "Utilities"),
    ]
    monkeypatch.setattr(data_manager, "iter_financials", Mock(return_value=records))

    summary = core_logic.calculate_financial_summary(context)

    assert summary == {"income": Decimal("150.50"), "expense": Decimal("30.00"), "balance": Decimal("120.50")}


def test_list_sales_newest_first(monkeypatch, context):
    sales = [
        data_manager.SaleRow("S1", "t1", "Filial", "Walk-in", None, Decimal("1"), "Pix", None, "Completed", True, None, None),
        data_manager.SaleRow("S2", "t2", "Filial", "Walk-in", None, Decimal("2"), "Pix", None, "Completed", True, None, None),
    ]
    monkeypatch.setattr(data_manager, "iter_sales", Mock(return_value=sales))
    monkeypatch.setattr(data_manager, "iter_sale_items", Mock(return_value=[]))

    assert [sale.sale_id for sale in core_logic.list_sales(context, newest_first=True)] == ["S2", "S1"]


# ---------------------------------------------------------------------------
# Mutations (mocked data layer)
# ---------------------------------------------------------------------------


def test_add_product_rejects_duplicate_id(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[make_product("P1")]))
    append = Mock()
    monkeypatch.setattr(data_manager, "append_product", append)

    with pytest.raises(BusinessRuleViolation):
        core_logic.add_product(context, make_product("P1"))
    append.assert_not_called()


@pytest.mark.parametrize(
    "overrides",
    [{"price_retail": Decimal("-1")}, {"cost": Decimal("-0.01")}, {"stock_wholesale": -1}],
)
def test_add_product_rejects_negative_values(monkeypatch, context, overrides):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[]))
    append = Mock()
    monkeypatch.setattr(data_manager, "append_product", append)

    with pytest.raises(ValueError):
        core_logic.add_product(context, make_product("P9", **overrides))
    append.assert_not_called()


def test_record_expense_requires_positive_amount(monkeypatch, context):
    append = Mock()
    monkeypatch.setattr(data_manager, "append_financial", append)

    with pytest.raises(ValueError):
        core_logic.record_expense(context, description="Fuel", amount=Decimal("0"), category="Transport")
    append.assert_not_called()


def test_add_customer_requires_name(context):
    with pytest.raises(ValueError):
        core_logic.add_customer(context, name="   ")


def test_validate_invoice_target_rules():
    base = data_manager.SaleRow("S1", "t", "Filial", "Walk-in", None, Decimal("5"), "Pix", None, "Completed", True, None, None)

    core_logic.validate_invoice_target(base)
    with pytest.raises(BusinessRuleViolation):
        core_logic.validate_invoice_target(replace(base, status=SaleStatus.CANCELLED.value))
    with pytest.raises(BusinessRuleViolation):
        core_logic.validate_invoice_target(replace(base, invoice_key="35" + "0" * 42))


# ---------------------------------------------------------------------------
# Ledger behaviour on a real workbook
# ---------------------------------------------------------------------------


def test_record_sale_decrements_unit_stock_and_logs_income(stocked_context):
    transaction = _transaction(
        SaleItem("ICE-5", "Gelo Cubo 5kg", 4, Decimal("12.50")),
        unit=BusinessUnit.WHOLESALE,
    )

    sale = core_logic.record_sale(stocked_context, transaction)

    ice = core_logic.get_product(stocked_context, "ICE-5")
    assert (ice.stock_wholesale, ice.stock_retail) == (6, 20)
    assert sale.business_unit == "Matriz"
    assert sale.total == Decimal("50.00")
    items = core_logic.get_sale_items(stocked_context, "S1")
    assert [(item.product_id, item.quantity, item.price_at_sale) for item in items] == [("ICE-5", 4, Decimal("12.50"))]
    financials = core_logic.list_financials(stocked_context)
    assert [(row.record_type, row.amount, row.date_iso) for row in financials] == [("Income", Decimal("50.00"), "2024-05-17")]


def test_record_sale_merges_lines_of_same_product(stocked_context):
    transaction = _transaction(
        SaleItem("ICE-5", "Gelo Cubo 5kg", 2, Decimal("7.00")),
        SaleItem("ICE-5", "Gelo Cubo 5kg", 3, Decimal("8.00")),
        unit=BusinessUnit.WHOLESALE,
    )

    core_logic.record_sale(stocked_context, transaction)

    assert core_logic.get_product(stocked_context, "ICE-5").stock_wholesale == 5


def test_record_sale_beyond_stock_writes_nothing(stocked_context):
    with pytest.raises(StockExceeded):
        core_logic.record_sale(stocked_context, _transaction(SaleItem("BEER", "Cerveja", 30, Decimal("5.00"))))

    assert core_logic.get_product(stocked_context, "BEER").stock_retail == 24
    assert core_logic.list_sales(stocked_context) == []
    assert core_logic.list_financials(stocked_context) == []


def test_cancel_after_selling_out_restores_previous_stock(stocked_context):
    core_logic.record_sale(stocked_context, _transaction(SaleItem("BEER", "Cerveja", 24, Decimal("5.00"))))
    assert core_logic.get_product(stocked_context, "BEER").stock_retail == 0

    core_logic.cancel_sale(stocked_context, "S1", timestamp=MOMENT.replace(hour=18))

    assert core_logic.get_product(stocked_context, "BEER").stock_retail == 24


def test_record_sale_with_unknown_product_writes_nothing(stocked_context):
    with pytest.raises(MissingReferenceError):
        core_logic.record_sale(stocked_context, _transaction(SaleItem("GHOST", "Ghost", 1, Decimal("1.00"))))

    assert core_logic.list_sales(stocked_context) == []
    assert core_logic.list_financials(stocked_context) == []


def test_record_sale_rejects_duplicate_id(stocked_context):
    transaction = _transaction(SaleItem("BEER", "Cerveja", 1, Decimal("5.00")))
    core_logic.record_sale(stocked_context, transaction)

    with pytest.raises(BusinessRuleViolation):
        core_logic.record_sale(stocked_context, transaction)


def test_cancel_sale_restores_stock_and_reverses_income(stocked_context):
    core_logic.record_sale(stocked_context, _transaction(SaleItem("BEER", "Cerveja", 4, Decimal("5.00"))))

    sale = core_logic.cancel_sale(stocked_context, "S1", timestamp=MOMENT.replace(hour=18))

    assert sale.status == SaleStatus.CANCELLED.value
    assert core_logic.get_product(stocked_context, "BEER").stock_retail == 24
    summary = core_logic.calculate_financial_summary(stocked_context)
    assert summary["balance"] == Decimal("0")
    assert [row.record_type for row in core_logic.list_financials(stocked_context)] == [
        FinancialType.INCOME.value,
        FinancialType.EXPENSE.value,
    ]
    with pytest.raises(BusinessRuleViolation):
        core_logic.cancel_sale(stocked_context, "S1")


def test_make_ledger_records_through_callback(stocked_context):
    ledger = core_logic.make_ledger(stocked_context)

    ledger(_transaction(SaleItem("BEER", "Cerveja", 1, Decimal("5.00")), sale_id="S9"))

    assert core_logic.get_sale(stocked_context, "S9").total == Decimal("5.00")


def test_low_stock_items_per_unit(stocked_context):
    assert core_logic.low_stock_items(stocked_context, BusinessUnit.RETAIL) == []

    core_logic.record_sale(
        stocked_context,
        _transaction(SaleItem("ICE-5", "Gelo Cubo 5kg", 16, Decimal("10.00"))),
    )

    assert [row.product_id for row in core_logic.low_stock_items(stocked_context, BusinessUnit.RETAIL)] == ["ICE-5"]


def test_apply_price_rounds_to_cents(stocked_context):
    product = core_logic.apply_price(stocked_context, "ICE-5", BusinessUnit.WHOLESALE, Decimal("9.456"))

    assert product.price_wholesale == Decimal("9.46")
    assert product.price_retail == Decimal("10.00")


def test_transfer_stock_moves_between_units(stocked_context):
    moved = core_logic.transfer_stock(stocked_context, "ICE-5", 4)

    ice = core_logic.get_product(stocked_context, "ICE-5")
    assert moved == 4
    assert (ice.stock_wholesale, ice.stock_retail) == (6, 24)


def test_transfer_stock_is_capped_at_matriz_stock(stocked_context):
    moved = core_logic.transfer_stock(stocked_context, "ICE-5", 50)

    ice = core_logic.get_product(stocked_context, "ICE-5")
    assert moved == 10
    assert (ice.stock_wholesale, ice.stock_retail) == (0, 30)


@pytest.mark.parametrize("quantity", [0, -3])
def test_transfer_stock_requires_positive_quantity(stocked_context, quantity):
    with pytest.raises(ValueError):
        core_logic.transfer_stock(stocked_context, "ICE-5", quantity)

    assert core_logic.get_product(stocked_context, "ICE-5").stock_wholesale == 10


def test_adjust_stock_overwrites_given_units_only(stocked_context):
    product = core_logic.adjust_stock(stocked_context, "ICE-5", retail=7)

    assert (product.stock_wholesale, product.stock_retail) == (10, 7)

    product = core_logic.adjust_stock(stocked_context, "ICE-5", wholesale=0, retail=3)

    assert (product.stock_wholesale, product.stock_retail) == (0, 3)


@pytest.mark.parametrize("counts", [{}, {"wholesale": -1}, {"retail": -2, "wholesale": 4}])
def test_adjust_stock_rejects_missing_or_negative_counts(stocked_context, counts):
    with pytest.raises(ValueError):
        core_logic.adjust_stock(stocked_context, "ICE-5", **counts)

    ice = core_logic.get_product(stocked_context, "ICE-5")
    assert (ice.stock_wholesale, ice.stock_retail) == (10, 20)


def test_adjust_stock_unknown_product(stocked_context):
    with pytest.raises(MissingReferenceError):
        core_logic.adjust_stock(stocked_context, "GHOST", retail=1)


@pytest.fixture
def recipe_context(stocked_context):
    """ICE-5 is made from 0.25 of a bag roll and 2 units of water each."""

    core_logic.add_product(stocked_context, make_product("BAG", category="Outros", stock_wholesale=3, stock_retail=0))
    core_logic.add_product(stocked_context, make_product("WATER", category="Outros", stock_wholesale=100, stock_retail=0))
    data_manager.append_recipe(stocked_context.workbook, data_manager.RecipeRow("ICE-5", "BAG", Decimal("0.25")))
    data_manager.append_recipe(stocked_context.workbook, data_manager.RecipeRow("ICE-5", "WATER", Decimal("2")))
    return stocked_context


def test_ingredient_requirements_round_up_partial_units(recipe_context):
    assert core_logic.ingredient_requirements(recipe_context, "ICE-5", 5) == {"BAG": 2, "WATER": 10}
    assert core_logic.ingredient_requirements(recipe_context, "BEER", 5) == {}


def test_record_production_adds_matriz_stock_and_consumes_recipe(recipe_context):
    product = core_logic.record_production(recipe_context, "ICE-5", 5)

    assert (product.stock_wholesale, product.stock_retail) == (15, 20)
    assert core_logic.get_product(recipe_context, "BAG").stock_wholesale == 1
    assert core_logic.get_product(recipe_context, "WATER").stock_wholesale == 90


def test_record_production_without_recipe_only_adds_stock(recipe_context):
    product = core_logic.record_production(recipe_context, "BEER", 6)

    assert product.stock_wholesale == 56
    assert core_logic.get_product(recipe_context, "WATER").stock_wholesale == 100


def test_record_production_short_of_ingredient_writes_nothing(recipe_context):
    with pytest.raises(StockExceeded):
        core_logic.record_production(recipe_context, "ICE-5", 13)

    assert core_logic.get_product(recipe_context, "ICE-5").stock_wholesale == 10
    assert core_logic.get_product(recipe_context, "WATER").stock_wholesale == 100
    assert core_logic.get_product(recipe_context, "BAG").stock_wholesale == 3


def test_record_production_requires_positive_quantity(recipe_context):
    with pytest.raises(ValueError):
        core_logic.record_production(recipe_context, "ICE-5", 0)


def test_mark_invoiced_stores_key(stocked_context):
    core_logic.record_sale(stocked_context, _transaction(SaleItem("BEER", "Cerveja", 1, Decimal("5.00"))))

    sale = core_logic.mark_invoiced(stocked_context, "S1", invoice_key="K" * 44, invoice_url="https://danfe")

    assert sale.invoice_key == "K" * 44
    assert sale.invoice_url == "https://danfe"


def test_add_customer_persists_row(runtime_context):
    record = core_logic.add_customer(runtime_context, name=" Bar do Zé ", document="123", timestamp=MOMENT)

    assert record.customer_id == "C20240517143000000000"
    assert core_logic.get_customer(runtime_context, record.customer_id).name == "Bar do Zé"


def test_changes_survive_persist_and_refresh(stocked_context):
    core_logic.record_sale(stocked_context, _transaction(SaleItem("BEER", "Cerveja", 2, Decimal("5.00"))))
    core_logic.persist_context(stocked_context)

    reloaded = core_logic.refresh_context(stocked_context)

    assert core_logic.get_product(reloaded, "BEER").stock_retail == 22
    assert core_logic.get_sale(reloaded, "S1").payment_method == "Pix"
