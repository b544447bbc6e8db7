"""Enumerations and fixed values shared across the POS modules.

The workbook layer, the checkout engine and the command-line front end all
refer to business units, payment methods and sheet names through this module
so the text stored in the workbook stays consistent.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Schema version the workbook must declare in config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Category labels belonging to the ice family all carry this marker.
ICE_CATEGORY_MARKER = "Gelo"

DEFAULT_SETTLEMENT_DELAY = Decimal("1.5")
DEFAULT_ASSISTANT_MODEL = "gemini-2.5-flash"

WHOLESALE_CUSTOMER_LABEL = "Wholesale Customer"
WALK_IN_CUSTOMER_LABEL = "Walk-in"

CENT = Decimal("0.01")


class BusinessUnit(str, Enum):
    """The two selling locations."""

    WHOLESALE = "Matriz"
    RETAIL = "Filial"


class Category(str, Enum):
    """Product categories used by the catalog."""

    ICE_CUBE = "Gelo Cubo"
    ICE_FLAKE = "Gelo Escama"
    ICE_BAR = "Gelo Barra"
    ICE_FLAVOR = "Gelo Sabor"
    BEVERAGE_ALCOHOL = "Bebida Alcoólica"
    BEVERAGE_NON_ALCOHOL = "Bebida Não Alcoólica"
    OTHER = "Outros"


class PaymentMethod(str, Enum):
    """Payment methods accepted at checkout."""

    PIX = "Pix"
    CREDIT = "Credit"
    DEBIT = "Debit"
    CASH = "Cash"


class CheckoutStage(str, Enum):
    """Stages of a checkout session."""

    METHOD_SELECT = "METHOD_SELECT"
    PROCESSING = "PROCESSING"
    RECEIPT = "RECEIPT"
    ABORTED = "ABORTED"
    FINISHED = "FINISHED"


class SaleStatus(str, Enum):
    """Lifecycle status recorded on the Sales sheet."""

    COMPLETED = "Completed"
    PENDING = "Pending"
    CANCELLED = "Cancelled"


class FinancialType(str, Enum):
    """Direction of a financial record."""

    INCOME = "Income"
    EXPENSE = "Expense"


class SheetName(str, Enum):
    """Worksheet names managed by the data layer."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    FINANCIALS = "Financials"
    RECIPES = "Recipes"


# SEFAZ "forma de pagamento" codes.
SEFAZ_PAYMENT_CODES = {
    PaymentMethod.CASH: "01",
    PaymentMethod.CREDIT: "03",
    PaymentMethod.DEBIT: "04",
    PaymentMethod.PIX: "17",
}
SEFAZ_OTHER_PAYMENT_CODE = "99"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ICE_CATEGORY_MARKER",
    "DEFAULT_SETTLEMENT_DELAY",
    "DEFAULT_ASSISTANT_MODEL",
    "WHOLESALE_CUSTOMER_LABEL",
    "WALK_IN_CUSTOMER_LABEL",
    "CENT",
    "BusinessUnit",
    "Category",
    "PaymentMethod",
    "CheckoutStage",
    "SaleStatus",
    "FinancialType",
    "SheetName",
    "SEFAZ_PAYMENT_CODES",
    "SEFAZ_OTHER_PAYMENT_CODE",
]
