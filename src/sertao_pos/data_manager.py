"""Data access layer for the POS workbook.

This module reads from and writes to the ``pos_master_data.xlsx`` workbook and
parses ``config.ini``. Business rules belong in :mod:`sertao_pos.core_logic`.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, saving, and reloading the Excel file.
3. Sheet operations: loading typed records and appending or updating rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_ASSISTANT_MODEL, DEFAULT_SETTLEMENT_DELAY, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
FINANCIALS_SHEET = SheetName.FINANCIALS.value
RECIPES_SHEET = SheetName.RECIPES.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "ProductName",
        "Category",
        "PriceWholesale",
        "PriceRetail",
        "Cost",
        "StockWholesale",
        "StockRetail",
        "Unit",
        "MinStock",
        "IsActive",
    ],
    CUSTOMERS_SHEET: [
        "CustomerID",
        "Name",
        "Document",
        "Phone",
        "Email",
        "Address",
    ],
    SALES_SHEET: [
        "SaleID",
        "Timestamp",
        "BusinessUnit",
        "CustomerName",
        "CustomerDocument",
        "Total",
        "PaymentMethod",
        "ChangeAmount",
        "Status",
        "HasInvoice",
        "InvoiceKey",
        "InvoiceUrl",
    ],
    SALE_ITEMS_SHEET: [
        "SaleID",
        "ProductID",
        "ProductName",
        "Quantity",
        "PriceAtSale",
    ],
    FINANCIALS_SHEET: [
        "RecordID",
        "Date",
        "Description",
        "Amount",
        "Type",
        "Category",
    ],
    RECIPES_SHEET: [
        "ProductID",
        "IngredientID",
        "Quantity",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    settlement_delay: Decimal = DEFAULT_SETTLEMENT_DELAY
    invoice_api_url: Optional[str] = None
    invoice_api_token: Optional[str] = None
    assistant_api_key: Optional[str] = None
    assistant_model: str = DEFAULT_ASSISTANT_MODEL


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    category: str
    price_wholesale: Decimal
    price_retail: Decimal
    cost: Decimal
    stock_wholesale: int
    stock_retail: int
    unit: str = "un"
    min_stock: int = 0
    is_active: bool = True


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    name: str
    document: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    timestamp_iso: str
    business_unit: str
    customer_name: str
    customer_document: Optional[str]
    total: Decimal
    payment_method: str
    change_amount: Optional[Decimal]
    status: str
    has_invoice: bool
    invoice_key: Optional[str]
    invoice_url: Optional[str]


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a row from the ``SaleItems`` sheet."""

    sale_id: str
    product_id: str
    product_name: str
    quantity: int
    price_at_sale: Decimal


@dataclass(frozen=True)
class FinancialRow:
    """In-memory view of a row from the ``Financials`` sheet."""

    record_id: str
    date_iso: str
    description: str
    amount: Decimal
    record_type: str
    category: str


@dataclass(frozen=True)
class RecipeRow:
    """One ingredient line of a product recipe."""

    product_id: str
    ingredient_id: str
    quantity: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    An explicit path is returned untouched. Otherwise the search walks up from
    the current working directory and returns the first ``config.ini`` found.

    Args:
        explicit_path (Path | None): Optional path to use instead of searching.

    Returns:
        Path: The caller's path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def _optional_option(parser: configparser.ConfigParser, section: str, option: str) -> Optional[str]:
    value = parser.get(section, option, fallback="").strip()
    return value or None


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Checkout]``, ``[Invoice]`` and
    ``[Assistant]`` are optional and fall back to the package defaults. A
    relative ``DataFile`` is anchored to ``base_path`` (or the current working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a mandatory ``[System]`` option is missing.
        ValueError: If ``SettlementDelay`` is not a non-negative number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    delay_raw = parser.get("Checkout", "SettlementDelay", fallback=str(DEFAULT_SETTLEMENT_DELAY))
    try:
        settlement_delay = Decimal(delay_raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid SettlementDelay: {delay_raw!r}") from exc
    if settlement_delay < 0:
        raise ValueError(f"Invalid SettlementDelay: {delay_raw!r}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        settlement_delay=settlement_delay,
        invoice_api_url=_optional_option(parser, "Invoice", "ApiUrl"),
        invoice_api_token=_optional_option(parser, "Invoice", "ApiToken"),
        assistant_api_key=_optional_option(parser, "Assistant", "ApiKey"),
        assistant_model=_optional_option(parser, "Assistant", "Model") or DEFAULT_ASSISTANT_MODEL,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the POS workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    log.debug("Workbook written to '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    """Yield the value tuples of ``sheet_name`` skipping the header and blank rows."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Iterate over the ``Customers`` worksheet and yield typed records."""

    for raw in _iter_raw_rows(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale headers from the ``Sales`` worksheet in workbook order."""

    for raw in _iter_raw_rows(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_sale_items(workbook: Workbook) -> Iterable[SaleItemRow]:
    """Stream sale lines from the ``SaleItems`` worksheet."""

    for raw in _iter_raw_rows(workbook, SALE_ITEMS_SHEET):
        yield deserialize_sale_item(raw)


def iter_financials(workbook: Workbook) -> Iterable[FinancialRow]:
    """Stream financial records from the ``Financials`` worksheet."""

    for raw in _iter_raw_rows(workbook, FINANCIALS_SHEET):
        yield deserialize_financial(raw)


def iter_recipes(workbook: Workbook) -> Iterable[RecipeRow]:
    """Stream recipe lines from the ``Recipes`` worksheet."""

    for raw in _iter_raw_rows(workbook, RECIPES_SHEET):
        yield deserialize_recipe(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer record to the ``Customers`` worksheet."""

    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_sale(workbook: Workbook, record: SaleRow, items: Sequence[SaleItemRow]) -> None:
    """Append a sale header and its lines.

    The header goes to ``Sales`` and each line to ``SaleItems``; both sheets
    share the ``SaleID`` column so the lines can be joined back later.
    """

    workbook[SALES_SHEET].append(serialize_sale(record))
    item_sheet = workbook[SALE_ITEMS_SHEET]
    for item in items:
        item_sheet.append(serialize_sale_item(item))


def append_financial(workbook: Workbook, record: FinancialRow) -> None:
    """Append a financial record to the ``Financials`` worksheet."""

    workbook[FINANCIALS_SHEET].append(serialize_financial(record))


def append_recipe(workbook: Workbook, record: RecipeRow) -> None:
    """Append a recipe line to the ``Recipes`` worksheet."""

    workbook[RECIPES_SHEET].append(serialize_recipe(record))


def _header_map(workbook: Workbook, sheet_name: str) -> dict[Any, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of the row whose ``key_column`` equals ``key_value``.

    Every requested column is validated against the header row before any cell
    is written, so an unknown column leaves the row untouched.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Worksheet to modify.
        key_column (str): Header title of the lookup column.
        key_value (str): Value identifying the target row.
        field_values (Mapping[str, Any]): Column names mapped to new values.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    header_map = _header_map(workbook, sheet_name)
    unknown = [field for field in field_values if field not in header_map]
    if unknown:
        raise KeyError(f"Unknown {sheet_name} field: {', '.join(unknown)}")

    sheet = workbook[sheet_name]
    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)


def update_product(workbook: Workbook, product_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing product."""

    update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values=field_values)


def update_sale(workbook: Workbook, sale_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing sale header."""

    update_row(workbook, SALES_SHEET, "SaleID", sale_id, field_values=field_values)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the 1-based row index whose ``key_column`` matches ``key_value``.

    Returns:
        int | None: Excel row index of the first match, otherwise ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.product_name,
        record.category,
        record.price_wholesale,
        record.price_retail,
        record.cost,
        record.stock_wholesale,
        record.stock_retail,
        record.unit,
        record.min_stock,
        record.is_active,
    ]


def serialize_customer(record: CustomerRow) -> list[object]:
    """Convert a customer dataclass into the ``Customers`` column ordering."""

    return [
        record.customer_id,
        record.name,
        record.document,
        record.phone,
        record.email,
        record.address,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale header into the ``Sales`` column ordering."""

    return [
        record.sale_id,
        record.timestamp_iso,
        record.business_unit,
        record.customer_name,
        record.customer_document,
        record.total,
        record.payment_method,
        record.change_amount,
        record.status,
        record.has_invoice,
        record.invoice_key,
        record.invoice_url,
    ]


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    """Convert a sale line into the ``SaleItems`` column ordering."""

    return [
        record.sale_id,
        record.product_id,
        record.product_name,
        record.quantity,
        record.price_at_sale,
    ]


def serialize_financial(record: FinancialRow) -> list[object]:
    """Convert a financial record into the ``Financials`` column ordering."""

    return [
        record.record_id,
        record.date_iso,
        record.description,
        record.amount,
        record.record_type,
        record.category,
    ]


def serialize_recipe(record: RecipeRow) -> list[object]:
    """Convert a recipe line into the ``Recipes`` column ordering."""

    return [record.product_id, record.ingredient_id, record.quantity]


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    return int(Decimal(str(raw))) if raw is not None else 0


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Prices and cost become :class:`~decimal.Decimal`, stock counts become
    ``int`` and identifiers are coerced to ``str`` because Excel happily turns
    barcodes into numbers.
    """

    (
        product_id,
        product_name,
        category,
        price_wholesale,
        price_retail,
        cost,
        stock_wholesale,
        stock_retail,
        unit,
        min_stock,
        is_active,
    ) = raw_row
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name),
        category=str(category) if category is not None else "",
        price_wholesale=_to_decimal(price_wholesale),
        price_retail=_to_decimal(price_retail),
        cost=_to_decimal(cost),
        stock_wholesale=_to_int(stock_wholesale),
        stock_retail=_to_int(stock_retail),
        unit=str(unit) if unit is not None else "un",
        min_stock=_to_int(min_stock),
        is_active=bool(is_active) if is_active is not None else True,
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw worksheet row into a customer record."""

    customer_id, name, document, phone, email, address = raw_row
    return CustomerRow(
        customer_id=str(customer_id),
        name=str(name),
        document=_to_optional_str(document),
        phone=_to_optional_str(phone),
        email=_to_optional_str(email),
        address=_to_optional_str(address),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a sale header record."""

    (
        sale_id,
        timestamp_iso,
        business_unit,
        customer_name,
        customer_document,
        total,
        payment_method,
        change_amount,
        status,
        has_invoice,
        invoice_key,
        invoice_url,
    ) = raw_row
    return SaleRow(
        sale_id=str(sale_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        business_unit=str(business_unit) if business_unit is not None else "",
        customer_name=str(customer_name) if customer_name is not None else "",
        customer_document=_to_optional_str(customer_document),
        total=_to_decimal(total),
        payment_method=str(payment_method) if payment_method is not None else "",
        change_amount=(_to_decimal(change_amount) if change_amount is not None else None),
        status=str(status) if status is not None else "",
        has_invoice=bool(has_invoice),
        invoice_key=_to_optional_str(invoice_key),
        invoice_url=_to_optional_str(invoice_url),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    """Convert a raw worksheet row into a sale line record."""

    sale_id, product_id, product_name, quantity, price_at_sale = raw_row
    return SaleItemRow(
        sale_id=str(sale_id),
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        quantity=_to_int(quantity),
        price_at_sale=_to_decimal(price_at_sale),
    )


def deserialize_financial(raw_row: Sequence[object]) -> FinancialRow:
    """Convert a raw worksheet row into a financial record."""

    record_id, date_iso, description, amount, record_type, category = raw_row
    return FinancialRow(
        record_id=str(record_id),
        date_iso=str(date_iso) if date_iso is not None else "",
        description=str(description) if description is not None else "",
        amount=_to_decimal(amount),
        record_type=str(record_type) if record_type is not None else "",
        category=str(category) if category is not None else "",
    )


def deserialize_recipe(raw_row: Sequence[object]) -> RecipeRow:
    """Convert a raw worksheet row into a recipe line."""

    product_id, ingredient_id, quantity = raw_row
    return RecipeRow(
        product_id=str(product_id),
        ingredient_id=str(ingredient_id),
        quantity=_to_decimal(quantity, default="0"),
    )
