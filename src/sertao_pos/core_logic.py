"""Business logic layer over the POS workbook.

This module is the sales ledger the point-of-sale engine reports to. It
consumes the Data Access Layer (DAL) for all I/O and applies the back-office
rules: stock is decremented per business unit when a sale is recorded,
restored when a sale is cancelled, and every sale feeds the financial log.
Inventory moves (transfers, counted adjustments and production runs) are
booked here too.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_CEILING, Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .catalog import resolve_stock
from .checkout import FinalizedTransaction, Ledger, generate_transaction_id
from .constants import (
    CENT,
    EXPECTED_SCHEMA_VERSION,
    BusinessUnit,
    FinancialType,
    SaleStatus,
)
from .errors import BusinessRuleViolation, MissingReferenceError, StockExceeded


SALES_CATEGORY = "Sales"

_STOCK_COLUMNS = {
    BusinessUnit.WHOLESALE: "StockWholesale",
    BusinessUnit.RETAIL: "StockRetail",
}
_PRICE_COLUMNS = {
    BusinessUnit.WHOLESALE: "PriceWholesale",
    BusinessUnit.RETAIL: "PriceRetail",
}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket called ``name``, creating it on demand.

    Buckets hold derived collections (lists and ``by_id`` lookups) so repeated
    queries do not rescan the worksheets.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write; unknown names are ignored."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["active"] = [product for product in all_products if product.is_active]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d active)",
            len(all_products),
            len(bucket["active"]),
        )
    return bucket


def _ensure_customers_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "customers")
    if "all" not in bucket:
        all_customers = list(data_manager.iter_customers(context.workbook))
        bucket["all"] = all_customers
        bucket["by_id"] = {customer.customer_id: customer for customer in all_customers}
        log.debug("Populated customers cache with %d entries", len(all_customers))
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sales bucket with headers, a ``by_id`` map and lines per sale."""

    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        all_sales = list(data_manager.iter_sales(context.workbook))
        items: Dict[str, List[data_manager.SaleItemRow]] = defaultdict(list)
        for item in data_manager.iter_sale_items(context.workbook):
            items[item.sale_id].append(item)
        bucket["all"] = all_sales
        bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
        bucket["items"] = dict(items)
        log.debug("Populated sales cache with %d entries", len(all_sales))
    return bucket


def _ensure_financials_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "financials")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_financials(context.workbook))
        log.debug("Populated financials cache with %d entries", len(bucket["all"]))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override for ``config.ini``. When
            omitted the data layer searches upward from the working directory.

    Returns:
        RuntimeContext: Settings, open workbook and an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
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
    """Refuse to work on a workbook whose declared schema differs from ours.

    Raises:
        RuntimeError: If ``config.ini`` declares another schema version.
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


def persist_context(context: RuntimeContext) -> None:
    """Save in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, dropping unsaved edits, and return a fresh context."""
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return cached products in sheet order, active ones only by default."""
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product by identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    return list(_ensure_customers_cache(context)["all"])


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    cache = _ensure_customers_cache(context)
    try:
        return cache["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}") from exc


def list_sales(context: RuntimeContext, *, newest_first: bool = False) -> List[data_manager.SaleRow]:
    """Return sale headers in workbook order, or newest first on request."""
    sales = list(_ensure_sales_cache(context)["all"])
    if newest_first:
        sales.reverse()
    return sales


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    cache = _ensure_sales_cache(context)
    try:
        return cache["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc


def get_sale_items(context: RuntimeContext, sale_id: str) -> List[data_manager.SaleItemRow]:
    get_sale(context, sale_id)
    return list(_ensure_sales_cache(context)["items"].get(sale_id, []))


def list_financials(context: RuntimeContext) -> List[data_manager.FinancialRow]:
    return list(_ensure_financials_cache(context)["all"])


def list_recipes(context: RuntimeContext) -> List[data_manager.RecipeRow]:
    return list(data_manager.iter_recipes(context.workbook))


def low_stock_items(context: RuntimeContext, unit: BusinessUnit) -> List[data_manager.ProductRow]:
    """Active products whose stock at ``unit`` is at or below their minimum."""
    return [
        product
        for product in list_products(context)
        if resolve_stock(product, unit) <= product.min_stock
    ]


def calculate_financial_summary(context: RuntimeContext) -> Dict[str, Decimal]:
    """Aggregate the financial log into ``income``, ``expense`` and ``balance``."""
    income = Decimal("0")
    expense = Decimal("0")
    for record in _ensure_financials_cache(context)["all"]:
        if record.record_type == FinancialType.INCOME.value:
            income += record.amount
        elif record.record_type == FinancialType.EXPENSE.value:
            expense += record.amount
    balance = income - expense
    log.debug("Financial summary: income=%s expense=%s balance=%s", income, expense, balance)
    return {"income": income, "expense": expense, "balance": balance}


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def add_product(context: RuntimeContext, record: data_manager.ProductRow) -> data_manager.ProductRow:
    """Register a new product after validating identifiers, prices and stock.

    Raises:
        BusinessRuleViolation: If the identifier is already in use.
        ValueError: If a price, cost or stock figure is negative.
    """
    if record.product_id in _ensure_products_cache(context)["by_id"]:
        log.warning("Duplicate product id '%s'", record.product_id)
        raise BusinessRuleViolation(f"Product '{record.product_id}' already exists")
    for amount in (record.price_wholesale, record.price_retail, record.cost):
        require_nonnegative_money(amount)
    for count in (record.stock_wholesale, record.stock_retail, record.min_stock):
        require_nonnegative_stock(count)

    data_manager.append_product(context.workbook, record)
    _invalidate_cache(context, "products")
    log.info("Added product '%s' (%s)", record.product_id, record.product_name)
    return record


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    document: Optional[str] = None,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    address: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomerRow:
    """Register a customer; the name is mandatory and the id is generated."""
    if not name or not name.strip():
        raise ValueError("Customer name is required")
    record = data_manager.CustomerRow(
        customer_id=generate_transaction_id(prefix="C", when=_resolve_timestamp(timestamp)),
        name=name.strip(),
        document=document or None,
        phone=phone or None,
        email=email or None,
        address=address or None,
    )
    data_manager.append_customer(context.workbook, record)
    _invalidate_cache(context, "customers")
    log.info("Added customer '%s' (%s)", record.customer_id, record.name)
    return record


def _stock_deltas(items) -> Dict[str, int]:
    deltas: Dict[str, int] = defaultdict(int)
    for item in items:
        deltas[item.product_id] += item.quantity
    return dict(deltas)


def record_sale(context: RuntimeContext, transaction: FinalizedTransaction) -> data_manager.SaleRow:
    """Persist a finalized POS transaction.

    The sale header and its lines are appended, stock at the sale's unit is
    decremented, and an income record is added to the financial log. Every
    referenced product is resolved and its stock checked before anything is
    written, so a rejected sale leaves the workbook untouched and a later
    cancellation gives back exactly what was taken.

    Raises:
        BusinessRuleViolation: If the sale id was already recorded.
        MissingReferenceError: If a line references an unknown product.
        StockExceeded: If the workbook holds less stock than the sale takes.
    """
    if transaction.transaction_id in _ensure_sales_cache(context)["by_id"]:
        raise BusinessRuleViolation(f"Sale '{transaction.transaction_id}' already recorded")
    deltas = _stock_deltas(transaction.items)
    products = {product_id: get_product(context, product_id) for product_id in deltas}
    for product_id, quantity in deltas.items():
        available = resolve_stock(products[product_id], transaction.unit)
        if quantity > available:
            log.error("Sale '%s' takes %d of '%s' but only %d in stock", transaction.transaction_id, quantity, product_id, available)
            raise StockExceeded(product_id, quantity, available)

    sale = data_manager.SaleRow(
        sale_id=transaction.transaction_id,
        timestamp_iso=transaction.timestamp.isoformat(),
        business_unit=transaction.unit.value,
        customer_name=transaction.customer_name,
        customer_document=transaction.customer_document,
        total=transaction.total,
        payment_method=transaction.payment_method.value,
        change_amount=transaction.change,
        status=transaction.status.value,
        has_invoice=transaction.invoice_eligible,
        invoice_key=None,
        invoice_url=None,
    )
    items = [
        data_manager.SaleItemRow(
            sale_id=transaction.transaction_id,
            product_id=item.product_id,
            product_name=item.product_name,
            quantity=item.quantity,
            price_at_sale=item.price_at_sale,
        )
        for item in transaction.items
    ]
    data_manager.append_sale(context.workbook, sale, items)

    column = _STOCK_COLUMNS[transaction.unit]
    for product_id, quantity in deltas.items():
        current = resolve_stock(products[product_id], transaction.unit)
        data_manager.update_product(context.workbook, product_id, field_values={column: current - quantity})

    if transaction.status is SaleStatus.COMPLETED:
        _append_financial(
            context,
            description=f"Sale {transaction.transaction_id} ({transaction.unit.value})",
            amount=transaction.total,
            record_type=FinancialType.INCOME,
            category=SALES_CATEGORY,
            timestamp=transaction.timestamp,
        )
    _invalidate_cache(context, "sales", "products", "financials")
    log.info(
        "Recorded sale '%s' at %s (items=%d, total=%s, method=%s)",
        sale.sale_id,
        sale.business_unit,
        len(items),
        sale.total,
        sale.payment_method,
    )
    return sale


def make_ledger(context: RuntimeContext) -> Ledger:
    """Return the callback the POS engine uses to hand over finalized sales."""

    def _ledger(transaction: FinalizedTransaction) -> None:
        record_sale(context, transaction)

    return _ledger


def cancel_sale(context: RuntimeContext, sale_id: str, *, timestamp: Optional[datetime] = None) -> data_manager.SaleRow:
    """Cancel a completed sale, returning its stock and reversing its income.

    Raises:
        MissingReferenceError: If the sale does not exist.
        BusinessRuleViolation: If the sale is not in ``Completed`` status.
    """
    sale = get_sale(context, sale_id)
    if sale.status != SaleStatus.COMPLETED.value:
        log.error("Cannot cancel sale '%s' with status '%s'", sale_id, sale.status)
        raise BusinessRuleViolation(f"Sale '{sale_id}' is {sale.status}, only completed sales can be cancelled")

    unit = BusinessUnit(sale.business_unit)
    column = _STOCK_COLUMNS[unit]
    for product_id, quantity in _stock_deltas(get_sale_items(context, sale_id)).items():
        try:
            product = get_product(context, product_id)
        except MissingReferenceError:
            log.warning("Product '%s' of sale '%s' no longer exists; stock not restored", product_id, sale_id)
            continue
        data_manager.update_product(
            context.workbook,
            product_id,
            field_values={column: resolve_stock(product, unit) + quantity},
        )

    data_manager.update_sale(context.workbook, sale_id, field_values={"Status": SaleStatus.CANCELLED.value})
    _append_financial(
        context,
        description=f"Cancelled sale {sale_id}",
        amount=sale.total,
        record_type=FinancialType.EXPENSE,
        category=SALES_CATEGORY,
        timestamp=_resolve_timestamp(timestamp),
    )
    _invalidate_cache(context, "sales", "products", "financials")
    log.info("Cancelled sale '%s' and restored stock at %s", sale_id, unit.value)
    return get_sale(context, sale_id)


def record_expense(
    context: RuntimeContext,
    *,
    description: str,
    amount: Decimal,
    category: str,
    timestamp: Optional[datetime] = None,
) -> data_manager.FinancialRow:
    """Append an expense to the financial log.

    Raises:
        ValueError: If ``amount`` is not strictly positive.
    """
    if amount <= 0:
        log.error("Expense amount validation failed: %s", amount)
        raise ValueError("Expense amount must be greater than zero")
    record = _append_financial(
        context,
        description=description,
        amount=amount,
        record_type=FinancialType.EXPENSE,
        category=category,
        timestamp=_resolve_timestamp(timestamp),
    )
    _invalidate_cache(context, "financials")
    log.info("Recorded expense '%s' (%s)", record.description, record.amount)
    return record


def _append_financial(
    context: RuntimeContext,
    *,
    description: str,
    amount: Decimal,
    record_type: FinancialType,
    category: str,
    timestamp: datetime,
) -> data_manager.FinancialRow:
    record = data_manager.FinancialRow(
        record_id=generate_transaction_id(prefix="F", when=timestamp),
        date_iso=timestamp.date().isoformat(),
        description=description,
        amount=amount,
        record_type=record_type.value,
        category=category,
    )
    data_manager.append_financial(context.workbook, record)
    return record


def validate_invoice_target(sale: data_manager.SaleRow) -> None:
    """Only completed, not yet invoiced sales can be sent for an NFC-e.

    Raises:
        BusinessRuleViolation: If the sale is cancelled, pending, or already
            carries an invoice key.
    """
    if sale.status != SaleStatus.COMPLETED.value:
        log.error("Cannot invoice sale '%s' with status '%s'", sale.sale_id, sale.status)
        raise BusinessRuleViolation(f"Sale '{sale.sale_id}' is {sale.status} and cannot be invoiced")
    if sale.invoice_key:
        log.error("Sale '%s' already has invoice '%s'", sale.sale_id, sale.invoice_key)
        raise BusinessRuleViolation(f"Sale '{sale.sale_id}' already has an invoice")


def mark_invoiced(context: RuntimeContext, sale_id: str, *, invoice_key: str, invoice_url: Optional[str] = None) -> data_manager.SaleRow:
    """Store the fiscal invoice key on a sale after a successful emission."""
    get_sale(context, sale_id)
    data_manager.update_sale(
        context.workbook,
        sale_id,
        field_values={"HasInvoice": True, "InvoiceKey": invoice_key, "InvoiceUrl": invoice_url},
    )
    _invalidate_cache(context, "sales")
    log.info("Sale '%s' invoiced with key '%s'", sale_id, invoice_key)
    return get_sale(context, sale_id)


def apply_price(context: RuntimeContext, product_id: str, unit: BusinessUnit, price: Decimal) -> data_manager.ProductRow:
    """Write ``price`` (rounded to cents) into the price column of ``unit``."""
    get_product(context, product_id)
    require_nonnegative_money(price)
    data_manager.update_product(
        context.workbook,
        product_id,
        field_values={_PRICE_COLUMNS[unit]: price.quantize(CENT)},
    )
    _invalidate_cache(context, "products")
    log.info("Updated %s price of '%s' to %s", unit.value, product_id, price.quantize(CENT))
    return get_product(context, product_id)


def transfer_stock(context: RuntimeContext, product_id: str, quantity: int) -> int:
    """Move stock from the factory (Matriz) to the shop (Filial).

    The move is capped at what the factory holds, so asking for more than is
    available transfers everything there is.

    Returns:
        int: Units actually moved.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValueError: If ``quantity`` is not strictly positive.
    """
    product = get_product(context, product_id)
    if quantity <= 0:
        log.error("Transfer quantity validation failed: %s", quantity)
        raise ValueError("Transfer quantity must be greater than zero")
    moved = min(quantity, product.stock_wholesale)
    data_manager.update_product(
        context.workbook,
        product_id,
        field_values={
            _STOCK_COLUMNS[BusinessUnit.WHOLESALE]: product.stock_wholesale - moved,
            _STOCK_COLUMNS[BusinessUnit.RETAIL]: product.stock_retail + moved,
        },
    )
    _invalidate_cache(context, "products")
    if moved < quantity:
        log.warning("Transfer of '%s' capped at %d (requested %d)", product_id, moved, quantity)
    log.info("Transferred %d of '%s' from Matriz to Filial", moved, product_id)
    return moved


def adjust_stock(
    context: RuntimeContext,
    product_id: str,
    *,
    wholesale: Optional[int] = None,
    retail: Optional[int] = None,
) -> data_manager.ProductRow:
    """Overwrite the counted stock of a product at one or both units.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValueError: If no count is given or a count is negative.
    """
    get_product(context, product_id)
    counts = {BusinessUnit.WHOLESALE: wholesale, BusinessUnit.RETAIL: retail}
    field_values = {}
    for unit, count in counts.items():
        if count is None:
            continue
        require_nonnegative_stock(count)
        field_values[_STOCK_COLUMNS[unit]] = count
    if not field_values:
        raise ValueError("Give a stock count for at least one unit")

    data_manager.update_product(context.workbook, product_id, field_values=field_values)
    _invalidate_cache(context, "products")
    log.info("Adjusted stock of '%s': %s", product_id, field_values)
    return get_product(context, product_id)


def ingredient_requirements(context: RuntimeContext, product_id: str, quantity: int) -> Dict[str, int]:
    """Whole units of each ingredient consumed by producing ``quantity``.

    Fractional recipe amounts are rounded up, since a started package is
    spent.
    """
    required: Dict[str, Decimal] = defaultdict(Decimal)
    for recipe in list_recipes(context):
        if recipe.product_id == product_id:
            required[recipe.ingredient_id] += recipe.quantity * quantity
    return {
        ingredient_id: int(amount.to_integral_value(rounding=ROUND_CEILING))
        for ingredient_id, amount in required.items()
    }


def record_production(context: RuntimeContext, product_id: str, quantity: int) -> data_manager.ProductRow:
    """Book a production run into the factory stock.

    The finished product gains ``quantity`` at the Matriz and every recipe
    ingredient loses its share. All ingredient stock is checked before
    anything is written; ingredients missing from the catalog are skipped.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValueError: If ``quantity`` is not strictly positive.
        StockExceeded: If an ingredient's Matriz stock cannot cover the run.
    """
    product = get_product(context, product_id)
    if quantity <= 0:
        log.error("Production quantity validation failed: %s", quantity)
        raise ValueError("Production quantity must be greater than zero")

    deductions: Dict[str, int] = {}
    for ingredient_id, required in ingredient_requirements(context, product_id, quantity).items():
        try:
            ingredient = get_product(context, ingredient_id)
        except MissingReferenceError:
            log.warning("Ingredient '%s' of '%s' no longer exists; not deducted", ingredient_id, product_id)
            continue
        if required > ingredient.stock_wholesale:
            log.error("Production of '%s' needs %d of '%s', only %d in stock", product_id, required, ingredient_id, ingredient.stock_wholesale)
            raise StockExceeded(ingredient_id, required, ingredient.stock_wholesale)
        deductions[ingredient_id] = ingredient.stock_wholesale - required

    column = _STOCK_COLUMNS[BusinessUnit.WHOLESALE]
    data_manager.update_product(context.workbook, product_id, field_values={column: product.stock_wholesale + quantity})
    for ingredient_id, remaining in deductions.items():
        data_manager.update_product(context.workbook, ingredient_id, field_values={column: remaining})
    _invalidate_cache(context, "products")
    log.info("Produced %d of '%s' (ingredients used: %d)", quantity, product_id, len(deductions))
    return get_product(context, product_id)


def require_nonnegative_money(amount: Decimal) -> None:
    """Raise ``ValueError`` if a monetary value is below zero."""
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_nonnegative_stock(count: int) -> None:
    if count < 0:
        log.error("Stock validation failed: %s", count)
        raise ValueError("Stock counts must be zero or positive")
