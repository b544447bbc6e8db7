"""Command-line entry points for the Sertão POS toolkit.

The module is argparse wiring plus the translation of arguments into calls on
the point-of-sale engine and the business layer. Each sub-command is described
by a :class:`CommandSpec`; write commands save the workbook when they succeed,
read commands never touch it.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .analysis import AssistantClient, get_business_analysis
from .catalog import filter_items
from .checkout import FinalizedTransaction, SimulatedSettlement
from .constants import BusinessUnit, Category, PaymentMethod
from .customers import search_customers
from .errors import BusinessRuleViolation, MissingReferenceError
from .invoice import InvoiceService
from .pos import PointOfSale
from .pricing import recipe_unit_cost, suggest_price


ItemSpec = Tuple[str, int, Optional[Decimal]]
SubParsers = argparse._SubParsersAction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Point-of-sale and back-office tools for the Sertão POS workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to a search from the current directory).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare the commands that modify the workbook."""
    specs = {
        "add-product": _spec("add-product", "Register a new product.", _args_add_product, run_add_product, True),
        "add-customer": _spec("add-customer", "Register a new customer.", _args_add_customer, run_add_customer, True),
        "sell": _spec("sell", "Ring up a sale through the point of sale.", _args_sell, run_sell, True),
        "cancel-sale": _spec("cancel-sale", "Cancel a completed sale and restore its stock.", _args_sale_id, run_cancel_sale, True),
        "expense": _spec("expense", "Record an expense in the financial log.", _args_expense, run_expense, True),
        "set-price": _spec("set-price", "Set a unit price, or apply the suggested markup price.", _args_set_price, run_set_price, True),
        "invoice": _spec("invoice", "Emit the NFC-e for a completed sale.", _args_invoice, run_invoice, True),
        "transfer": _spec("transfer", "Move stock from Matriz to Filial.", _args_product_quantity, run_transfer, True),
        "adjust-stock": _spec("adjust-stock", "Overwrite counted stock per unit.", _args_adjust_stock, run_adjust_stock, True),
        "produce": _spec("produce", "Record a production run at Matriz.", _args_product_quantity, run_produce, True),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only commands such as listings and reports."""
    specs = {
        "catalog": _spec("catalog", "List the products sold at a unit.", _args_catalog, run_catalog),
        "customers": _spec("customers", "Search customers by name or document.", _args_customers, run_customers),
        "sales": _spec("sales", "List recent sales.", _args_sales, run_sales),
        "low-stock": _spec("low-stock", "List products at or below their minimum stock.", _args_unit, run_low_stock),
        "summary": _spec("summary", "Display income, expense and balance.", _args_none, run_summary),
        "suggest-price": _spec("suggest-price", "Compute the markup price for a product.", _args_suggest_price, run_suggest_price),
        "ask": _spec("ask", "Ask the business assistant a question.", _args_ask, run_ask),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _spec(
    name: str,
    help_text: str,
    configure: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    mutates: bool = False,
) -> CommandSpec:
    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def decimal_arg(raw: str) -> Decimal:
    try:
        value = Decimal(raw.replace(",", "."))
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}")
    return value


def parse_item_spec(raw: str) -> ItemSpec:
    """Parse ``ID:QTY[:PRICE]``; the quantity must be a positive integer."""
    parts = raw.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"expected ID:QTY[:PRICE], got {raw!r}")
    try:
        quantity = int(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid quantity in {raw!r}") from exc
    if quantity < 1:
        raise argparse.ArgumentTypeError(f"quantity must be at least 1 in {raw!r}")
    price = decimal_arg(parts[2]) if len(parts) == 3 else None
    return parts[0], quantity, price


def _unit_argument(parser: argparse.ArgumentParser, *, default: Optional[str] = BusinessUnit.RETAIL.value) -> None:
    parser.add_argument(
        "--unit",
        choices=[member.value for member in BusinessUnit],
        default=default,
        required=default is None,
    )


def _rate_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--tax-rate", type=decimal_arg, default=Decimal("4"))
    parser.add_argument("--card-fee", type=decimal_arg, default=Decimal("2"))
    parser.add_argument("--fixed-cost-rate", type=decimal_arg, default=Decimal("10"))
    parser.add_argument("--margin", type=decimal_arg, default=Decimal("20"))


def _args_none(parser: argparse.ArgumentParser) -> None:
    return None


def _args_unit(parser: argparse.ArgumentParser) -> None:
    _unit_argument(parser)


def _args_sale_id(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sale-id", required=True)


def _args_add_product(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--product-name", required=True)
    parser.add_argument("--category", choices=[member.value for member in Category], default=Category.OTHER.value)
    parser.add_argument("--price-wholesale", type=decimal_arg, default=Decimal("0"))
    parser.add_argument("--price-retail", type=decimal_arg, default=Decimal("0"))
    parser.add_argument("--cost", type=decimal_arg, default=Decimal("0"))
    parser.add_argument("--stock-wholesale", type=int, default=0)
    parser.add_argument("--stock-retail", type=int, default=0)
    parser.add_argument("--sales-unit", default="un", help="Unit of measure, e.g. kg, un, pack.")
    parser.add_argument("--min-stock", type=int, default=0)
    parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")


def _args_add_customer(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--document", default=None, help="CPF or CNPJ.")
    parser.add_argument("--phone", default=None)
    parser.add_argument("--email", default=None)
    parser.add_argument("--address", default=None)


def _args_sell(parser: argparse.ArgumentParser) -> None:
    _unit_argument(parser)
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        type=parse_item_spec,
        required=True,
        help="ID:QTY[:PRICE]; wholesale ice requires the negotiated PRICE.",
    )
    parser.add_argument("--customer", default=None, help="Name or document of the customer to attach.")
    parser.add_argument("--payment", choices=[member.value for member in PaymentMethod], required=True)
    parser.add_argument("--cash", type=decimal_arg, default=None, help="Cash received (Cash payments only).")


def _args_expense(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--description", required=True)
    parser.add_argument("--amount", type=decimal_arg, required=True)
    parser.add_argument("--category", default="General")


def _args_set_price(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    _unit_argument(parser, default=None)
    parser.add_argument("--price", type=decimal_arg, default=None, help="Explicit price; omit to apply the suggestion.")
    _rate_arguments(parser)


def _args_suggest_price(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    _unit_argument(parser)
    _rate_arguments(parser)


def _args_invoice(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sale-id", required=True)
    parser.add_argument("--document", default=None, help="CPF/CNPJ to print on the invoice.")


def _args_product_quantity(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--quantity", type=int, required=True)


def _args_adjust_stock(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--wholesale", type=int, default=None, help="Counted stock at Matriz.")
    parser.add_argument("--retail", type=int, default=None, help="Counted stock at Filial.")


def _args_catalog(parser: argparse.ArgumentParser) -> None:
    _unit_argument(parser)
    parser.add_argument("--query", default="")


def _args_customers(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--query", default="")


def _args_sales(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--limit", type=int, default=20)


def _args_ask(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("question")


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


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


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def translate_add_product(args: argparse.Namespace) -> data_manager.ProductRow:
    return data_manager.ProductRow(
        product_id=args.product_id,
        product_name=args.product_name,
        category=args.category,
        price_wholesale=args.price_wholesale,
        price_retail=args.price_retail,
        cost=args.cost,
        stock_wholesale=args.stock_wholesale,
        stock_retail=args.stock_retail,
        unit=args.sales_unit,
        min_stock=args.min_stock,
        is_active=not getattr(args, "inactive", False),
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.add_product(context, translate_add_product(args))
    print(f"Added product {record.product_id} ({record.product_name})")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.add_customer(
        context,
        name=args.name,
        document=args.document,
        phone=args.phone,
        email=args.email,
        address=args.address,
    )
    print(f"Added customer {record.customer_id} ({record.name})")
    return 0


def build_point_of_sale(context: core_logic.RuntimeContext, unit: BusinessUnit) -> PointOfSale:
    """Assemble a terminal fed from the workbook and reporting back to it."""
    return PointOfSale(
        core_logic.list_products(context),
        core_logic.list_customers(context),
        ledger=core_logic.make_ledger(context),
        settlement=SimulatedSettlement(context.settings.settlement_delay),
        unit=unit,
    )


def ring_up_sale(
    pos: PointOfSale,
    items: Sequence[ItemSpec],
    *,
    payment: PaymentMethod,
    cash: Optional[Decimal] = None,
    customer_query: Optional[str] = None,
) -> FinalizedTransaction:
    """Drive one complete sale through the terminal and return the receipt data."""
    by_id = {product.product_id: product for product in pos.products}
    for product_id, quantity, price in items:
        product = by_id.get(product_id)
        if product is None:
            raise MissingReferenceError(f"Unknown product id: {product_id}")
        pos.add_item(product, quantity, price)

    if customer_query:
        matches = pos.search_customers(customer_query)
        if not matches:
            raise MissingReferenceError(f"No customer matches '{customer_query}'")
        pos.attach_customer(matches[0])

    session = pos.begin_checkout()
    if session is None:
        raise BusinessRuleViolation("Cart is empty")
    session.select_method(payment)
    if payment is PaymentMethod.CASH:
        session.enter_cash(cash)
    asyncio.run(session.confirm())
    return pos.finish_checkout()


def format_receipt(transaction: FinalizedTransaction) -> str:
    lines = [
        f"Sale {transaction.transaction_id} - {transaction.unit.value}",
        f"Customer: {transaction.customer_name}",
    ]
    for item in transaction.items:
        lines.append(f"  {item.quantity} x {item.product_name} @ {item.price_at_sale:.2f} = {item.line_total:.2f}")
    lines.append(f"Total: {transaction.total:.2f} ({transaction.payment_method.value})")
    if transaction.change is not None:
        lines.append(f"Cash: {transaction.cash_received:.2f}  Change: {transaction.change:.2f}")
    return "\n".join(lines)


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    pos = build_point_of_sale(context, BusinessUnit(args.unit))
    transaction = ring_up_sale(
        pos,
        args.items,
        payment=PaymentMethod(args.payment),
        cash=args.cash,
        customer_query=args.customer,
    )
    print(format_receipt(transaction))
    return 0


def run_cancel_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = core_logic.cancel_sale(context, args.sale_id)
    print(f"Sale {sale.sale_id} is now {sale.status}")
    return 0


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.record_expense(
        context,
        description=args.description,
        amount=args.amount,
        category=args.category,
    )
    print(f"Recorded expense {record.record_id}: {record.amount:.2f}")
    return 0


def _suggested_price(context: core_logic.RuntimeContext, product_id: str, args: argparse.Namespace) -> Tuple[Decimal, Decimal]:
    products = {product.product_id: product for product in core_logic.list_products(context, include_inactive=True)}
    cost = recipe_unit_cost(product_id, core_logic.list_recipes(context), products)
    price = suggest_price(
        cost,
        tax_rate=args.tax_rate,
        card_fee=args.card_fee,
        fixed_cost_rate=args.fixed_cost_rate,
        margin=args.margin,
    )
    return cost, price


def run_set_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    price = args.price
    if price is None:
        _, price = _suggested_price(context, args.product_id, args)
        if price <= 0:
            raise BusinessRuleViolation("Rates add up to 100% or more; no price suggested")
    unit = BusinessUnit(args.unit)
    product = core_logic.apply_price(context, args.product_id, unit, price)
    print(f"{product.product_id} {unit.value} price set to {price:.2f}")
    return 0


def run_suggest_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.get_product(context, args.product_id)
    cost, price = _suggested_price(context, args.product_id, args)
    current = product.price_wholesale if BusinessUnit(args.unit) is BusinessUnit.WHOLESALE else product.price_retail
    print(f"Cost: {cost:.2f}  Suggested: {price:.2f}  Current ({args.unit}): {current:.2f}")
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = core_logic.get_sale(context, args.sale_id)
    core_logic.validate_invoice_target(sale)
    service = InvoiceService(context.settings.invoice_api_url, context.settings.invoice_api_token)
    response = service.emit_nfce(sale, core_logic.get_sale_items(context, sale.sale_id), args.document)
    if not response.success:
        log.error("Invoice for sale '%s' not emitted: %s", sale.sale_id, response.message)
        print(f"Invoice not emitted: {response.message}")
        return 1
    core_logic.mark_invoiced(context, sale.sale_id, invoice_key=response.invoice_key, invoice_url=response.invoice_url)
    print(f"{response.message}: {response.invoice_key}")
    return 0


def _print_stock(product: data_manager.ProductRow) -> None:
    print(f"{product.product_id}: Matriz {product.stock_wholesale}, Filial {product.stock_retail}")


def run_transfer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    moved = core_logic.transfer_stock(context, args.product_id, args.quantity)
    print(f"Transferred {moved} to Filial")
    _print_stock(core_logic.get_product(context, args.product_id))
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_stock(core_logic.adjust_stock(context, args.product_id, wholesale=args.wholesale, retail=args.retail))
    return 0


def run_produce(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    used = core_logic.ingredient_requirements(context, args.product_id, args.quantity)
    product = core_logic.record_production(context, args.product_id, args.quantity)
    print(f"Produced {args.quantity} x {product.product_name}")
    for ingredient_id, amount in used.items():
        print(f"  used {amount} x {ingredient_id}")
    _print_stock(product)
    return 0


def run_catalog(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    view = filter_items(core_logic.list_products(context), BusinessUnit(args.unit), args.query)
    if view.no_match:
        print(f"No products match '{args.query}'.")
    elif view.is_empty:
        print("No products for sale at this unit.")
    for entry in view.entries:
        print(f"{entry.product_id}\t{entry.product.product_name}\t{entry.price:.2f}\t{entry.stock}")
    return 0


def run_customers(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for customer in search_customers(core_logic.list_customers(context), args.query):
        print(f"{customer.customer_id}\t{customer.name}\t{customer.document or '-'}\t{customer.phone or '-'}")
    return 0


def run_sales(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for sale in core_logic.list_sales(context, newest_first=True)[: args.limit]:
        invoice = sale.invoice_key or ("pending" if sale.has_invoice else "-")
        print(f"{sale.sale_id}\t{sale.business_unit}\t{sale.customer_name}\t{sale.total:.2f}\t{sale.status}\t{invoice}")
    return 0


def run_low_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    unit = BusinessUnit(args.unit)
    rows: List[data_manager.ProductRow] = core_logic.low_stock_items(context, unit)
    for product in rows:
        stock = product.stock_wholesale if unit is BusinessUnit.WHOLESALE else product.stock_retail
        print(f"{product.product_id}\t{product.product_name}\t{stock}\t(min {product.min_stock})")
    return 0


def run_summary(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.calculate_financial_summary(context)
    print(f"Income: {summary['income']:.2f}  Expense: {summary['expense']:.2f}  Balance: {summary['balance']:.2f}")
    return 0


def run_ask(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    client = AssistantClient(context.settings.assistant_api_key, model=context.settings.assistant_model)
    answer = get_business_analysis(
        client,
        core_logic.list_products(context, include_inactive=True),
        core_logic.list_sales(context, newest_first=True),
        core_logic.list_financials(context),
        args.question,
        store=context.settings.store_name,
    )
    print(answer)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, BusinessRuleViolation):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
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
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
