"""Point-of-sale terminal.

:class:`PointOfSale` ties the catalog, the cart, price negotiation, customer
attachment and checkout together the way the sales screen drives them. It
holds no persistence of its own: products and customers come in through the
constructor and finalized sales leave through the ledger callback.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from . import log
from .cart import Cart, CartLine
from .catalog import CatalogView, filter_items, find_by_code, is_sellable, requires_negotiation
from .checkout import CheckoutSession, FinalizedTransaction, Ledger, Settlement
from .constants import BusinessUnit, CheckoutStage
from .customers import CustomerAttachment, search_customers
from .data_manager import CustomerRow, ProductRow
from .errors import BusinessRuleViolation, InvalidStateTransition, MissingReferenceError
from .negotiation import PendingNegotiation, PriceInput, parse_price


class PointOfSale:
    def __init__(
        self,
        products: Sequence[ProductRow],
        customers: Sequence[CustomerRow] = (),
        *,
        ledger: Ledger,
        settlement: Optional[Settlement] = None,
        unit: BusinessUnit = BusinessUnit.RETAIL,
    ) -> None:
        self.products = list(products)
        self.customers = list(customers)
        self.ledger = ledger
        self.settlement = settlement
        self.cart = Cart(unit)
        self.customer = CustomerAttachment()
        self.query = ""
        self.negotiation: Optional[PendingNegotiation] = None
        self.checkout: Optional[CheckoutSession] = None
        self.last_transaction: Optional[FinalizedTransaction] = None

    @property
    def unit(self) -> BusinessUnit:
        return self.cart.unit

    @property
    def in_checkout(self) -> bool:
        return self.checkout is not None and self.checkout.is_active

    def _ensure_idle(self, action: str) -> None:
        if self.in_checkout:
            log.warning("Rejected %s while a checkout session is open", action)
            raise InvalidStateTransition(f"Cannot {action} during checkout")

    # -- catalog -----------------------------------------------------------

    def catalog(self, query: Optional[str] = None) -> CatalogView:
        return filter_items(self.products, self.unit, self.query if query is None else query)

    def set_query(self, query: str) -> CatalogView:
        self.query = query
        return self.catalog()

    def refresh_products(self, products: Sequence[ProductRow]) -> None:
        """Replace the catalog, e.g. after the ledger updated stock."""
        self.products = list(products)

    def select_unit(self, unit: BusinessUnit) -> None:
        """Switch business unit; the cart always comes back empty."""
        self._ensure_idle("switch unit")
        self.cart.switch_unit(unit)
        self.negotiation = None
        log.info("Point of sale switched to %s", unit.value)

    # -- cart --------------------------------------------------------------

    def select_product(self, product: ProductRow) -> Optional[PendingNegotiation]:
        """Handle a click on a catalog product.

        Wholesale ice opens a :class:`PendingNegotiation` (returned) instead of
        touching the cart; everything else is added with quantity 1.

        Raises:
            MissingReferenceError: If the product is hidden from this unit.
        """
        self._ensure_idle("add products")
        if not is_sellable(product, self.unit):
            log.warning("Rejected '%s': not sold at %s", product.product_id, self.unit.value)
            raise MissingReferenceError(f"'{product.product_id}' is not sold at {self.unit.value}")
        if requires_negotiation(product, self.unit):
            self.negotiation = PendingNegotiation(self.cart, product)
            return self.negotiation
        self.cart.add(product)
        return None

    def add_item(self, product: ProductRow, quantity: int = 1, price: PriceInput = None) -> CartLine:
        """Add a product in one step, negotiating through the dialog when required.

        Raises:
            MissingReferenceError: If the product is hidden from this unit.
            InvalidPrice: For wholesale ice without a positive ``price``.
        """
        self._ensure_idle("add products")
        if not is_sellable(product, self.unit):
            raise MissingReferenceError(f"'{product.product_id}' is not sold at {self.unit.value}")
        if requires_negotiation(product, self.unit):
            self.select_product(product)
            try:
                return self.confirm_negotiation(quantity=quantity, price=price)
            except BusinessRuleViolation:
                self.cancel_negotiation()
                raise
        return self.cart.add(product, quantity, parse_price(price))

    def scan(self, code: str) -> Optional[PendingNegotiation]:
        """Look up a barcode or exact product name and select it.

        Raises:
            MissingReferenceError: If no product visible at the unit matches.
        """
        product = find_by_code(self.products, self.unit, code)
        if product is None:
            log.warning("No product matches code '%s' at %s", code, self.unit.value)
            raise MissingReferenceError(f"Product not found: {code}")
        return self.select_product(product)

    def confirm_negotiation(self, *, quantity: Optional[int] = None, price: PriceInput = None) -> CartLine:
        if self.negotiation is None:
            raise InvalidStateTransition("No price negotiation is open")
        if quantity is not None:
            self.negotiation.set_quantity(quantity)
        if price is not None:
            self.negotiation.set_price(price)
        line = self.negotiation.confirm()
        self.negotiation = None
        return line

    def cancel_negotiation(self) -> None:
        if self.negotiation is not None:
            self.negotiation.cancel()
        self.negotiation = None

    # -- customers ---------------------------------------------------------

    def search_customers(self, query: str) -> List[CustomerRow]:
        return search_customers(self.customers, query)

    def attach_customer(self, customer: CustomerRow) -> None:
        self._ensure_customer_editable()
        self.customer.attach(customer)

    def detach_customer(self) -> None:
        self._ensure_customer_editable()
        self.customer.detach()

    def _ensure_customer_editable(self) -> None:
        if self.in_checkout and self.checkout.stage is not CheckoutStage.METHOD_SELECT:
            raise InvalidStateTransition("Customer cannot change after payment started")

    # -- checkout ----------------------------------------------------------

    def begin_checkout(self) -> Optional[CheckoutSession]:
        """Open a checkout session; an empty cart makes this a no-op returning ``None``."""
        self._ensure_idle("start another checkout")
        if self.cart.is_empty:
            log.info("Checkout ignored: cart is empty")
            return None
        self.negotiation = None
        self.checkout = CheckoutSession(
            self.cart,
            ledger=self._record,
            settlement=self.settlement,
            customer=self.customer,
        )
        return self.checkout

    def _record(self, transaction: FinalizedTransaction) -> None:
        self.ledger(transaction)
        self.last_transaction = transaction

    def abort_checkout(self) -> None:
        if self.checkout is None:
            raise InvalidStateTransition("No checkout session is open")
        self.checkout.abort()
        self.checkout = None

    def finish_checkout(self) -> FinalizedTransaction:
        if self.checkout is None:
            raise InvalidStateTransition("No checkout session is open")
        transaction = self.checkout.finish()
        self.checkout = None
        self.customer.detach()
        return transaction
