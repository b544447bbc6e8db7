"""Operator price entry for wholesale ice sales."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from . import log
from .cart import Cart, CartLine
from .data_manager import ProductRow
from .errors import InvalidPrice, InvalidStateTransition


PriceInput = Union[Decimal, str, int, None]


def parse_price(raw: PriceInput) -> Optional[Decimal]:
    """Turn operator input into a price; blank or malformed text yields ``None``.

    A comma decimal separator is accepted (``"12,50"``). ``NaN`` and infinities
    count as malformed.
    """

    if raw is None:
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    text = str(raw).strip().replace(",", ".")
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


class PendingNegotiation:
    """A product waiting for the operator's quantity and unit price.

    The dialog opens with quantity 1 and no price. :meth:`confirm` only
    succeeds with a strictly positive price; on failure the negotiation stays
    open so the operator can correct the entry.
    """

    def __init__(self, cart: Cart, product: ProductRow) -> None:
        self.cart = cart
        self.product = product
        self.quantity = 1
        self.price: Optional[Decimal] = None
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def set_quantity(self, quantity: int) -> None:
        self._ensure_open()
        self.quantity = max(1, int(quantity))

    def set_price(self, raw: PriceInput) -> None:
        self._ensure_open()
        self.price = parse_price(raw)

    def confirm(self) -> CartLine:
        """Admit the line into the cart and close the negotiation.

        Raises:
            InvalidPrice: If no price, zero, or a negative price was entered.
            StockExceeded: Propagated from the cart; the negotiation stays open.
        """
        self._ensure_open()
        if self.price is None or self.price <= 0:
            log.warning("Rejected negotiated price %r for '%s'", self.price, self.product.product_id)
            raise InvalidPrice("Enter a unit price greater than zero")

        line = self.cart.add(self.product, self.quantity, self.price)
        self._open = False
        log.info(
            "Negotiated %d x '%s' at %s",
            self.quantity,
            self.product.product_id,
            self.price,
        )
        return line

    def cancel(self) -> None:
        self._open = False

    def _ensure_open(self) -> None:
        if not self._open:
            raise InvalidStateTransition("Negotiation is already closed")
