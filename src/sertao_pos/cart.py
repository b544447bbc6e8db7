"""Point-of-sale cart.

Lines are stored in an insertion-ordered dict keyed by :class:`LineKey`, the
pair (product id, negotiated price or ``None``). Adding the same product at a
different negotiated price therefore opens a separate line.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterator, List, NamedTuple, Optional

from . import log
from .catalog import requires_negotiation, resolve_price, resolve_stock
from .constants import BusinessUnit
from .data_manager import ProductRow
from .errors import InvalidPrice, InvalidStateTransition, NegotiationRequired, StockExceeded


class LineKey(NamedTuple):
    """Identity of a cart line."""

    product_id: str
    negotiated_price: Optional[Decimal] = None


@dataclass
class CartLine:
    """One product at one price point."""

    product: ProductRow
    quantity: int
    negotiated_price: Optional[Decimal] = None

    @property
    def key(self) -> LineKey:
        return LineKey(self.product.product_id, self.negotiated_price)

    def unit_price(self, unit: BusinessUnit) -> Decimal:
        """Negotiated price when present, otherwise the unit's catalog price."""

        if self.negotiated_price is not None:
            return self.negotiated_price
        return resolve_price(self.product, unit)

    def line_total(self, unit: BusinessUnit) -> Decimal:
        return self.unit_price(unit) * self.quantity


def _require_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        log.error("Cart quantity validation failed: %r", quantity)
        raise ValueError("Quantity must be a positive integer")


def _normalize_price(price: Optional[Decimal]) -> Optional[Decimal]:
    if price is None:
        return None
    price = Decimal(price)
    if price <= 0:
        raise InvalidPrice(f"Negotiated price must be greater than zero, got {price}")
    return price


class Cart:
    """Lines being sold at one business unit.

    The cart is locked while a checkout session owns it; every mutation then
    raises :class:`InvalidStateTransition`.
    """

    def __init__(self, unit: BusinessUnit) -> None:
        self.unit = unit
        self._lines: Dict[LineKey, CartLine] = {}
        self._locked = False

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[CartLine]:
        return iter(list(self._lines.values()))

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    @property
    def is_empty(self) -> bool:
        return not self._lines

    @property
    def locked(self) -> bool:
        return self._locked

    def lock(self) -> None:
        self._locked = True

    def unlock(self) -> None:
        self._locked = False

    def get(self, product_id: str, negotiated_price: Optional[Decimal] = None) -> Optional[CartLine]:
        return self._lines.get(LineKey(product_id, _normalize_key_price(negotiated_price)))

    def _ensure_unlocked(self, action: str) -> None:
        if self._locked:
            log.warning("Rejected cart %s while checkout is in progress", action)
            raise InvalidStateTransition(f"Cannot {action} the cart during checkout")

    def add(self, product: ProductRow, quantity: int = 1, negotiated_price: Optional[Decimal] = None) -> CartLine:
        """Add ``quantity`` of ``product`` and return the affected line.

        A line with the same product and the same negotiated price (``None``
        included) is incremented; otherwise a new line is appended.

        Raises:
            InvalidStateTransition: If a checkout session holds the cart.
            ValueError: If ``quantity`` is not a positive integer.
            InvalidPrice: If ``negotiated_price`` is zero or negative.
            NegotiationRequired: For wholesale ice added without a price.
            StockExceeded: If the resulting quantity exceeds the unit stock.
        """
        self._ensure_unlocked("add to")
        _require_quantity(quantity)
        negotiated_price = _normalize_price(negotiated_price)
        if negotiated_price is None and requires_negotiation(product, self.unit):
            log.warning("Product '%s' needs a negotiated price at %s", product.product_id, self.unit.value)
            raise NegotiationRequired(f"'{product.product_name}' must be sold at a negotiated price")

        stock = resolve_stock(product, self.unit)
        key = LineKey(product.product_id, negotiated_price)
        existing = self._lines.get(key)
        requested = quantity + (existing.quantity if existing is not None else 0)
        if requested > stock:
            log.warning(
                "Stock exceeded for '%s' at %s: requested %d, available %d",
                product.product_id,
                self.unit.value,
                requested,
                stock,
            )
            raise StockExceeded(product.product_id, requested, stock)

        if existing is not None:
            existing.quantity = requested
            return existing
        line = CartLine(product=product, quantity=quantity, negotiated_price=negotiated_price)
        self._lines[key] = line
        return line

    def remove(self, product_id: str, negotiated_price: Optional[Decimal] = None) -> None:
        """Drop the line matching the key exactly; unknown keys are ignored."""
        self._ensure_unlocked("remove from")
        self._lines.pop(LineKey(product_id, _normalize_key_price(negotiated_price)), None)

    def adjust_quantity(self, product_id: str, delta: int, negotiated_price: Optional[Decimal] = None) -> Optional[CartLine]:
        """Change a line's quantity by ``delta``.

        Returns the updated line, or ``None`` when the line was removed because
        its quantity reached zero (or no line matched).

        Raises:
            StockExceeded: If the new quantity is above the unit stock; the line
                keeps its previous quantity.
        """
        self._ensure_unlocked("change")
        key = LineKey(product_id, _normalize_key_price(negotiated_price))
        line = self._lines.get(key)
        if line is None:
            return None

        new_quantity = line.quantity + delta
        stock = resolve_stock(line.product, self.unit)
        if new_quantity > stock:
            log.warning(
                "Stock limit reached for '%s' at %s: requested %d, available %d",
                product_id,
                self.unit.value,
                new_quantity,
                stock,
            )
            raise StockExceeded(product_id, new_quantity, stock)
        if new_quantity <= 0:
            del self._lines[key]
            return None
        line.quantity = new_quantity
        return line

    def total(self) -> Decimal:
        """Sum of resolved unit price times quantity over every line."""
        return sum((line.line_total(self.unit) for line in self._lines.values()), Decimal("0"))

    def clear(self) -> None:
        self._ensure_unlocked("clear")
        self._lines.clear()

    def switch_unit(self, unit: BusinessUnit) -> None:
        """Move the cart to another unit; prices and stock differ, so it empties."""
        self._ensure_unlocked("switch the unit of")
        self._lines.clear()
        self.unit = unit


def _normalize_key_price(price: Optional[Decimal]) -> Optional[Decimal]:
    return Decimal(price) if price is not None else None
