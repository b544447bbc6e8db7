"""Catalog filtering and per-unit price/stock resolution.

The wholesale unit only ever exposes the ice family; the retail unit sells the
whole catalog. :func:`resolve_price` and :func:`resolve_stock` are the single
place that decides which column of a product applies to a unit, and the cart
and checkout both go through them.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from .constants import ICE_CATEGORY_MARKER, BusinessUnit
from .data_manager import ProductRow


@dataclass(frozen=True)
class CatalogEntry:
    """A product as seen from one business unit."""

    product: ProductRow
    price: Decimal
    stock: int

    @property
    def product_id(self) -> str:
        return self.product.product_id

    @property
    def low_stock(self) -> bool:
        return self.stock <= self.product.min_stock


@dataclass(frozen=True)
class CatalogView:
    """Result of filtering the catalog for a unit and a search query.

    ``has_query`` lets the caller tell an empty search box apart from a search
    that matched nothing.
    """

    unit: BusinessUnit
    query: str
    entries: tuple[CatalogEntry, ...]

    @property
    def has_query(self) -> bool:
        return bool(self.query.strip())

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def no_match(self) -> bool:
        return self.has_query and self.is_empty


def is_ice(product: ProductRow) -> bool:
    """Return ``True`` when the product belongs to the ice category family."""

    return ICE_CATEGORY_MARKER in product.category


def requires_negotiation(product: ProductRow, unit: BusinessUnit) -> bool:
    """Wholesale ice is always sold at an operator-entered price."""

    return unit is BusinessUnit.WHOLESALE and is_ice(product)


def resolve_price(product: ProductRow, unit: BusinessUnit) -> Decimal:
    """Return the catalog unit price that applies to ``unit``."""

    return product.price_wholesale if unit is BusinessUnit.WHOLESALE else product.price_retail


def resolve_stock(product: ProductRow, unit: BusinessUnit) -> int:
    """Return the stock count held at ``unit``."""

    return product.stock_wholesale if unit is BusinessUnit.WHOLESALE else product.stock_retail


def matches_query(product: ProductRow, query: str) -> bool:
    """Case-insensitive substring match on product name or identifier."""

    needle = query.strip().lower()
    if not needle:
        return True
    return needle in product.product_name.lower() or needle in product.product_id.lower()


def is_sellable(product: ProductRow, unit: BusinessUnit) -> bool:
    """Active products, restricted to the ice family at the wholesale unit."""

    if not product.is_active:
        return False
    if unit is BusinessUnit.WHOLESALE:
        return is_ice(product)
    return True


def filter_items(products: Iterable[ProductRow], unit: BusinessUnit, query: str = "") -> CatalogView:
    """Return the visible catalog for ``unit`` narrowed by ``query``.

    Args:
        products (Iterable[ProductRow]): Full product list.
        unit (BusinessUnit): Unit whose prices, stock and visibility rules apply.
        query (str): Free text; blank means no filtering.

    Returns:
        CatalogView: Entries in input order with resolved price and stock.
    """

    entries: List[CatalogEntry] = [
        CatalogEntry(product=product, price=resolve_price(product, unit), stock=resolve_stock(product, unit))
        for product in products
        if is_sellable(product, unit) and matches_query(product, query)
    ]
    return CatalogView(unit=unit, query=query, entries=tuple(entries))


def find_by_code(products: Sequence[ProductRow], unit: BusinessUnit, code: str) -> Optional[ProductRow]:
    """Resolve a scanned barcode or typed name to a sellable product.

    An exact identifier match wins; otherwise the product whose name equals
    ``code`` ignoring case is returned. Products hidden from ``unit`` are never
    returned.
    """

    code = code.strip()
    if not code:
        return None
    visible = [product for product in products if is_sellable(product, unit)]
    for product in visible:
        if product.product_id == code:
            return product
    lowered = code.lower()
    for product in visible:
        if product.product_name.lower() == lowered:
            return product
    return None
