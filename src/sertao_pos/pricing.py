"""Markup pricing and recipe costing."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, Mapping

from . import log
from .constants import CENT
from .data_manager import ProductRow, RecipeRow
from .errors import MissingReferenceError


HUNDRED = Decimal("100")


def suggest_price(
    cost: Decimal,
    *,
    tax_rate: Decimal = Decimal("4"),
    card_fee: Decimal = Decimal("2"),
    fixed_cost_rate: Decimal = Decimal("10"),
    margin: Decimal = Decimal("20"),
) -> Decimal:
    """Return the markup price ``cost / (1 - deductions / 100)`` in cents.

    All rates are percentages of the selling price. When they add up to 100%
    or more no price can cover them and zero is returned.
    """

    deductions = tax_rate + card_fee + fixed_cost_rate + margin
    if deductions >= HUNDRED:
        log.warning("Price deductions of %s%% leave no room for cost", deductions)
        return Decimal("0.00")
    divisor = 1 - deductions / HUNDRED
    return (cost / divisor).quantize(CENT)


def recipes_by_product(recipes: Iterable[RecipeRow]) -> Dict[str, list[RecipeRow]]:
    grouped: Dict[str, list[RecipeRow]] = {}
    for recipe in recipes:
        grouped.setdefault(recipe.product_id, []).append(recipe)
    return grouped


def recipe_unit_cost(
    product_id: str,
    recipes: Iterable[RecipeRow],
    products: Mapping[str, ProductRow],
) -> Decimal:
    """Cost of one unit of ``product_id`` built from its recipe.

    Each ingredient contributes its own cost times the recipe quantity. A
    product without a recipe costs what its ``cost`` column says.

    Raises:
        MissingReferenceError: If the product or an ingredient is unknown.
    """

    if product_id not in products:
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    lines = recipes_by_product(recipes).get(product_id)
    if not lines:
        return products[product_id].cost

    total = Decimal("0")
    for line in lines:
        ingredient = products.get(line.ingredient_id)
        if ingredient is None:
            raise MissingReferenceError(f"Unknown ingredient id: {line.ingredient_id}")
        total += ingredient.cost * line.quantity
    return total.quantize(CENT)
