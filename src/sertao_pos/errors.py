"""Exceptions raised by the POS engine and the ledger layer.

Every condition here is local and recoverable: the operation that raised it
left its state untouched, so the caller only needs to show the message.
"""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, or sale is unknown."""


class StockExceeded(BusinessRuleViolation):
    """Raised when a cart quantity would exceed the unit's available stock."""

    def __init__(self, item_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for '{item_id}': requested {requested}, available {available}"
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class InvalidPrice(BusinessRuleViolation):
    """Raised when a negotiated price is missing, zero, or negative."""


class InvalidCashAmount(BusinessRuleViolation):
    """Raised when the cash received does not cover the cart total."""


class InvalidStateTransition(BusinessRuleViolation):
    """Raised when an operation is invoked outside the stage that allows it."""


class NegotiationRequired(BusinessRuleViolation):
    """Raised when a wholesale ice item is added without a negotiated price."""


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "StockExceeded",
    "InvalidPrice",
    "InvalidCashAmount",
    "InvalidStateTransition",
    "NegotiationRequired",
]
