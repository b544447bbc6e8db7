"""Customer lookup and attachment to the sale in progress."""

from __future__ import annotations

from typing import Iterable, List, Optional

from . import log
from .constants import WALK_IN_CUSTOMER_LABEL, WHOLESALE_CUSTOMER_LABEL, BusinessUnit
from .data_manager import CustomerRow


def default_customer_label(unit: BusinessUnit) -> str:
    return WHOLESALE_CUSTOMER_LABEL if unit is BusinessUnit.WHOLESALE else WALK_IN_CUSTOMER_LABEL


def search_customers(customers: Iterable[CustomerRow], query: str) -> List[CustomerRow]:
    """Case-insensitive substring search over name and document number.

    A blank query returns every customer.
    """

    needle = query.strip().lower()
    if not needle:
        return list(customers)
    return [
        customer
        for customer in customers
        if needle in customer.name.lower() or (customer.document is not None and needle in customer.document.lower())
    ]


class CustomerAttachment:
    """Optional customer labeling the transaction; it never affects pricing."""

    def __init__(self) -> None:
        self.customer: Optional[CustomerRow] = None

    @property
    def attached(self) -> bool:
        return self.customer is not None

    @property
    def document(self) -> Optional[str]:
        return self.customer.document if self.customer is not None else None

    def attach(self, customer: CustomerRow) -> None:
        self.customer = customer
        log.info("Attached customer '%s' to the current sale", customer.customer_id)

    def detach(self) -> None:
        self.customer = None

    def label_for(self, unit: BusinessUnit) -> str:
        if self.customer is not None:
            return self.customer.name
        return default_customer_label(unit)
