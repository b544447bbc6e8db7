"""Checkout state machine.

A :class:`CheckoutSession` owns the cart from the moment it opens until it is
aborted or finished. The only suspension point is :meth:`CheckoutSession.confirm`,
which awaits a :class:`Settlement` transport before the sale is finalized and
handed to the ledger callback.

Stages::

    METHOD_SELECT --confirm--> PROCESSING --> RECEIPT --finish--> FINISHED
          |
          +--abort--> ABORTED
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, Optional, Union

from . import log
from .cart import Cart
from .constants import BusinessUnit, CheckoutStage, PaymentMethod, SaleStatus
from .customers import CustomerAttachment
from .errors import InvalidCashAmount, InvalidStateTransition
from .negotiation import PriceInput, parse_price


@dataclass(frozen=True)
class SaleItem:
    """A cart line frozen at the moment of sale."""

    product_id: str
    product_name: str
    quantity: int
    price_at_sale: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.price_at_sale * self.quantity


@dataclass(frozen=True)
class FinalizedTransaction:
    """Immutable record of a completed sale."""

    transaction_id: str
    timestamp: datetime
    unit: BusinessUnit
    customer_name: str
    items: tuple[SaleItem, ...]
    total: Decimal
    payment_method: PaymentMethod
    change: Optional[Decimal] = None
    cash_received: Optional[Decimal] = None
    customer_document: Optional[str] = None
    invoice_eligible: bool = True
    status: SaleStatus = SaleStatus.COMPLETED


Ledger = Callable[[FinalizedTransaction], None]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def generate_transaction_id(*, prefix: str = "S", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier of the form ``{prefix}{YYYYMMDDHHMMSSffffff}``.

    Microseconds keep two sales in the same second apart; passing ``when``
    makes the identifier deterministic.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


class Settlement:
    """Transport that confirms a payment before the sale is finalized.

    Subclasses may talk to a payment terminal; the session only awaits
    :meth:`settle`.
    """

    async def settle(self, method: PaymentMethod, amount: Decimal) -> None:
        raise NotImplementedError


class SimulatedSettlement(Settlement):
    """Settlement that always succeeds after a fixed delay."""

    def __init__(self, delay: Union[Decimal, float] = Decimal("1.5")) -> None:
        self.delay = float(delay)

    async def settle(self, method: PaymentMethod, amount: Decimal) -> None:
        log.debug("Simulating %s settlement of %s (%.2fs)", method.value, amount, self.delay)
        await asyncio.sleep(self.delay)


class CheckoutSession:
    """One checkout attempt over a non-empty cart.

    Every operation checks the current stage first and raises
    :class:`InvalidStateTransition` without touching any state when called at
    the wrong time.
    """

    def __init__(
        self,
        cart: Cart,
        *,
        ledger: Ledger,
        settlement: Optional[Settlement] = None,
        customer: Optional[CustomerAttachment] = None,
    ) -> None:
        if cart.is_empty:
            raise InvalidStateTransition("Cannot check out an empty cart")
        if cart.locked:
            raise InvalidStateTransition("Cart already belongs to a checkout session")
        self.cart = cart
        self.ledger = ledger
        self.settlement = settlement if settlement is not None else SimulatedSettlement()
        self.customer = customer if customer is not None else CustomerAttachment()
        self.stage = CheckoutStage.METHOD_SELECT
        self.method: Optional[PaymentMethod] = None
        self.cash_received: Optional[Decimal] = None
        self.last_transaction: Optional[FinalizedTransaction] = None
        cart.lock()

    @property
    def total(self) -> Decimal:
        return self.cart.total()

    @property
    def is_active(self) -> bool:
        return self.stage not in (CheckoutStage.ABORTED, CheckoutStage.FINISHED)

    @property
    def change(self) -> Decimal:
        """Change to hand back, floored at zero for display."""
        if self.method is not PaymentMethod.CASH or self.cash_received is None:
            return Decimal("0")
        return max(Decimal("0"), self.cash_received - self.total)

    @property
    def cash_covers_total(self) -> bool:
        return self.cash_received is not None and self.cash_received >= self.total

    @property
    def can_confirm(self) -> bool:
        if self.stage is not CheckoutStage.METHOD_SELECT or self.method is None:
            return False
        return self.method is not PaymentMethod.CASH or self.cash_covers_total

    def _require_stage(self, stage: CheckoutStage, action: str) -> None:
        if self.stage is not stage:
            log.warning("Rejected checkout %s during %s", action, self.stage.value)
            raise InvalidStateTransition(f"Cannot {action} during {self.stage.value}")

    def select_method(self, method: Union[PaymentMethod, str]) -> None:
        self._require_stage(CheckoutStage.METHOD_SELECT, "select a payment method")
        self.method = PaymentMethod(method)

    def enter_cash(self, raw: PriceInput) -> None:
        """Record the cash handed over; unparseable input clears the amount."""
        self._require_stage(CheckoutStage.METHOD_SELECT, "enter cash")
        self.cash_received = parse_price(raw)

    def _validate_confirm(self) -> PaymentMethod:
        self._require_stage(CheckoutStage.METHOD_SELECT, "confirm")
        if self.method is None:
            raise InvalidStateTransition("Select a payment method before confirming")
        if self.method is PaymentMethod.CASH and not self.cash_covers_total:
            log.warning("Cash received %s does not cover total %s", self.cash_received, self.total)
            raise InvalidCashAmount(f"Cash received must cover the total of {self.total}")
        return self.method

    async def confirm(self, *, when: Optional[datetime] = None) -> FinalizedTransaction:
        """Settle the payment, finalize the sale and move to ``RECEIPT``.

        Validation happens before the first suspension so a rejected confirm
        never leaves ``METHOD_SELECT``. If the settlement transport or the
        ledger raise, the session returns to ``METHOD_SELECT`` and the error
        propagates.

        Raises:
            InvalidStateTransition: Outside ``METHOD_SELECT`` or with no method.
            InvalidCashAmount: Cash payment that does not cover the total.
        """
        method = self._validate_confirm()
        total = self.total
        self.stage = CheckoutStage.PROCESSING
        log.info("Processing %s payment of %s at %s", method.value, total, self.cart.unit.value)
        try:
            await self.settlement.settle(method, total)
            transaction = self._build_transaction(method, total, _resolve_timestamp(when))
            self.ledger(transaction)
        except Exception:
            self.stage = CheckoutStage.METHOD_SELECT
            log.error("Checkout failed while processing; session returned to method selection")
            raise
        self.last_transaction = transaction
        self.stage = CheckoutStage.RECEIPT
        log.info("Finalized sale '%s' (total=%s)", transaction.transaction_id, transaction.total)
        return transaction

    def _build_transaction(self, method: PaymentMethod, total: Decimal, timestamp: datetime) -> FinalizedTransaction:
        unit = self.cart.unit
        items = tuple(
            SaleItem(
                product_id=line.product.product_id,
                product_name=line.product.product_name,
                quantity=line.quantity,
                price_at_sale=line.unit_price(unit),
            )
            for line in self.cart.lines
        )
        is_cash = method is PaymentMethod.CASH
        return FinalizedTransaction(
            transaction_id=generate_transaction_id(when=timestamp),
            timestamp=timestamp,
            unit=unit,
            customer_name=self.customer.label_for(unit),
            customer_document=self.customer.document,
            items=items,
            total=total,
            payment_method=method,
            change=(self.cash_received - total) if is_cash else None,
            cash_received=self.cash_received if is_cash else None,
        )

    def abort(self) -> None:
        """Close the session without a sale; the cart keeps its lines."""
        self._require_stage(CheckoutStage.METHOD_SELECT, "abort")
        self.stage = CheckoutStage.ABORTED
        self.cart.unlock()

    def finish(self) -> FinalizedTransaction:
        """Close the receipt, empty the cart and end the session."""
        self._require_stage(CheckoutStage.RECEIPT, "finish")
        self.cart.unlock()
        self.cart.clear()
        self.stage = CheckoutStage.FINISHED
        return self.last_transaction
