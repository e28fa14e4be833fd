"""
Pure accounting functions for the ledger.

Nothing in this module touches storage.  The executor reads rows, calls
these helpers to compute the next state, and writes the result back in
one transaction; reconciliation replays the transaction log through the
very same helpers, which is what keeps the two views identical.

Numeric policy:

* currency amounts (balances, trade values, fees) carry 2 decimals;
* coin amounts carry 8 decimals;
* per-unit prices (average cost, trade price, trigger price) carry 8 decimals.

All arithmetic is done on :class:`decimal.Decimal` with a wide working
precision and rounded half-up only when a value is stored.  Trade totals
are the exception: a BUY debit rounds up and a SELL credit rounds down,
so rounding never moves cash towards the user.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import (
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_UP,
    Context,
    Decimal,
    InvalidOperation,
    localcontext,
)
from typing import Any, Optional

MONEY_QUANT = Decimal("0.01")
AMOUNT_QUANT = Decimal("0.00000001")
PRICE_QUANT = Decimal("0.00000001")

# Positions at or below this size are removed instead of kept as dust.
DUST_THRESHOLD = Decimal("0.00000001")

ZERO = Decimal("0")
HUNDRED = Decimal("100")

_CONTEXT = Context(prec=50, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """Convert ``value`` to ``Decimal`` without binary float artefacts.

    Floats go through ``repr`` so ``0.1`` becomes ``Decimal("0.1")``.

    Raises:
        ValueError: if the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    else:
        raise ValueError(f"not a number: {value!r}")
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_QUANT, rounding=ROUND_HALF_UP)


def quantize_price(value: Decimal) -> Decimal:
    return value.quantize(PRICE_QUANT, rounding=ROUND_HALF_UP)


def buy_cost(amount: Decimal, price_per_unit: Decimal) -> Decimal:
    """Cash debited for a BUY, rounded up to the next cent."""
    with localcontext(_CONTEXT):
        return (amount * price_per_unit).quantize(MONEY_QUANT, rounding=ROUND_CEILING)


def sale_proceeds(amount: Decimal, price_per_unit: Decimal) -> Decimal:
    """Cash credited for a SELL, rounded down to the cent."""
    with localcontext(_CONTEXT):
        return (amount * price_per_unit).quantize(MONEY_QUANT, rounding=ROUND_FLOOR)


def is_dust(amount: Decimal, threshold: Decimal = DUST_THRESHOLD) -> bool:
    return amount <= threshold


@dataclass(frozen=True)
class Holding:
    """Size and cost basis of one coin position, without identity."""

    amount: Decimal
    average_cost: Decimal

    @property
    def cost_basis(self) -> Decimal:
        with localcontext(_CONTEXT):
            return self.amount * self.average_cost


def apply_buy(holding: Optional[Holding], amount: Decimal, price_per_unit: Decimal) -> Holding:
    """Return the holding after buying ``amount`` at ``price_per_unit``.

    A missing holding is opened at the trade price; an existing one gets
    the amount-weighted average of its cost and the new price.
    """
    if amount <= 0 or price_per_unit <= 0:
        raise ValueError("amount and price_per_unit must be positive")
    if holding is None:
        return Holding(amount=quantize_amount(amount), average_cost=quantize_price(price_per_unit))
    with localcontext(_CONTEXT):
        new_amount = holding.amount + amount
        weighted = holding.amount * holding.average_cost + amount * price_per_unit
        new_cost = weighted / new_amount
    return Holding(amount=quantize_amount(new_amount), average_cost=quantize_price(new_cost))


def apply_sell(
    holding: Holding, amount: Decimal, dust_threshold: Decimal = DUST_THRESHOLD
) -> Optional[Holding]:
    """Return the holding after selling ``amount``, or ``None`` if it closes.

    The average cost is unchanged by a sale.  Callers must have checked
    ``amount <= holding.amount`` already.
    """
    if amount <= 0:
        raise ValueError("amount must be positive")
    if amount > holding.amount:
        raise ValueError(f"cannot sell {amount} from a holding of {holding.amount}")
    remaining = quantize_amount(holding.amount - amount)
    if is_dust(remaining, dust_threshold):
        return None
    return Holding(amount=remaining, average_cost=holding.average_cost)


def realized_pnl(sale_price: Decimal, average_cost: Decimal, amount: Decimal) -> Decimal:
    """Profit of selling ``amount`` at ``sale_price`` against its cost basis."""
    with localcontext(_CONTEXT):
        return quantize_money((sale_price - average_cost) * amount)


def profit_loss_percentage(profit_loss: Decimal, cost_basis: Decimal) -> Decimal:
    """P&L as a percentage of cost basis; ``0`` when the basis is zero."""
    if cost_basis == 0:
        return ZERO
    with localcontext(_CONTEXT):
        return quantize_money(profit_loss / cost_basis * HUNDRED)
