"""Tests for the pure accounting helpers.

These run without a database: the weighted-average rule, dust removal,
rounding and realized P&L are checked directly on ``Decimal`` values.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from coinsim.accounting import (
    DUST_THRESHOLD,
    Holding,
    apply_buy,
    apply_sell,
    buy_cost,
    profit_loss_percentage,
    quantize_money,
    realized_pnl,
    sale_proceeds,
    to_decimal,
)


def test_apply_buy_opens_holding_at_trade_price() -> None:
    holding = apply_buy(None, Decimal("0.1"), Decimal("20000.00"))
    assert holding == Holding(amount=Decimal("0.10000000"), average_cost=Decimal("20000.00000000"))


def test_apply_buy_weighted_average() -> None:
    first = apply_buy(None, Decimal("0.1"), Decimal("20000"))
    second = apply_buy(first, Decimal("0.1"), Decimal("30000"))
    assert second.amount == Decimal("0.2")
    assert second.average_cost == Decimal("25000")


def test_apply_buy_unequal_lots() -> None:
    holding = apply_buy(None, Decimal("3"), Decimal("10"))
    holding = apply_buy(holding, Decimal("1"), Decimal("50"))
    # (3 * 10 + 1 * 50) / 4
    assert holding.average_cost == Decimal("20")
    assert holding.amount == Decimal("4")


def test_equal_lots_average_is_order_independent() -> None:
    prices = [Decimal("100"), Decimal("250"), Decimal("175.5")]
    forward = None
    for price in prices:
        forward = apply_buy(forward, Decimal("1"), price)
    backward = None
    for price in reversed(prices):
        backward = apply_buy(backward, Decimal("1"), price)
    assert forward == backward


def test_repeated_buys_do_not_drift() -> None:
    holding = None
    for _ in range(1000):
        holding = apply_buy(holding, Decimal("0.001"), Decimal("12345.67"))
    assert holding.average_cost == Decimal("12345.67")
    assert holding.amount == Decimal("1")


@pytest.mark.parametrize("amount,price", [(Decimal("0"), Decimal("1")), (Decimal("1"), Decimal("-1"))])
def test_apply_buy_rejects_non_positive(amount: Decimal, price: Decimal) -> None:
    with pytest.raises(ValueError):
        apply_buy(None, amount, price)


def test_apply_sell_keeps_average_cost() -> None:
    holding = Holding(amount=Decimal("0.5"), average_cost=Decimal("100"))
    after = apply_sell(holding, Decimal("0.2"))
    assert after == Holding(amount=Decimal("0.30000000"), average_cost=Decimal("100"))


def test_apply_sell_to_zero_closes_holding() -> None:
    holding = Holding(amount=Decimal("0.2"), average_cost=Decimal("25000"))
    assert apply_sell(holding, Decimal("0.2")) is None


def test_apply_sell_leaving_dust_closes_holding() -> None:
    holding = Holding(amount=Decimal("1.00000001"), average_cost=Decimal("10"))
    assert apply_sell(holding, Decimal("1")) is None
    assert DUST_THRESHOLD == Decimal("0.00000001")


def test_apply_sell_leaving_more_than_dust_keeps_holding() -> None:
    holding = Holding(amount=Decimal("1.00000002"), average_cost=Decimal("10"))
    assert apply_sell(holding, Decimal("1")).amount == Decimal("0.00000002")


def test_apply_sell_more_than_held_raises() -> None:
    with pytest.raises(ValueError):
        apply_sell(Holding(amount=Decimal("1"), average_cost=Decimal("1")), Decimal("1.5"))


def test_buy_cost_rounds_up_and_proceeds_round_down() -> None:
    assert buy_cost(Decimal("0.004"), Decimal("1")) == Decimal("0.01")
    assert sale_proceeds(Decimal("0.004"), Decimal("1")) == Decimal("0.00")
    # 2700.825 exactly
    assert buy_cost(Decimal("1.5"), Decimal("1800.55")) == Decimal("2700.83")
    assert sale_proceeds(Decimal("1.5"), Decimal("1800.55")) == Decimal("2700.82")
    assert buy_cost(Decimal("0.2"), Decimal("21000")) == Decimal("4200.00")
    assert sale_proceeds(Decimal("0.2"), Decimal("21000")) == Decimal("4200.00")


def test_quantize_money_half_up() -> None:
    assert quantize_money(Decimal("2.345")) == Decimal("2.35")
    assert quantize_money(Decimal("-2.345")) == Decimal("-2.35")


def test_to_decimal_avoids_float_artefacts() -> None:
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal("42.50") == Decimal("42.50")
    assert to_decimal(3) == Decimal(3)


@pytest.mark.parametrize("value", ["abc", float("nan"), float("inf"), True, None, [1]])
def test_to_decimal_rejects_non_numbers(value: object) -> None:
    with pytest.raises(ValueError):
        to_decimal(value)


def test_realized_pnl() -> None:
    assert realized_pnl(Decimal("21000"), Decimal("25000"), Decimal("0.2")) == Decimal("-800.00")
    assert realized_pnl(Decimal("30000"), Decimal("20000"), Decimal("0.1")) == Decimal("1000.00")


def test_profit_loss_percentage() -> None:
    assert profit_loss_percentage(Decimal("200"), Decimal("800")) == Decimal("25.00")
    assert profit_loss_percentage(Decimal("-1"), Decimal("3")) == Decimal("-33.33")
    assert profit_loss_percentage(Decimal("5"), Decimal("0")) == Decimal("0")
