"""Concurrent operations on one user must never drive state negative."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from coinsim.exceptions import InsufficientFundsError, InsufficientHoldingsError
from tests.helpers.ledger import position_of, seed_wallet, transactions_of, wallet_of


@pytest.mark.asyncio
async def test_concurrent_sells_cannot_oversell(store, executor) -> None:
    await seed_wallet(store, "alice")
    await executor.execute_buy("alice", "bitcoin", "BTC", "0.2", "25000")

    outcomes = await asyncio.gather(
        executor.execute_sell("alice", "bitcoin", "BTC", "0.15", "26000"),
        executor.execute_sell("alice", "bitcoin", "BTC", "0.15", "26000"),
        return_exceptions=True,
    )
    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientHoldingsError)
    assert (await position_of(store, "alice", "bitcoin")).amount == Decimal("0.05")
    assert (await wallet_of(store, "alice")).balance == Decimal("8900.00")


@pytest.mark.asyncio
async def test_concurrent_buys_cannot_overspend(store, executor) -> None:
    await seed_wallet(store, "alice", "1000.00")
    outcomes = await asyncio.gather(
        *(executor.execute_buy("alice", "ethereum", "ETH", "1", "300") for _ in range(5)),
        return_exceptions=True,
    )
    assert sum(isinstance(o, InsufficientFundsError) for o in outcomes) == 2
    assert (await wallet_of(store, "alice")).balance == Decimal("100.00")
    assert (await position_of(store, "alice", "ethereum")).amount == Decimal("3")


@pytest.mark.asyncio
async def test_trigger_check_races_manual_sell(store, executor, engine) -> None:
    await seed_wallet(store, "alice")
    result = await executor.execute_buy("alice", "bitcoin", "BTC", "0.2", "25000")
    order = await engine.create_order("alice", result.position.id, "STOP_LOSS", "22000", "0.2")

    evaluation, manual = await asyncio.gather(
        engine.evaluate_triggers("alice", {"bitcoin": 21000}),
        executor.execute_sell("alice", "bitcoin", "BTC", "0.2", "21000"),
        return_exceptions=True,
    )
    # Exactly one of the two sells wins the position.
    sells = [t for t in await transactions_of(store, "alice") if t.type.value == "SELL"]
    assert len(sells) == 1
    assert await position_of(store, "alice", "bitcoin") is None
    if isinstance(manual, Exception):
        assert [o.id for o in evaluation.executed] == [order.id]
    else:
        assert evaluation.executed == []
    assert (await wallet_of(store, "alice")).balance == Decimal("9200.00")


@pytest.mark.asyncio
async def test_users_do_not_block_each_other(store, executor) -> None:
    users = [f"user-{i}" for i in range(5)]
    for user in users:
        await seed_wallet(store, user)
    await asyncio.gather(
        *(executor.execute_buy(user, "bitcoin", "BTC", "0.1", "20000") for user in users)
    )
    for user in users:
        assert (await wallet_of(store, user)).balance == Decimal("8000.00")
