"""Tests for replaying the transaction log against stored ledger state."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest
from sqlalchemy import update

from coinsim.exceptions import WalletNotFoundError
from coinsim.models import TradeType
from coinsim.services.ledger_store import positions_table, wallets_table
from coinsim.services.trade_executor import TradeExecutor
from coinsim.services.valuation_service import ValuationService
from tests.helpers.ledger import seed_wallet


async def trade_a_bit(store, executor, engine) -> None:
    await seed_wallet(store, "alice")
    await executor.execute_buy("alice", "bitcoin", "BTC", "0.1", "20000")
    result = await executor.execute_buy("alice", "bitcoin", "BTC", "0.1", "30000")
    await executor.execute_buy("alice", "ethereum", "ETH", "1.33333333", "1777.77")
    await executor.execute_sell("alice", "ethereum", "ETH", "0.33333333", "1900")
    await engine.create_order("alice", result.position.id, "STOP_LOSS", "22000", "0.2")
    await engine.evaluate_triggers("alice", {"bitcoin": 21000})


@pytest.mark.asyncio
async def test_replay_matches_stored_state(store, executor, engine, valuation) -> None:
    await trade_a_bit(store, executor, engine)
    report = await valuation.reconcile("alice")
    assert report.is_consistent, report.discrepancies
    assert report.expected_balance == report.actual_balance
    assert set(report.actual_positions) == {"ethereum"}
    assert report.expected_positions == report.actual_positions
    # BTC: (21000 - 25000) * 0.2; ETH: (1900 - 1777.77) * 0.33333333
    assert report.realized_pnl == Decimal("-800.00") + Decimal("40.74")


@pytest.mark.asyncio
async def test_tampered_balance_is_reported(store, executor, engine, valuation) -> None:
    await trade_a_bit(store, executor, engine)
    async with store.transaction() as session:
        await session.execute(
            update(wallets_table)
            .where(wallets_table.c.user_id == "alice")
            .values(balance=Decimal("1.00"))
        )
    report = await valuation.reconcile("alice")
    assert not report.is_consistent
    assert report.actual_balance == Decimal("1.00")
    assert any(d.startswith("balance") for d in report.discrepancies)


@pytest.mark.asyncio
async def test_tampered_position_is_reported(store, executor, engine, valuation) -> None:
    await trade_a_bit(store, executor, engine)
    async with store.transaction() as session:
        await session.execute(
            update(positions_table)
            .where(positions_table.c.coin_id == "ethereum")
            .values(amount=Decimal("5"))
        )
    report = await valuation.reconcile("alice")
    assert [d for d in report.discrepancies if d.startswith("ethereum")]


@pytest.mark.asyncio
async def test_reconcile_without_wallet(store, valuation) -> None:
    with pytest.raises(WalletNotFoundError):
        await valuation.reconcile("nobody")


@pytest.mark.asyncio
async def test_replay_follows_insertion_order_when_timestamps_tie(store, settings) -> None:
    frozen = dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc)
    executor = TradeExecutor(store, settings, clock=lambda: frozen)
    await seed_wallet(store, "alice")
    for _ in range(3):
        await executor.execute_buy("alice", "ethereum", "ETH", "1", "1000")
        await executor.execute_sell("alice", "ethereum", "ETH", "1", "1100")

    valuation = ValuationService(store, settings)
    history = await valuation.get_history("alice")
    assert [t.type for t in history] == [TradeType.SELL, TradeType.BUY] * 3

    report = await valuation.reconcile("alice")
    assert report.is_consistent, report.discrepancies
    assert report.actual_balance == Decimal("10300.00")
    assert report.realized_pnl == Decimal("300.00")
