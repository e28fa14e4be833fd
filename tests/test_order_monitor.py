"""Tests for the background order monitor."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from coinsim.order_monitor import OrderMonitor


async def user_with_stop_loss(service, user: str, coin: str, price: str, trigger: str):
    await service.create_wallet(user)
    result = await service.buy(user, coin, coin[:3].upper(), "1", price)
    return await service.create_order(user, result.position.id, "STOP_LOSS", trigger, "1")


@pytest.mark.asyncio
async def test_run_once_evaluates_every_user_with_one_fetch(service, prices) -> None:
    btc = await user_with_stop_loss(service, "alice", "bitcoin", "2000", "22000")
    eth = await user_with_stop_loss(service, "bob", "ethereum", "1600", "1400")

    results = await OrderMonitor(service, interval=1).run_once()
    assert set(results) == {"alice", "bob"}
    assert [o.id for o in results["alice"].executed] == [btc.id]
    assert results["bob"].executed == []
    assert len(prices.calls) == 1
    assert prices.calls[0] == ["bitcoin", "ethereum"]
    assert [o.id for o in await service.list_pending_orders("bob")] == [eth.id]


@pytest.mark.asyncio
async def test_run_once_without_pending_orders(service, prices) -> None:
    assert await OrderMonitor(service).run_once() == {}
    assert prices.calls == []


@pytest.mark.asyncio
async def test_outage_skips_the_pass(service, prices) -> None:
    await user_with_stop_loss(service, "alice", "bitcoin", "2000", "22000")
    prices.fail = True
    results = await OrderMonitor(service).run_once()
    assert results["alice"].upstream_error
    assert len(await service.list_pending_orders("alice")) == 1
    assert (await service.get_wallet("alice")).balance == Decimal("8000.00")


@pytest.mark.asyncio
async def test_run_loops_until_stopped(service, prices) -> None:
    await user_with_stop_loss(service, "alice", "bitcoin", "2000", "22000")
    stop = asyncio.Event()
    monitor = OrderMonitor(service, interval=0.01)
    task = asyncio.create_task(monitor.run(stop))
    for _ in range(100):
        if not await service.list_pending_orders("alice"):
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert await service.list_pending_orders("alice") == []
