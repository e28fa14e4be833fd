"""Tests for the PriceCache service."""

from decimal import Decimal

import pytest

from coinsim.services.price_cache import PriceCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_price_cache_roundtrip() -> None:
    cache = PriceCache()
    await cache.update_price("bitcoin", Decimal("42.0"))
    price = await cache.get_price("bitcoin")
    assert price == Decimal("42.0")


@pytest.mark.asyncio
async def test_prices_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = PriceCache(ttl=60, clock=clock)
    await cache.update_prices({"bitcoin": Decimal("1"), "ethereum": Decimal("2")})
    clock.now += 59
    assert await cache.get_price("bitcoin") == Decimal("1")
    clock.now += 1
    assert await cache.get_price("bitcoin") is None
    assert await cache.all_prices() == {}


@pytest.mark.asyncio
async def test_get_many_splits_fresh_and_missing() -> None:
    clock = FakeClock()
    cache = PriceCache(ttl=60, clock=clock)
    await cache.update_price("bitcoin", Decimal("1"))
    clock.now += 30
    await cache.update_price("ethereum", Decimal("2"))
    clock.now += 40
    found, missing = await cache.get_many(["bitcoin", "ethereum", "solana"])
    assert found == {"ethereum": Decimal("2")}
    assert missing == ["bitcoin", "solana"]
