"""Tests for the CoinGecko client.

No network access: ``_fetch_json`` is replaced on the instance so the
tests exercise batching, parsing and error mapping only.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Tuple

import aiohttp
import pytest

from coinsim.clients.price_client import CoinGeckoClient
from coinsim.exceptions import UpstreamUnavailableError
from coinsim.services.metrics_service import LedgerMetrics


def stub_fetch(client: CoinGeckoClient, responder) -> List[Tuple[str, Dict[str, str]]]:
    requests: List[Tuple[str, Dict[str, str]]] = []

    async def fake_fetch(path: str, params: Dict[str, str]) -> Any:
        requests.append((path, params))
        return responder(path, params)

    client._fetch_json = fake_fetch  # type: ignore[assignment]
    return requests


@pytest.mark.asyncio
async def test_get_prices_omits_unknown_ids() -> None:
    client = CoinGeckoClient("https://example.test/api/v3/")
    requests = stub_fetch(
        client, lambda path, params: {"bitcoin": {"usd": Decimal("64123.5")}, "ethereum": {}}
    )
    prices = await client.get_prices(["ethereum", "bitcoin", "nosuchcoin", "bitcoin"])
    assert prices == {"bitcoin": Decimal("64123.5")}
    assert requests == [
        ("/simple/price", {"ids": "bitcoin,ethereum,nosuchcoin", "vs_currencies": "usd"})
    ]


@pytest.mark.asyncio
async def test_get_prices_batches_ids() -> None:
    client = CoinGeckoClient(batch_size=2)
    requests = stub_fetch(
        client,
        lambda path, params: {coin: {"usd": 1} for coin in params["ids"].split(",")},
    )
    prices = await client.get_prices(["a", "b", "c", "d", "e"])
    assert set(prices) == {"a", "b", "c", "d", "e"}
    assert [params["ids"] for _, params in requests] == ["a,b", "c,d", "e"]


@pytest.mark.asyncio
async def test_get_prices_with_no_ids_makes_no_request() -> None:
    client = CoinGeckoClient()
    requests = stub_fetch(client, lambda path, params: {})
    assert await client.get_prices([]) == {}
    assert requests == []


@pytest.mark.asyncio
async def test_transport_error_becomes_upstream_unavailable() -> None:
    metrics = LedgerMetrics()
    client = CoinGeckoClient(metrics=metrics)

    async def broken(path: str, params: Dict[str, str]) -> Any:
        raise aiohttp.ClientConnectionError("connection refused")

    client._fetch_json = broken  # type: ignore[assignment]
    with pytest.raises(UpstreamUnavailableError):
        await client.get_prices(["bitcoin"])
    assert metrics.value(metrics.price_fetch_failures) == 1


@pytest.mark.asyncio
async def test_slow_upstream_times_out() -> None:
    client = CoinGeckoClient(timeout=0.05)

    async def hangs(path: str, params: Dict[str, str]) -> Any:
        await asyncio.sleep(5)

    client._fetch_json = hangs  # type: ignore[assignment]
    with pytest.raises(UpstreamUnavailableError):
        await client.get_prices(["bitcoin"])


@pytest.mark.asyncio
async def test_unexpected_payload_is_upstream_error() -> None:
    client = CoinGeckoClient()
    stub_fetch(client, lambda path, params: ["not", "a", "dict"])
    with pytest.raises(UpstreamUnavailableError):
        await client.get_prices(["bitcoin"])


@pytest.mark.asyncio
async def test_get_top_coins_parses_market_entries() -> None:
    client = CoinGeckoClient()
    requests = stub_fetch(
        client,
        lambda path, params: [
            {
                "id": "bitcoin",
                "symbol": "btc",
                "name": "Bitcoin",
                "current_price": Decimal("64000"),
                "price_change_percentage_24h": Decimal("-1.5"),
                "market_cap": 1260000000000,
                "image": "https://example.test/btc.png",
            },
            {"id": "broken"},
        ],
    )
    quotes = await client.get_top_coins(2)
    assert len(quotes) == 1
    assert quotes[0].symbol == "BTC"
    assert quotes[0].current_price == Decimal("64000")
    assert quotes[0].price_change_percentage_24h == Decimal("-1.5")
    assert requests[0][0] == "/coins/markets"
    assert requests[0][1]["per_page"] == "2"
