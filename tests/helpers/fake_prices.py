"""Fake market-data source for testing.

Implements the two coroutines the trading service calls on its price
source, ``get_prices`` and ``get_top_coins``, from an in-memory price
map.  Every request is recorded in ``calls`` so tests can assert on
caching and batching.  Setting ``fail`` makes every call raise
``UpstreamUnavailableError`` as a real outage or timeout would.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from coinsim.exceptions import UpstreamUnavailableError
from coinsim.models import CoinQuote


class FakePriceSource:
    """In-memory stand-in for the CoinGecko client."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None) -> None:
        self.prices: Dict[str, Decimal] = dict(prices or {})
        self.calls: List[List[str]] = []
        self.fail = False

    async def get_prices(self, coin_ids: Iterable[str]) -> Dict[str, Decimal]:
        ids = sorted(coin_ids)
        self.calls.append(ids)
        if self.fail:
            raise UpstreamUnavailableError("price source down")
        return {coin_id: self.prices[coin_id] for coin_id in ids if coin_id in self.prices}

    async def get_top_coins(self, limit: int = 10) -> List[CoinQuote]:
        self.calls.append(["<top>"])
        if self.fail:
            raise UpstreamUnavailableError("price source down")
        return [
            CoinQuote(id=coin_id, symbol=coin_id[:3].upper(), name=coin_id.title(), current_price=price)
            for coin_id, price in list(self.prices.items())[:limit]
        ]
