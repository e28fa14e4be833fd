"""
Price cache for the latest market quotes.

Quotes are keyed by coin id and expire after ``ttl`` seconds so that a
burst of portfolio views or order checks costs one upstream request per
minute instead of one per call.  The cache is shared across coroutines
and guarded by an asyncio lock.
"""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple


class PriceCache:
    """Map coin ids to their latest price, with a time-to-live.

    ``clock`` defaults to :func:`time.monotonic` and can be replaced in
    tests to move time forward.
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._prices: Dict[str, Tuple[Decimal, float]] = {}
        self._lock = asyncio.Lock()

    async def update_price(self, coin_id: str, price: Decimal) -> None:
        async with self._lock:
            self._prices[coin_id] = (price, self._clock())

    async def update_prices(self, prices: Dict[str, Decimal]) -> None:
        async with self._lock:
            now = self._clock()
            for coin_id, price in prices.items():
                self._prices[coin_id] = (price, now)

    async def get_price(self, coin_id: str) -> Optional[Decimal]:
        """Return the cached price, or ``None`` if absent or expired."""
        async with self._lock:
            return self._fresh(coin_id)

    async def get_many(self, coin_ids: Iterable[str]) -> Tuple[Dict[str, Decimal], List[str]]:
        """Split ``coin_ids`` into fresh cached prices and ids that need fetching."""
        found: Dict[str, Decimal] = {}
        missing: List[str] = []
        async with self._lock:
            for coin_id in coin_ids:
                price = self._fresh(coin_id)
                if price is None:
                    missing.append(coin_id)
                else:
                    found[coin_id] = price
        return found, missing

    async def all_prices(self) -> Dict[str, Decimal]:
        """Snapshot of every unexpired price."""
        snapshot: Dict[str, Decimal] = {}
        async with self._lock:
            for coin_id in list(self._prices):
                price = self._fresh(coin_id)
                if price is not None:
                    snapshot[coin_id] = price
        return snapshot

    def _fresh(self, coin_id: str) -> Optional[Decimal]:
        entry = self._prices.get(coin_id)
        if entry is None:
            return None
        price, stored_at = entry
        if self._clock() - stored_at >= self.ttl:
            del self._prices[coin_id]
            return None
        return price
