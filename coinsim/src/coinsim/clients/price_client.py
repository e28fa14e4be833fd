"""
CoinGecko market-data client.

Fetches USD spot prices for a set of coin ids and the top coins by
market capitalisation.  Requests are retried with exponential backoff
on transport errors, and every public call is bounded by
``timeout`` seconds overall.  Any failure, including the timeout, is
raised as :class:`~coinsim.exceptions.UpstreamUnavailableError`; the
ledger never sees a partially fetched batch.

Coins the upstream does not know are simply absent from the result.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..accounting import to_decimal
from ..config import DEFAULT_COINGECKO_URL
from ..exceptions import UpstreamUnavailableError
from ..models import CoinQuote
from ..services.metrics_service import LedgerMetrics

logger = logging.getLogger(__name__)

# Keep JSON numbers exact.
_loads = functools.partial(json.loads, parse_float=Decimal)


class CoinGeckoClient:
    """Asynchronous CoinGecko REST client."""

    def __init__(
        self,
        base_url: str = DEFAULT_COINGECKO_URL,
        *,
        timeout: float = 10.0,
        batch_size: int = 100,
        vs_currency: str = "usd",
        metrics: Optional[LedgerMetrics] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.batch_size = max(1, batch_size)
        self.vs_currency = vs_currency.lower()
        self.metrics = metrics

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=8),
        retry=retry_if_exception_type(aiohttp.ClientError),
        reraise=True,
    )
    async def _fetch_json(self, path: str, params: Dict[str, str]) -> Any:
        url = f"{self.base_url}{path}"
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url, params=params, headers={"Accept": "application/json"}) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    logger.error("CoinGecko error %s: %s", resp.status, text[:200] if text else "")
                resp.raise_for_status()
                return await resp.json(loads=_loads)

    async def _get(self, path: str, params: Dict[str, str]) -> Any:
        try:
            return await asyncio.wait_for(self._fetch_json(path, params), timeout=self.timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            if self.metrics:
                self.metrics.price_fetch_failures.inc()
            logger.warning("Market data request %s failed: %r", path, exc)
            raise UpstreamUnavailableError(
                f"Market data unavailable: {exc!r}", {"path": path}
            ) from exc

    async def get_prices(self, coin_ids: Iterable[str]) -> Dict[str, Decimal]:
        """Return ``{coin_id: usd_price}`` for the known ids among ``coin_ids``.

        Raises:
            UpstreamUnavailableError: the upstream failed or timed out.
        """
        ids = sorted({coin_id for coin_id in coin_ids if coin_id})
        prices: Dict[str, Decimal] = {}
        for start in range(0, len(ids), self.batch_size):
            batch = ids[start : start + self.batch_size]
            data = await self._get(
                "/simple/price",
                {"ids": ",".join(batch), "vs_currencies": self.vs_currency},
            )
            if not isinstance(data, dict):
                raise UpstreamUnavailableError("Unexpected price response", {"ids": batch})
            for coin_id in batch:
                entry = data.get(coin_id)
                if not isinstance(entry, dict) or entry.get(self.vs_currency) is None:
                    continue
                try:
                    price = to_decimal(entry[self.vs_currency])
                except ValueError:
                    logger.warning("Ignoring invalid price for %s: %r", coin_id, entry)
                    continue
                if price > 0:
                    prices[coin_id] = price
        return prices

    async def get_top_coins(self, limit: int = 10) -> List[CoinQuote]:
        """Return the ``limit`` largest coins by market capitalisation.

        Raises:
            UpstreamUnavailableError: the upstream failed or timed out.
        """
        data = await self._get(
            "/coins/markets",
            {
                "vs_currency": self.vs_currency,
                "order": "market_cap_desc",
                "per_page": str(limit),
                "page": "1",
                "sparkline": "false",
            },
        )
        if not isinstance(data, list):
            raise UpstreamUnavailableError("Unexpected markets response")
        quotes = []
        for coin in data:
            try:
                quotes.append(
                    CoinQuote(
                        id=coin["id"],
                        symbol=str(coin["symbol"]).upper(),
                        name=coin["name"],
                        current_price=to_decimal(coin["current_price"]),
                        price_change_percentage_24h=to_decimal(
                            coin.get("price_change_percentage_24h") or 0
                        ),
                        market_cap=to_decimal(coin.get("market_cap") or 0),
                        image=coin.get("image"),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed market entry %r: %s", coin, exc)
        return quotes
