"""
Background order monitor.

Periodically evaluates every user's pending stop-loss and take-profit
orders against live prices.  Each pass collects the users with pending
orders, fetches one price map covering all of their coins, and then
runs the order engine for every user concurrently; a single user's
orders are still handled one at a time by the engine.

If the market data source is unavailable the pass is skipped and no
order is touched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .exceptions import UpstreamUnavailableError
from .models import EvaluationResult
from .service import TradingService

logger = logging.getLogger(__name__)


class OrderMonitor:
    def __init__(self, service: TradingService, interval: Optional[float] = None) -> None:
        self.service = service
        self.interval = interval if interval is not None else service.settings.order_check_interval

    async def run_once(self) -> Dict[str, EvaluationResult]:
        """Run one evaluation pass and return the result per user."""
        store = self.service.store
        async with store.transaction() as session:
            users = await store.list_users_with_pending_orders(session)
        if not users:
            logger.debug("No pending orders")
            return {}

        coins = set()
        for user_id in users:
            for order in await self.service.list_pending_orders(user_id):
                coins.add(order.coin_id)
        try:
            prices = await self.service.get_prices(coins)
        except UpstreamUnavailableError as exc:
            logger.warning("Skipping order check for %d users: %s", len(users), exc)
            return {user_id: EvaluationResult(upstream_error=str(exc)) for user_id in users}

        outcomes = await asyncio.gather(
            *(self.service.engine.evaluate_triggers(user_id, prices) for user_id in users),
            return_exceptions=True,
        )
        results: Dict[str, EvaluationResult] = {}
        for user_id, outcome in zip(users, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Order check failed for user %s", user_id, exc_info=outcome
                )
                continue
            results[user_id] = outcome
        executed = sum(len(r.executed) for r in results.values())
        if executed:
            logger.info("Executed %d orders across %d users", executed, len(users))
        return results

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Run passes every ``interval`` seconds until ``stop`` is set."""
        stop = stop or asyncio.Event()
        logger.info("Order monitor started (interval %.1fs)", self.interval)
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Order monitor pass failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Order monitor stopped")


async def start(service: TradingService) -> None:
    """Start the order monitor loop for ``service``."""
    await OrderMonitor(service).run()
