"""
Trading service facade.

Wires the ledger store, trade executor, order engine, valuation service
and market data together and exposes the operations callers use:
onboarding a wallet, trading, managing conditional orders, checking
orders against live prices, and reading portfolio, history and
reconciliation reports.

Mutating operations are retried with ``tenacity`` when a compare-and-set
update lost a race with another process (``ConflictError``); the last
conflict is re-raised once ``settings.conflict_retries`` attempts are
used up.
"""

from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from .clients.price_client import CoinGeckoClient
from .config import Settings
from .exceptions import ConflictError, UpstreamUnavailableError, ValidationError
from .models import (
    CoinQuote,
    EvaluationResult,
    Order,
    PortfolioValuation,
    ReconciliationReport,
    TradeResult,
    TradeType,
    Transaction,
    Wallet,
)
from .services.event_store import EventStore
from .services.ledger_store import LedgerStore, utcnow
from .services.metrics_service import LedgerMetrics
from .services.order_engine import OrderEngine
from .services.price_cache import PriceCache
from .services.trade_executor import TradeExecutor
from .services.valuation_service import ValuationService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TradingService:
    """Paper-trading ledger operations for many users."""

    def __init__(
        self,
        store: LedgerStore,
        settings: Optional[Settings] = None,
        *,
        price_source: Optional[Any] = None,
        metrics: Optional[LedgerMetrics] = None,
        event_store: Optional[EventStore] = None,
        price_cache: Optional[PriceCache] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.metrics = metrics
        self.event_store = event_store
        self.price_source = price_source
        self.price_cache = price_cache or PriceCache(ttl=self.settings.price_cache_ttl)
        self.executor = TradeExecutor(store, self.settings, metrics, event_store)
        self.engine = OrderEngine(store, self.executor, metrics, event_store)
        self.valuation = ValuationService(store, self.settings)
        self._top_coins: Dict[int, Tuple[float, List[CoinQuote]]] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, metrics: Optional[LedgerMetrics] = None
    ) -> "TradingService":
        """Build a service with a CoinGecko client and the configured database."""
        client = CoinGeckoClient(
            settings.coingecko_base_url,
            timeout=settings.price_timeout_seconds,
            batch_size=settings.price_batch_size,
            metrics=metrics,
        )
        event_store = EventStore(settings.event_store_path) if settings.event_store_path else None
        return cls(
            LedgerStore.from_uri(settings.database_url),
            settings,
            price_source=client,
            metrics=metrics,
            event_store=event_store,
        )

    async def init(self) -> None:
        await self.store.init_db()

    async def close(self) -> None:
        await self.store.dispose()

    async def _with_retries(self, operation: Callable[..., Awaitable[T]], *args: Any) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.conflict_retries),
            wait=wait_random(0, 0.05),
            retry=retry_if_exception_type(ConflictError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying %s after conflict (attempt %d)",
                        operation.__name__,
                        attempt.retry_state.attempt_number,
                    )
                result = await operation(*args)
        return result

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def create_wallet(self, user_id: str) -> Wallet:
        """Onboard ``user_id`` with the configured starting balance.

        Raises:
            ValidationError: ``user_id`` is empty.
            ConflictError: the user already has a wallet.
        """
        if not user_id or not user_id.strip():
            raise ValidationError("user_id must not be empty")
        now = utcnow()
        wallet = Wallet(
            id=str(uuid.uuid4()),
            user_id=user_id,
            balance=self.settings.starting_balance,
            currency=self.settings.currency,
            created_at=now,
            updated_at=now,
        )
        async with self.store.transaction() as session:
            await self.store.insert_wallet(session, wallet)
        logger.info(
            "Created %s wallet for user %s with %s", wallet.currency, user_id, wallet.balance
        )
        return wallet

    async def get_wallet(self, user_id: str) -> Wallet:
        return await self.valuation.get_wallet(user_id)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def _require_price_source(self) -> Any:
        if self.price_source is None:
            raise UpstreamUnavailableError("No market data source configured")
        return self.price_source

    async def get_prices(self, coin_ids: Iterable[str]) -> Dict[str, Decimal]:
        """Return current prices for ``coin_ids``, using cached quotes when fresh.

        Raises:
            UpstreamUnavailableError: a quote had to be fetched and the
                source failed or timed out.
        """
        wanted = sorted(set(coin_ids))
        prices, missing = await self.price_cache.get_many(wanted)
        if missing:
            fetched = await self._require_price_source().get_prices(missing)
            await self.price_cache.update_prices(fetched)
            prices.update(fetched)
        else:
            logger.debug("Served %d prices from cache", len(prices))
        return prices

    async def get_top_coins(self, limit: int = 10) -> List[CoinQuote]:
        if limit <= 0:
            raise ValidationError("limit must be positive", {"limit": limit})
        cached = self._top_coins.get(limit)
        now = time.monotonic()
        if cached is not None and now - cached[0] < self.settings.price_cache_ttl:
            return cached[1]
        quotes = await self._require_price_source().get_top_coins(limit)
        self._top_coins[limit] = (now, quotes)
        await self.price_cache.update_prices({q.id: q.current_price for q in quotes})
        return quotes

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def place_trade(
        self,
        user_id: str,
        trade_type: Any,
        coin_id: str,
        symbol: str,
        amount: Any,
        price_per_unit: Any,
    ) -> TradeResult:
        """Execute a BUY or SELL at ``price_per_unit``."""
        try:
            side = TradeType(str(getattr(trade_type, "value", trade_type)).upper())
        except ValueError as exc:
            raise ValidationError(f"Unknown trade type {trade_type!r}", {"type": trade_type}) from exc
        if side is TradeType.BUY:
            operation = self.executor.execute_buy
        else:
            operation = self.executor.execute_sell
        return await self._with_retries(operation, user_id, coin_id, symbol, amount, price_per_unit)

    async def buy(
        self, user_id: str, coin_id: str, symbol: str, amount: Any, price_per_unit: Any
    ) -> TradeResult:
        return await self.place_trade(user_id, TradeType.BUY, coin_id, symbol, amount, price_per_unit)

    async def sell(
        self, user_id: str, coin_id: str, symbol: str, amount: Any, price_per_unit: Any
    ) -> TradeResult:
        return await self.place_trade(user_id, TradeType.SELL, coin_id, symbol, amount, price_per_unit)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(
        self, user_id: str, position_id: str, order_type: Any, trigger_price: Any, amount: Any
    ) -> Order:
        return await self._with_retries(
            self.engine.create_order, user_id, position_id, order_type, trigger_price, amount
        )

    async def cancel_order(self, user_id: str, order_id: str) -> Order:
        return await self._with_retries(self.engine.cancel_order, user_id, order_id)

    async def list_pending_orders(self, user_id: str) -> List[Order]:
        return await self.engine.list_pending_orders(user_id)

    async def check_orders(
        self, user_id: str, prices: Optional[Mapping[str, Any]] = None
    ) -> EvaluationResult:
        """Evaluate the user's pending orders.

        Without ``prices`` the quotes for the coins of the pending orders
        are fetched first; if that fails nothing is evaluated and the
        outage is reported in ``upstream_error``.
        """
        if prices is None:
            pending = await self.engine.list_pending_orders(user_id)
            if not pending:
                return EvaluationResult()
            try:
                prices = await self.get_prices({order.coin_id for order in pending})
            except UpstreamUnavailableError as exc:
                logger.warning("Skipping order check for user %s: %s", user_id, exc)
                return EvaluationResult(upstream_error=str(exc))
        return await self.engine.evaluate_triggers(user_id, prices)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_portfolio(
        self, user_id: str, prices: Optional[Mapping[str, Any]] = None
    ) -> PortfolioValuation:
        """Value the user's positions; fetches prices when none are given.

        If the market data source is down every holding is reported in
        ``missing_prices`` instead of failing the call.
        """
        if prices is None:
            async with self.store.transaction() as session:
                positions = await self.store.list_positions(session, user_id)
            try:
                prices = await self.get_prices({p.coin_id for p in positions}) if positions else {}
            except UpstreamUnavailableError as exc:
                logger.warning("Valuing portfolio of user %s without prices: %s", user_id, exc)
                prices = {}
        return await self.valuation.get_portfolio(user_id, prices)

    async def get_history(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        return await self.valuation.get_history(user_id, limit)

    async def reconcile(self, user_id: str) -> ReconciliationReport:
        return await self.valuation.reconcile(user_id)
