"""
Order engine.

Creates and cancels stop-loss/take-profit orders and evaluates price
quotes against a user's pending orders.  Order state moves only
PENDING -> EXECUTED (trigger crossed and the sale committed) or
PENDING -> CANCELLED (user request); both are terminal.

``evaluate_triggers`` holds the user's lock for the whole batch and
walks the pending orders oldest first, so earlier orders get first
claim on the position.  Each triggered order is sold and marked
EXECUTED inside its own SQL transaction.  If the executor refuses the
sale (the position shrank or disappeared since the order was placed),
that transaction rolls back, the order stays PENDING, and the failure
is logged and reported while the remaining orders are still evaluated.
Orders are never partially filled.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..accounting import quantize_price, to_decimal
from ..exceptions import (
    AmountExceedsHoldingsError,
    LedgerError,
    NotCancellableError,
    PositionNotFoundError,
    ValidationError,
)
from ..models import (
    CreateOrderRequest,
    EvaluationResult,
    Order,
    OrderFailure,
    OrderStatus,
    TradeRequest,
    TradeResult,
    TradeType,
    parse_request,
)
from .event_store import EventStore
from .ledger_store import LedgerStore, utcnow
from .metrics_service import LedgerMetrics
from .trade_executor import TradeExecutor

logger = logging.getLogger(__name__)


def parse_prices(prices: Mapping[str, Any]) -> Dict[str, Decimal]:
    """Convert a coin id -> price map to positive 8-decimal ``Decimal`` quotes.

    ``None`` entries are treated as missing quotes.

    Raises:
        ValidationError: a price is not a positive finite number.
    """
    quotes: Dict[str, Decimal] = {}
    for coin_id, raw in prices.items():
        if raw is None:
            continue
        try:
            price = quantize_price(to_decimal(raw))
        except ValueError as exc:
            raise ValidationError(
                f"Invalid price for {coin_id}: {raw!r}", {"coin_id": coin_id}
            ) from exc
        if price <= 0:
            raise ValidationError(
                f"Price for {coin_id} must be positive", {"coin_id": coin_id, "price": str(raw)}
            )
        quotes[coin_id] = price
    return quotes


class OrderEngine:
    """Conditional order lifecycle and trigger evaluation."""

    def __init__(
        self,
        store: LedgerStore,
        executor: TradeExecutor,
        metrics: Optional[LedgerMetrics] = None,
        event_store: Optional[EventStore] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.store = store
        self.executor = executor
        self.metrics = metrics
        self.event_store = event_store
        self._clock = clock

    async def create_order(
        self,
        user_id: str,
        position_id: str,
        order_type: Any,
        trigger_price: Any,
        amount: Any,
    ) -> Order:
        """Place a pending order to sell ``amount`` of a position at ``trigger_price``.

        The amount is checked against the position only now; later
        trades may shrink the position below it.

        Raises:
            ValidationError: bad order type, trigger price or amount.
            PositionNotFoundError: the position does not exist for this user.
            AmountExceedsHoldingsError: amount is larger than the position.
        """
        request = parse_request(
            CreateOrderRequest,
            position_id=position_id,
            order_type=order_type,
            trigger_price=trigger_price,
            amount=amount,
        )
        async with self.store.user_lock(user_id):
            async with self.store.transaction() as session:
                position = await self.store.get_position(session, user_id, request.position_id)
                if position is None:
                    raise PositionNotFoundError(user_id, request.position_id)
                if request.amount > position.amount:
                    raise AmountExceedsHoldingsError(position.id, request.amount, position.amount)
                order = Order(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    position_id=position.id,
                    symbol=position.symbol,
                    coin_id=position.coin_id,
                    order_type=request.order_type,
                    trigger_price=request.trigger_price,
                    amount=request.amount,
                    created_at=self._clock(),
                )
                await self.store.insert_order(session, order)
        logger.info(
            "Created %s order %s: %s %s at %s for user %s",
            order.order_type.value,
            order.id,
            order.amount,
            order.symbol,
            order.trigger_price,
            user_id,
        )
        if self.event_store:
            await self.event_store.record("order_created", order.model_dump())
        return order

    async def cancel_order(self, user_id: str, order_id: str) -> Order:
        """Cancel a pending order owned by ``user_id``.

        Raises:
            NotCancellableError: the order is unknown, owned by someone
                else, or already EXECUTED/CANCELLED.
        """
        async with self.store.user_lock(user_id):
            async with self.store.transaction() as session:
                order = await self.store.get_order(session, order_id)
                if order is None or order.user_id != user_id:
                    raise NotCancellableError(order_id)
                cancelled = order.mark_cancelled()
                await self.store.transition_order(session, cancelled)
        logger.info("Cancelled order %s for user %s", order_id, user_id)
        if self.event_store:
            await self.event_store.record("order_cancelled", cancelled.model_dump())
        return cancelled

    async def list_pending_orders(self, user_id: str) -> List[Order]:
        async with self.store.transaction() as session:
            return await self.store.list_orders(session, user_id, OrderStatus.PENDING)

    async def evaluate_triggers(
        self, user_id: str, prices: Mapping[str, Any]
    ) -> EvaluationResult:
        """Execute every pending order of ``user_id`` whose trigger ``prices`` cross.

        Orders whose coin has no quote are left untouched.  Returns the
        orders that executed and the triggered orders that failed.

        An order sells from the user's current position in its coin, not
        from the position it was created against.  A stop-loss left
        PENDING after that position closed therefore fails with
        ``NoSuchPositionError`` while the user holds none of the coin, and
        fires against a position reopened later in the same coin.
        Cancel stale orders to avoid that.

        Raises:
            ValidationError: a supplied price is not a positive number.
        """
        quotes = parse_prices(prices)
        executed: List[Order] = []
        failed: List[OrderFailure] = []
        async with self.store.user_lock(user_id):
            async with self.store.transaction() as session:
                pending = await self.store.list_orders(session, user_id, OrderStatus.PENDING)
            for order in pending:
                price = quotes.get(order.coin_id)
                if price is None or not order.is_triggered_by(price):
                    continue
                try:
                    outcome = await self._execute(order, price)
                except (LedgerError, SQLAlchemyError) as exc:
                    failure = OrderFailure(
                        order_id=order.id,
                        reason=type(exc).__name__,
                        message=str(exc),
                    )
                    failed.append(failure)
                    await self._failed(order, price, failure)
                    continue
                if outcome is None:
                    logger.debug("Order %s left PENDING before execution; skipped", order.id)
                    continue
                executed_order, trade = outcome
                executed.append(executed_order)
                await self._executed(executed_order, trade)
        if pending:
            logger.debug(
                "Checked %d pending orders for user %s, executed %d, failed %d",
                len(pending),
                user_id,
                len(executed),
                len(failed),
            )
        return EvaluationResult(checked=len(pending), executed=executed, failed=failed)

    async def _execute(
        self, order: Order, price: Decimal
    ) -> Optional[Tuple[Order, TradeResult]]:
        request = parse_request(
            TradeRequest,
            type=TradeType.SELL,
            coin_id=order.coin_id,
            symbol=order.symbol,
            amount=order.amount,
            price_per_unit=price,
        )
        async with self.store.transaction() as session:
            current = await self.store.get_order(session, order.id)
            if current is None or not current.is_pending:
                return None
            trade = await self.executor.sell_in_session(session, order.user_id, request)
            executed = current.mark_executed(self._clock())
            await self.store.transition_order(session, executed)
        return executed, trade

    async def _executed(self, order: Order, trade: TradeResult) -> None:
        logger.info(
            "Executed %s order %s: sold %s %s at %s",
            order.order_type.value,
            order.id,
            order.amount,
            order.symbol,
            trade.transaction.price_per_unit,
        )
        if self.metrics:
            self.metrics.orders_executed.labels(order_type=order.order_type.value).inc()
        await self.executor.after_commit(trade)
        if self.event_store:
            await self.event_store.record(
                "order_executed",
                {**order.model_dump(), "transaction_id": trade.transaction.id},
            )

    async def _failed(self, order: Order, price: Decimal, failure: OrderFailure) -> None:
        logger.warning(
            "Failed to execute %s order %s at %s: %s",
            order.order_type.value,
            order.id,
            price,
            failure.message,
        )
        if self.metrics:
            self.metrics.order_failures.labels(reason=failure.reason).inc()
        if self.event_store:
            await self.event_store.record(
                "order_failed",
                {"order_id": order.id, "user_id": order.user_id, "price": price, **failure.model_dump()},
            )
