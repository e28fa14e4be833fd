"""
Trade executor.

Performs market BUY and SELL operations against a user's wallet,
position and transaction log.  Each public call:

1. validates the request (``ValidationError`` before any state access);
2. takes the user's lock so no other mutating operation of that user is
   in flight;
3. reads the wallet and position, computes the next state with the pure
   helpers in :mod:`coinsim.accounting`, and writes the wallet balance,
   the position (insert, update or delete) and the transaction row in
   one SQL transaction;
4. after commit, updates metrics and the optional audit journal.

Business-rule failures (``InsufficientFundsError``,
``InsufficientHoldingsError``, ``NoSuchPositionError``) are raised from
inside the transaction, which therefore rolls back and leaves the ledger
untouched.

``buy_in_session``/``sell_in_session`` perform step 3 only, inside a
session and lock owned by the caller.  The order engine uses
``sell_in_session`` so that the sale and the order's state change
commit together.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..accounting import (
    DUST_THRESHOLD,
    apply_buy,
    apply_sell,
    buy_cost,
    quantize_money,
    sale_proceeds,
)
from ..config import Settings
from ..exceptions import (
    InsufficientFundsError,
    InsufficientHoldingsError,
    LedgerError,
    NoSuchPositionError,
    ValidationError,
    WalletNotFoundError,
)
from ..models import Position, TradeRequest, TradeResult, TradeType, Transaction, parse_request
from .event_store import EventStore
from .ledger_store import LedgerStore, utcnow
from .metrics_service import LedgerMetrics

logger = logging.getLogger(__name__)


class TradeExecutor:
    """Atomic BUY/SELL against wallet, position and transaction records."""

    def __init__(
        self,
        store: LedgerStore,
        settings: Optional[Settings] = None,
        metrics: Optional[LedgerMetrics] = None,
        event_store: Optional[EventStore] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.metrics = metrics
        self.event_store = event_store
        self._clock = clock

    @property
    def fee(self) -> Decimal:
        return quantize_money(self.settings.trade_fee)

    async def execute_buy(
        self, user_id: str, coin_id: str, symbol: str, amount: Any, price_per_unit: Any
    ) -> TradeResult:
        """Buy ``amount`` of ``coin_id`` at ``price_per_unit``.

        Raises:
            ValidationError: amount or price is not a positive number.
            WalletNotFoundError: the user has no wallet.
            InsufficientFundsError: balance is below the rounded-up cost plus fee.
        """
        return await self._execute(
            user_id,
            dict(
                type=TradeType.BUY,
                coin_id=coin_id,
                symbol=symbol,
                amount=amount,
                price_per_unit=price_per_unit,
            ),
        )

    async def execute_sell(
        self, user_id: str, coin_id: str, symbol: str, amount: Any, price_per_unit: Any
    ) -> TradeResult:
        """Sell ``amount`` of ``coin_id`` at ``price_per_unit``.

        The returned ``position`` is ``None`` when the sale closed it.

        Raises:
            ValidationError: amount or price is not a positive number, or the
                proceeds round down to zero.
            NoSuchPositionError: the user holds none of the coin.
            InsufficientHoldingsError: amount exceeds the position.
        """
        return await self._execute(
            user_id,
            dict(
                type=TradeType.SELL,
                coin_id=coin_id,
                symbol=symbol,
                amount=amount,
                price_per_unit=price_per_unit,
            ),
        )

    async def _execute(self, user_id: str, payload: dict) -> TradeResult:
        try:
            request = parse_request(TradeRequest, **payload)
            async with self.store.user_lock(user_id):
                async with self.store.transaction() as session:
                    result = await self.apply(session, user_id, request)
        except LedgerError as exc:
            self.rejected(user_id, payload, exc)
            raise
        await self.after_commit(result)
        return result

    async def apply(
        self, session: AsyncSession, user_id: str, request: TradeRequest
    ) -> TradeResult:
        if request.type is TradeType.BUY:
            return await self.buy_in_session(session, user_id, request)
        return await self.sell_in_session(session, user_id, request)

    async def buy_in_session(
        self, session: AsyncSession, user_id: str, request: TradeRequest
    ) -> TradeResult:
        total = self._total(request, buy_cost(request.amount, request.price_per_unit))
        wallet = await self.store.get_wallet(session, user_id)
        if wallet is None:
            raise WalletNotFoundError(user_id)
        cost = total + self.fee
        if wallet.balance < cost:
            raise InsufficientFundsError(required=cost, available=wallet.balance)

        now = self._clock()
        position = await self.store.get_position_for_coin(session, user_id, request.coin_id)
        holding = apply_buy(
            position.holding if position is not None else None,
            request.amount,
            request.price_per_unit,
        )

        wallet = await self.store.update_balance(
            session, wallet, quantize_money(wallet.balance - cost), now
        )
        if position is None:
            position = Position(
                id=str(uuid.uuid4()),
                user_id=user_id,
                symbol=request.symbol,
                coin_id=request.coin_id,
                amount=holding.amount,
                average_cost=holding.average_cost,
                created_at=now,
                updated_at=now,
            )
            await self.store.insert_position(session, position)
        else:
            position = await self.store.update_position(session, position, holding, now)

        transaction = self._transaction(user_id, request, total, now)
        await self.store.insert_transaction(session, transaction)
        return TradeResult(transaction=transaction, new_balance=wallet.balance, position=position)

    async def sell_in_session(
        self, session: AsyncSession, user_id: str, request: TradeRequest
    ) -> TradeResult:
        total = self._total(request, sale_proceeds(request.amount, request.price_per_unit))
        position = await self.store.get_position_for_coin(session, user_id, request.coin_id)
        if position is None:
            raise NoSuchPositionError(user_id, request.coin_id)
        if request.amount > position.amount:
            raise InsufficientHoldingsError(request.symbol, request.amount, position.amount)
        wallet = await self.store.get_wallet(session, user_id)
        if wallet is None:
            raise WalletNotFoundError(user_id)

        new_balance = quantize_money(wallet.balance + total - self.fee)
        if new_balance < 0:
            raise InsufficientFundsError(required=self.fee, available=wallet.balance + total)

        now = self._clock()
        holding = apply_sell(position.holding, request.amount, DUST_THRESHOLD)
        wallet = await self.store.update_balance(session, wallet, new_balance, now)
        remaining: Optional[Position]
        if holding is None:
            await self.store.delete_position(session, position)
            remaining = None
        else:
            remaining = await self.store.update_position(session, position, holding, now)

        transaction = self._transaction(user_id, request, total, now)
        await self.store.insert_transaction(session, transaction)
        return TradeResult(transaction=transaction, new_balance=wallet.balance, position=remaining)

    @staticmethod
    def _total(request: TradeRequest, total: Decimal) -> Decimal:
        # A zero-cent trade would move coins without moving cash.
        if total <= 0:
            raise ValidationError(
                f"{request.type.value} of {request.amount} {request.symbol} "
                f"at {request.price_per_unit} is worth less than one cent",
                {"amount": str(request.amount), "price_per_unit": str(request.price_per_unit)},
            )
        return total

    def _transaction(
        self, user_id: str, request: TradeRequest, total: Decimal, now: dt.datetime
    ) -> Transaction:
        return Transaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=request.type,
            symbol=request.symbol,
            coin_id=request.coin_id,
            amount=request.amount,
            price_per_unit=request.price_per_unit,
            total_value=total,
            fee=self.fee,
            created_at=now,
        )

    async def after_commit(self, result: TradeResult) -> None:
        """Log, count and journal a committed trade."""
        txn = result.transaction
        logger.info(
            "%s %s %s @ %s for user %s (balance %s)",
            txn.type.value,
            txn.amount,
            txn.symbol,
            txn.price_per_unit,
            txn.user_id,
            result.new_balance,
        )
        if self.metrics:
            self.metrics.trades.labels(side=txn.type.value).inc()
        if self.event_store:
            await self.event_store.record(
                "trade_executed",
                {
                    **txn.model_dump(),
                    "new_balance": result.new_balance,
                    "position_removed": result.position_removed,
                },
            )

    def rejected(self, user_id: str, payload: dict, exc: LedgerError) -> None:
        logger.warning(
            "Rejected %s %s for user %s: %s",
            getattr(payload.get("type"), "value", payload.get("type")),
            payload.get("coin_id"),
            user_id,
            exc,
        )
        if self.metrics:
            self.metrics.trade_rejections.labels(reason=type(exc).__name__).inc()
