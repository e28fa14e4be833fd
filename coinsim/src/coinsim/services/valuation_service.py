"""
Valuation service.

Read-only views over the ledger: wallet, mark-to-market portfolio,
transaction history, and a reconciliation report that replays the
transaction log through the same accounting helpers the executor uses
and compares the result with the stored wallet and positions.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..accounting import (
    DUST_THRESHOLD,
    ZERO,
    Holding,
    apply_buy,
    apply_sell,
    profit_loss_percentage,
    quantize_money,
    realized_pnl,
    to_decimal,
)
from ..config import Settings
from ..exceptions import ValidationError, WalletNotFoundError
from ..models import (
    PortfolioValuation,
    ReconciliationReport,
    ReplayedPosition,
    TradeType,
    Transaction,
    ValuedHolding,
    Wallet,
)
from .ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class ValuationService:
    def __init__(self, store: LedgerStore, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or Settings()

    async def get_wallet(self, user_id: str) -> Wallet:
        async with self.store.transaction() as session:
            wallet = await self.store.get_wallet(session, user_id)
        if wallet is None:
            raise WalletNotFoundError(user_id)
        return wallet

    async def get_portfolio(
        self, user_id: str, prices: Mapping[str, Any]
    ) -> PortfolioValuation:
        """Value every position of ``user_id`` at ``prices``.

        A position whose coin has no price is valued at zero and its coin
        id is listed in ``missing_prices``.  Values are currency-rounded;
        the percentage is rounded to two decimals and is zero for a zero
        cost basis.
        """
        async with self.store.transaction() as session:
            positions = await self.store.list_positions(session, user_id)

        holdings: List[ValuedHolding] = []
        missing: List[str] = []
        total = ZERO
        for position in positions:
            price = self._price(prices, position.coin_id)
            if price is None:
                missing.append(position.coin_id)
                price = ZERO
            current_value = quantize_money(position.amount * price)
            cost_basis = quantize_money(position.holding.cost_basis)
            profit_loss = current_value - cost_basis
            holdings.append(
                ValuedHolding(
                    position_id=position.id,
                    symbol=position.symbol,
                    coin_id=position.coin_id,
                    amount=position.amount,
                    average_cost=position.average_cost,
                    current_price=price,
                    current_value=current_value,
                    cost_basis=cost_basis,
                    profit_loss=profit_loss,
                    profit_loss_percentage=profit_loss_percentage(profit_loss, cost_basis),
                )
            )
            total += current_value
        if missing:
            logger.debug("No price for %s while valuing user %s", missing, user_id)
        return PortfolioValuation(
            holdings=holdings, total_value=quantize_money(total), missing_prices=missing
        )

    @staticmethod
    def _price(prices: Mapping[str, Any], coin_id: str) -> Optional[Decimal]:
        raw = prices.get(coin_id)
        if raw is None:
            return None
        try:
            price = to_decimal(raw)
        except ValueError as exc:
            raise ValidationError(f"Invalid price for {coin_id}: {raw!r}", {"coin_id": coin_id}) from exc
        if price < 0:
            raise ValidationError(f"Price for {coin_id} must not be negative", {"coin_id": coin_id})
        return price

    async def get_history(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        """Return the user's transactions, newest first.

        ``limit`` defaults to, and is capped at, ``settings.history_limit``.
        """
        cap = self.settings.history_limit
        if limit is None:
            limit = cap
        if limit <= 0:
            raise ValidationError("History limit must be positive", {"limit": limit})
        async with self.store.transaction() as session:
            return await self.store.list_transactions(session, user_id, limit=min(limit, cap))

    async def reconcile(self, user_id: str) -> ReconciliationReport:
        """Replay the user's transaction log and compare it with stored state.

        The replay starts from ``settings.starting_balance``; a wallet
        seeded with a different balance shows up as a balance
        discrepancy.
        """
        async with self.store.transaction() as session:
            wallet = await self.store.get_wallet(session, user_id)
            if wallet is None:
                raise WalletNotFoundError(user_id)
            positions = await self.store.list_positions(session, user_id)
            history = await self.store.list_transactions(session, user_id, newest_first=False)

        balance, replayed, realized, discrepancies = self._replay(history)
        expected_balance = quantize_money(balance)
        if expected_balance != wallet.balance:
            discrepancies.append(
                f"balance: stored {wallet.balance}, replayed {expected_balance}"
            )

        actual = {
            p.coin_id: ReplayedPosition(
                coin_id=p.coin_id, symbol=p.symbol, amount=p.amount, average_cost=p.average_cost
            )
            for p in positions
        }
        for coin_id in sorted(set(replayed) | set(actual)):
            want, have = replayed.get(coin_id), actual.get(coin_id)
            if want is None:
                discrepancies.append(f"{coin_id}: stored position {have.amount} not in replay")
            elif have is None:
                discrepancies.append(f"{coin_id}: replayed position {want.amount} missing")
            elif (want.amount, want.average_cost) != (have.amount, have.average_cost):
                discrepancies.append(
                    f"{coin_id}: stored {have.amount} @ {have.average_cost}, "
                    f"replayed {want.amount} @ {want.average_cost}"
                )

        if discrepancies:
            logger.warning("Ledger of user %s is inconsistent: %s", user_id, discrepancies)
        return ReconciliationReport(
            user_id=user_id,
            expected_balance=expected_balance,
            actual_balance=wallet.balance,
            expected_positions=replayed,
            actual_positions=actual,
            realized_pnl=realized,
            discrepancies=discrepancies,
        )

    def _replay(
        self, history: List[Transaction]
    ) -> Tuple[Decimal, Dict[str, ReplayedPosition], Decimal, List[str]]:
        balance = self.settings.starting_balance
        realized = ZERO
        holdings: Dict[str, Tuple[str, Holding]] = {}
        problems: List[str] = []
        for txn in history:
            if txn.type is TradeType.BUY:
                balance -= txn.total_value + txn.fee
                current = holdings.get(txn.coin_id)
                symbol = current[0] if current else txn.symbol
                holding = apply_buy(current[1] if current else None, txn.amount, txn.price_per_unit)
                holdings[txn.coin_id] = (symbol, holding)
                continue

            balance += txn.total_value - txn.fee
            current = holdings.get(txn.coin_id)
            if current is None or txn.amount > current[1].amount:
                problems.append(f"transaction {txn.id}: SELL of {txn.amount} exceeds replayed holding")
                holdings.pop(txn.coin_id, None)
                continue
            symbol, holding = current
            realized += realized_pnl(txn.price_per_unit, holding.average_cost, txn.amount)
            remaining = apply_sell(holding, txn.amount, DUST_THRESHOLD)
            if remaining is None:
                del holdings[txn.coin_id]
            else:
                holdings[txn.coin_id] = (symbol, remaining)

        replayed = {
            coin_id: ReplayedPosition(
                coin_id=coin_id,
                symbol=symbol,
                amount=holding.amount,
                average_cost=holding.average_cost,
            )
            for coin_id, (symbol, holding) in holdings.items()
        }
        return balance, replayed, quantize_money(realized), problems
