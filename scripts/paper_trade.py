#!/usr/bin/env python
"""
Paper trading command line.

Drives the ledger from a shell: onboard a wallet, trade, place and
cancel conditional orders, check orders against live prices, and print
portfolio, history or reconciliation reports as JSON.  Configuration
comes from the same environment variables as the worker.

Examples::

    python scripts/paper_trade.py create-wallet alice
    python scripts/paper_trade.py buy alice bitcoin BTC 0.1 --price 50000
    python scripts/paper_trade.py order alice <position-id> STOP_LOSS 45000 0.1
    python scripts/paper_trade.py check alice --price bitcoin=44000
    python scripts/paper_trade.py portfolio alice
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from coinsim.config import Settings
from coinsim.exceptions import LedgerError
from coinsim.service import TradingService

logger = logging.getLogger("paper_trade")


def _jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _prices(pairs: Optional[List[str]]) -> Optional[Dict[str, str]]:
    if not pairs:
        return None
    prices = {}
    for pair in pairs:
        coin_id, sep, price = pair.partition("=")
        if not sep:
            raise SystemExit(f"--price expects COIN=PRICE, got {pair!r}")
        prices[coin_id] = price
    return prices


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Crypto paper trading ledger.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-wallet", help="Create a wallet with the starting balance.")
    p.add_argument("user")

    for side in ("buy", "sell"):
        p = sub.add_parser(side, help=f"{side.capitalize()} a coin.")
        p.add_argument("user")
        p.add_argument("coin_id")
        p.add_argument("symbol")
        p.add_argument("amount")
        p.add_argument("--price", help="Price per unit; fetched from CoinGecko when omitted.")

    p = sub.add_parser("order", help="Place a STOP_LOSS or TAKE_PROFIT order.")
    p.add_argument("user")
    p.add_argument("position_id")
    p.add_argument("order_type", choices=["STOP_LOSS", "TAKE_PROFIT"])
    p.add_argument("trigger_price")
    p.add_argument("amount")

    p = sub.add_parser("cancel", help="Cancel a pending order.")
    p.add_argument("user")
    p.add_argument("order_id")

    for name, help_text in (
        ("check", "Evaluate pending orders."),
        ("portfolio", "Show valued holdings."),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("user")
        p.add_argument("--price", action="append", metavar="COIN=PRICE")

    p = sub.add_parser("history", help="Show recent transactions.")
    p.add_argument("user")
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("reconcile", help="Replay the transaction log against stored state.")
    p.add_argument("user")

    return parser.parse_args(argv)


async def run(args: argparse.Namespace, service: TradingService) -> Any:
    if args.command == "create-wallet":
        return await service.create_wallet(args.user)
    if args.command in ("buy", "sell"):
        price = args.price
        if price is None:
            quotes = await service.get_prices([args.coin_id])
            if args.coin_id not in quotes:
                raise SystemExit(f"No price available for {args.coin_id}")
            price = quotes[args.coin_id]
        return await service.place_trade(
            args.user, args.command, args.coin_id, args.symbol, args.amount, price
        )
    if args.command == "order":
        return await service.create_order(
            args.user, args.position_id, args.order_type, args.trigger_price, args.amount
        )
    if args.command == "cancel":
        return await service.cancel_order(args.user, args.order_id)
    if args.command == "check":
        return await service.check_orders(args.user, _prices(args.price))
    if args.command == "portfolio":
        return await service.get_portfolio(args.user, _prices(args.price))
    if args.command == "history":
        return await service.get_history(args.user, args.limit)
    return await service.reconcile(args.user)


async def main_async(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    service = TradingService.from_settings(settings)
    await service.init()
    try:
        result = await run(args, service)
    except LedgerError as exc:
        print(json.dumps(exc.to_dict(), default=str), file=sys.stderr)
        return 1
    finally:
        await service.close()
    print(json.dumps(_jsonable(result), indent=2, default=str))
    return 0


def main() -> None:
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
