"""
coinsim: a crypto paper-trading ledger.

Users start with a simulated cash wallet, buy and sell coins at quoted
prices, and may attach stop-loss or take-profit orders to their
positions.  ``TradingService`` is the entry point; the order monitor in
``order_monitor`` evaluates pending orders in the background and is
started by ``worker_main``.
"""

from .config import Settings  # noqa: F401
from .service import TradingService  # noqa: F401
from .order_monitor import OrderMonitor  # noqa: F401
from .order_monitor import start as start_order_monitor  # noqa: F401
