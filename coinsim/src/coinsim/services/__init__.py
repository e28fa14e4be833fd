"""Service layer for the ledger.

This package holds the persistent ledger store and the services built
on it: trade execution, conditional orders, valuation, price caching,
the audit journal and metrics.
"""

from .event_store import EventStore  # noqa: F401
from .ledger_store import LedgerStore  # noqa: F401
from .metrics_service import LedgerMetrics  # noqa: F401
from .order_engine import OrderEngine  # noqa: F401
from .price_cache import PriceCache  # noqa: F401
from .trade_executor import TradeExecutor  # noqa: F401
from .valuation_service import ValuationService  # noqa: F401
