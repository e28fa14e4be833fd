"""
Metrics Service
===============

Prometheus instrumentation for the ledger.  The executor, the order
engine and the price client each receive an optional ``LedgerMetrics``
instance and bump its counters after every outcome.  The worker exposes
the registry over HTTP via :meth:`LedgerMetrics.serve`.

Metrics
-------

* ``coinsim_trades_total{side=...}`` – committed trades by side.
* ``coinsim_trade_rejections_total{reason=...}`` – trades refused before
  commit, labelled with the error class name.
* ``coinsim_orders_executed_total{order_type=...}`` – triggered orders
  that executed.
* ``coinsim_order_failures_total{reason=...}`` – triggered orders the
  executor rejected; the order stays pending.
* ``coinsim_price_fetch_failures_total`` – market-data calls that failed
  or timed out.

Each instance owns its own ``CollectorRegistry`` unless one is passed
in, so tests can build as many instances as they like.
"""

from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, start_http_server

logger = logging.getLogger(__name__)


class LedgerMetrics:
    """Counters describing ledger activity."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.trades = Counter(
            "coinsim_trades_total",
            "Committed trades",
            labelnames=["side"],
            registry=self.registry,
        )
        self.trade_rejections = Counter(
            "coinsim_trade_rejections_total",
            "Trades rejected before commit",
            labelnames=["reason"],
            registry=self.registry,
        )
        self.orders_executed = Counter(
            "coinsim_orders_executed_total",
            "Conditional orders executed",
            labelnames=["order_type"],
            registry=self.registry,
        )
        self.order_failures = Counter(
            "coinsim_order_failures_total",
            "Triggered orders that failed to execute",
            labelnames=["reason"],
            registry=self.registry,
        )
        self.price_fetch_failures = Counter(
            "coinsim_price_fetch_failures_total",
            "Market data requests that failed or timed out",
            registry=self.registry,
        )

    def serve(self, port: int) -> None:
        """Expose the registry on ``port``."""
        try:
            start_http_server(port, registry=self.registry)
        except OSError as exc:
            logger.warning("Failed to start Prometheus server on port %d: %s", port, exc)
            return
        logger.info("Prometheus metrics served on port %d", port)

    def value(self, counter: Counter, **labels: str) -> float:
        """Current value of ``counter`` (with ``labels``), for health output and tests."""
        name = counter._name + "_total"
        sample = self.registry.get_sample_value(name, labels or None)
        return sample or 0.0
