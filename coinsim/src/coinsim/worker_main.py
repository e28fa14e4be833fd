"""
Entry point for the order-monitor worker.

Loads settings from the environment, creates the schema if needed,
exposes Prometheus metrics and runs the order monitor until the process
is stopped.
"""

import asyncio
import logging

from .config import Settings
from .order_monitor import start as start_order_monitor
from .service import TradingService
from .services.metrics_service import LedgerMetrics


async def main() -> None:
    """Run the order monitor with settings taken from the environment."""
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    logger = logging.getLogger(__name__)

    metrics = LedgerMetrics()
    metrics.serve(settings.prometheus_port)
    service = TradingService.from_settings(settings, metrics=metrics)
    await service.init()

    task = asyncio.create_task(start_order_monitor(service))
    logger.info("Worker started order monitor against %s", settings.database_url.split("@")[-1])
    try:
        await task
    except Exception:
        logger.exception("Order monitor raised an exception")
        raise
    finally:
        await service.close()
        logger.info("Worker exiting")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
