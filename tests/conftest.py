"""Pytest configuration for path setup and shared ledger fixtures.

The suite imports ``coinsim`` from ``coinsim/src`` and helpers from
``tests.helpers``.  When pytest runs as an installed script neither
directory is on ``sys.path``, so both the project root and the package
source directory are inserted at the front here.

Store-backed fixtures use a fresh SQLite file per test through the
``aiosqlite`` driver.
"""

from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]

for path in (ROOT / "coinsim" / "src", ROOT):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from coinsim.config import Settings  # noqa: E402
from coinsim.service import TradingService  # noqa: E402
from coinsim.services.ledger_store import LedgerStore  # noqa: E402
from coinsim.services.metrics_service import LedgerMetrics  # noqa: E402
from coinsim.services.order_engine import OrderEngine  # noqa: E402
from coinsim.services.trade_executor import TradeExecutor  # noqa: E402
from coinsim.services.valuation_service import ValuationService  # noqa: E402
from tests.helpers.fake_prices import FakePriceSource  # noqa: E402


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        starting_balance=Decimal("10000.00"),
    )


@pytest.fixture
async def store(settings: Settings):
    ledger = LedgerStore.from_uri(settings.database_url)
    await ledger.init_db()
    yield ledger
    await ledger.dispose()


@pytest.fixture
def metrics() -> LedgerMetrics:
    return LedgerMetrics()


@pytest.fixture
def executor(store: LedgerStore, settings: Settings, metrics: LedgerMetrics) -> TradeExecutor:
    return TradeExecutor(store, settings, metrics)


@pytest.fixture
def engine(store: LedgerStore, executor: TradeExecutor, metrics: LedgerMetrics) -> OrderEngine:
    return OrderEngine(store, executor, metrics)


@pytest.fixture
def valuation(store: LedgerStore, settings: Settings) -> ValuationService:
    return ValuationService(store, settings)


@pytest.fixture
def prices() -> FakePriceSource:
    return FakePriceSource({"bitcoin": Decimal("21000"), "ethereum": Decimal("1500")})


@pytest.fixture
def service(
    store: LedgerStore, settings: Settings, metrics: LedgerMetrics, prices: FakePriceSource
) -> TradingService:
    return TradingService(store, settings, price_source=prices, metrics=metrics)
