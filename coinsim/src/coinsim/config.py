"""
Runtime configuration for the simulator.

All settings come from environment variables so that the same image can
run the worker, the operator scripts and the test suite.  ``Settings``
is read once via :meth:`Settings.from_env` and then passed explicitly to
the services that need it; nothing else in the package touches
``os.environ``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///coinsim.db"
DEFAULT_COINGECKO_URL = "https://api.coingecko.com/api/v3"


def _decimal(env: Mapping[str, str], key: str, default: str) -> Decimal:
    raw = env.get(key, default)
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{key} must be a decimal number, got {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"{key} must be finite, got {raw!r}")
    return value


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Configuration values shared by the ledger services and the worker."""

    database_url: str = DEFAULT_DATABASE_URL
    starting_balance: Decimal = Decimal("10000.00")
    currency: str = "USD"
    trade_fee: Decimal = Decimal("0")
    history_limit: int = 100
    coingecko_base_url: str = DEFAULT_COINGECKO_URL
    price_timeout_seconds: float = 10.0
    price_cache_ttl: float = 60.0
    price_batch_size: int = 100
    order_check_interval: float = 30.0
    conflict_retries: int = 3
    event_store_path: Optional[str] = None
    prometheus_port: int = 9108
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``env`` (defaults to ``os.environ``).

        Raises:
            ValueError: if a numeric variable cannot be parsed or is out of range.
        """
        env = os.environ if env is None else env
        settings = cls(
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            starting_balance=_decimal(env, "STARTING_BALANCE", "10000.00"),
            currency=env.get("WALLET_CURRENCY", "USD"),
            trade_fee=_decimal(env, "TRADE_FEE", "0"),
            history_limit=_int(env, "HISTORY_LIMIT", 100),
            coingecko_base_url=env.get("COINGECKO_BASE_URL", DEFAULT_COINGECKO_URL),
            price_timeout_seconds=_float(env, "PRICE_TIMEOUT_SECONDS", 10.0),
            price_cache_ttl=_float(env, "PRICE_CACHE_TTL", 60.0),
            price_batch_size=_int(env, "PRICE_BATCH_SIZE", 100),
            order_check_interval=_float(env, "ORDER_CHECK_INTERVAL", 30.0),
            conflict_retries=_int(env, "CONFLICT_RETRIES", 3),
            event_store_path=env.get("EVENT_STORE_PATH") or None,
            prometheus_port=_int(env, "PROMETHEUS_PORT", 9108),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.starting_balance < 0:
            raise ValueError("STARTING_BALANCE must not be negative")
        if self.trade_fee < 0:
            raise ValueError("TRADE_FEE must not be negative")
        if self.history_limit <= 0:
            raise ValueError("HISTORY_LIMIT must be positive")
        if self.price_timeout_seconds <= 0:
            raise ValueError("PRICE_TIMEOUT_SECONDS must be positive")
        if self.price_batch_size <= 0:
            raise ValueError("PRICE_BATCH_SIZE must be positive")
        if self.conflict_retries < 1:
            raise ValueError("CONFLICT_RETRIES must be at least 1")
