"""Tests for environment-driven settings."""

from __future__ import annotations

from decimal import Decimal

import pytest

from coinsim.config import DEFAULT_DATABASE_URL, Settings


def test_defaults_when_environment_is_empty() -> None:
    settings = Settings.from_env({})
    assert settings.database_url == DEFAULT_DATABASE_URL
    assert settings.starting_balance == Decimal("10000.00")
    assert settings.currency == "USD"
    assert settings.trade_fee == Decimal("0")
    assert settings.history_limit == 100
    assert settings.price_cache_ttl == 60.0
    assert settings.event_store_path is None


def test_reads_overrides() -> None:
    settings = Settings.from_env(
        {
            "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
            "STARTING_BALANCE": "500.50",
            "TRADE_FEE": "1.25",
            "HISTORY_LIMIT": "20",
            "ORDER_CHECK_INTERVAL": "5",
            "EVENT_STORE_PATH": "/tmp/events.jsonl",
        }
    )
    assert settings.starting_balance == Decimal("500.50")
    assert settings.trade_fee == Decimal("1.25")
    assert settings.history_limit == 20
    assert settings.order_check_interval == 5.0
    assert settings.event_store_path == "/tmp/events.jsonl"


@pytest.mark.parametrize(
    "env",
    [
        {"STARTING_BALANCE": "lots"},
        {"STARTING_BALANCE": "-1"},
        {"TRADE_FEE": "-0.01"},
        {"HISTORY_LIMIT": "0"},
        {"HISTORY_LIMIT": "ten"},
        {"CONFLICT_RETRIES": "0"},
        {"PRICE_TIMEOUT_SECONDS": "soon"},
    ],
)
def test_rejects_bad_values(env: dict) -> None:
    with pytest.raises(ValueError):
        Settings.from_env(env)


def test_reads_process_environment(monkeypatch) -> None:
    monkeypatch.setenv("WALLET_CURRENCY", "EUR")
    monkeypatch.setenv("PRICE_BATCH_SIZE", "25")
    settings = Settings.from_env()
    assert settings.currency == "EUR"
    assert settings.price_batch_size == 25
