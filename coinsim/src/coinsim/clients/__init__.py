"""
Clients for external services.

Currently only the CoinGecko market-data client lives here.
"""

from .price_client import CoinGeckoClient  # noqa: F401
