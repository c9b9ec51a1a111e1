"""クライアントモジュール."""

from grid_paper_bot.client.exceptions import (
    PriceUnavailable,
    ProviderError,
)
from grid_paper_bot.client.price import (
    CoinbaseProvider,
    KrakenProvider,
    PriceOracle,
    PriceProvider,
    create_session,
)

__all__ = [
    "PriceOracle",
    "PriceProvider",
    "CoinbaseProvider",
    "KrakenProvider",
    "PriceUnavailable",
    "ProviderError",
    "create_session",
]
