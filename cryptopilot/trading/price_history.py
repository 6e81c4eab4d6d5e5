"""Rolling per-asset price window fed to the dip classifier."""

from collections import deque
from decimal import Decimal
from typing import Iterable

from ..exchanges.base import MarketQuote


class PriceHistory:
    """
    Bounded price history per asset, oldest first.

    Attributes:
        max_points: Maximum prices retained per asset.
    """

    def __init__(self, max_points: int = 168) -> None:
        if max_points <= 0:
            raise ValueError("max_points must be positive")
        self.max_points = max_points
        self._prices: dict[str, deque[Decimal]] = {}

    def record(self, asset_symbol: str, price: Decimal) -> None:
        """Append a price observation for an asset."""
        window = self._prices.setdefault(asset_symbol, deque(maxlen=self.max_points))
        window.append(Decimal(str(price)))

    def record_quotes(self, quotes: Iterable[MarketQuote]) -> None:
        """Append the price of every quote."""
        for quote in quotes:
            self.record(quote.asset_symbol, quote.price)

    def prices(self, asset_symbol: str) -> list[Decimal]:
        """Prices for an asset, oldest first."""
        return list(self._prices.get(asset_symbol, ()))

    def snapshot(self) -> dict[str, list[Decimal]]:
        """Copy of every asset's window."""
        return {symbol: list(window) for symbol, window in self._prices.items()}

    def __len__(self) -> int:
        return sum(len(w) for w in self._prices.values())
