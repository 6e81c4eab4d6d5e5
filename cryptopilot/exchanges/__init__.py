"""
Brokerage implementations for the trading cycle.

This module provides brokerage abstractions and implementations:
- BaseExchange: Abstract base class for all brokerages
- PaperExchange: In-memory simulator for paper trading and tests
- RobinhoodExchange: Robinhood Crypto trading API client

Usage:
    from cryptopilot.exchanges import PaperExchange, BTC, OrderSide

    exchange = PaperExchange(prices={"BTC": 60000, "ETH": 3000})
    await exchange.connect()

    order = await exchange.place_market_order(BTC, OrderSide.BUY, Decimal("0.01"))
"""

from .base import (
    BTC,
    ETH,
    TRACKED_ASSETS,
    Asset,
    AuthenticationError,
    BaseExchange,
    ConnectionError,
    ExchangeError,
    Holding,
    InsufficientBalanceError,
    MarketQuote,
    Order,
    OrderError,
    OrderSide,
    OrderStatus,
    RateLimitError,
    get_asset,
    truncate_quantity,
)
from .paper import PaperExchange
from .robinhood import RobinhoodExchange

__all__ = [
    # Assets
    "Asset",
    "BTC",
    "ETH",
    "TRACKED_ASSETS",
    "get_asset",
    "truncate_quantity",
    # Base classes and types
    "BaseExchange",
    "MarketQuote",
    "Holding",
    "Order",
    "OrderSide",
    "OrderStatus",
    # Exceptions
    "ExchangeError",
    "ConnectionError",
    "AuthenticationError",
    "OrderError",
    "InsufficientBalanceError",
    "RateLimitError",
    # Implementations
    "PaperExchange",
    "RobinhoodExchange",
]
