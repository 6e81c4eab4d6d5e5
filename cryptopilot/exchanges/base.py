"""
Abstract brokerage interface for the trading cycle.

This module defines the core abstractions for brokerage interactions: the
fixed set of tracked assets, market quotes, holdings, order confirmations,
the exception taxonomy, and the abstract exchange interface that every
concrete brokerage implementation must inherit from.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Optional


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class OrderSide(Enum):
    """Order side enumeration."""

    BUY = "buy"
    SELL = "sell"

    def __str__(self) -> str:
        return self.value


class OrderStatus(Enum):
    """Order status enumeration."""

    PENDING = "pending"
    OPEN = "open"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Asset:
    """
    A tradeable crypto asset.

    Attributes:
        symbol: Canonical asset code (e.g., 'BTC').
        pair_symbol: Brokerage trading pair (e.g., 'BTC-USD').
        name: Display name.
        quantity_precision: Decimal places accepted for order quantities.
    """

    symbol: str
    pair_symbol: str
    name: str
    quantity_precision: int

    @property
    def quantity_step(self) -> Decimal:
        """Smallest quantity increment accepted by the brokerage."""
        return Decimal(1).scaleb(-self.quantity_precision)


BTC = Asset(symbol="BTC", pair_symbol="BTC-USD", name="Bitcoin", quantity_precision=8)
ETH = Asset(symbol="ETH", pair_symbol="ETH-USD", name="Ethereum", quantity_precision=6)

# Declaration order is the engine's iteration order
TRACKED_ASSETS: tuple[Asset, ...] = (BTC, ETH)


def get_asset(symbol: str) -> Optional[Asset]:
    """Resolve an asset code or trading pair symbol (case-insensitive)."""
    wanted = symbol.upper()
    for asset in TRACKED_ASSETS:
        if wanted in (asset.symbol, asset.pair_symbol):
            return asset
    return None


def truncate_quantity(quantity: Decimal, precision: int) -> Decimal:
    """
    Truncate a quantity to the given number of decimal places.

    Always rounds toward zero so an order never commits more than intended.
    """
    step = Decimal(1).scaleb(-precision)
    return Decimal(quantity).quantize(step, rounding=ROUND_DOWN)


@dataclass(frozen=True)
class MarketQuote:
    """
    Best price for a tracked asset at a point in time.

    Attributes:
        asset_symbol: Asset code (e.g., 'BTC').
        price: Mid/reference price in USD.
        observed_at: When the brokerage produced the quote.
        bid: Best bid including spread, if reported.
        ask: Best ask including spread, if reported.
    """

    asset_symbol: str
    price: Decimal
    observed_at: datetime = field(default_factory=_utc_now)
    bid: Optional[Decimal] = None
    ask: Optional[Decimal] = None


@dataclass(frozen=True)
class Holding:
    """
    Quantity of an asset held at the brokerage.

    Attributes:
        asset_symbol: Asset code (e.g., 'BTC').
        total_quantity: Total quantity held.
        quantity_available_for_trading: Quantity not reserved by open orders.
    """

    asset_symbol: str
    total_quantity: Decimal
    quantity_available_for_trading: Decimal

    def to_dict(self) -> dict[str, str]:
        """Convert holding to dictionary."""
        return {
            "asset_symbol": self.asset_symbol,
            "total_quantity": str(self.total_quantity),
            "quantity_available_for_trading": str(self.quantity_available_for_trading),
        }


@dataclass
class Order:
    """
    Represents a placed order as confirmed by the brokerage.

    Attributes:
        order_id: Brokerage identifier for the order.
        asset_symbol: Asset code (e.g., 'BTC').
        side: Buy or sell side.
        quantity: Requested quantity in asset units.
        status: Order status reported by the brokerage.
        filled_quantity: Amount filled so far.
        average_fill_price: Average price of fills, if any.
        created_at: Order creation timestamp.
        client_order_id: Client-generated idempotency key.
        raw: Raw brokerage response data.
    """

    order_id: str
    asset_symbol: str
    side: OrderSide
    quantity: Decimal
    status: OrderStatus = OrderStatus.PENDING
    filled_quantity: Decimal = Decimal("0")
    average_fill_price: Optional[Decimal] = None
    created_at: datetime = field(default_factory=_utc_now)
    client_order_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_filled(self) -> bool:
        """Check if order is completely filled."""
        return self.status == OrderStatus.FILLED

    @property
    def is_rejected(self) -> bool:
        """Check if the brokerage refused or abandoned the order."""
        return self.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED, OrderStatus.FAILED)


class ExchangeError(Exception):
    """Base exception for brokerage-related errors."""

    pass


class ConnectionError(ExchangeError):
    """Raised when the brokerage cannot be reached or returns no usable data."""

    pass


class AuthenticationError(ExchangeError):
    """Raised when authentication fails."""

    pass


class RateLimitError(ExchangeError):
    """Raised when rate limit is exceeded."""

    pass


class OrderError(ExchangeError):
    """Raised when the brokerage rejects an order."""

    pass


class InsufficientBalanceError(OrderError):
    """Raised when cash or asset balance is insufficient for an order."""

    pass


class BaseExchange(ABC):
    """
    Abstract base class for brokerage implementations.

    The trading engine only needs holdings, best quotes and market orders.
    Every call is a single attempt: implementations must not retry, since a
    retried order can be submitted twice.

    Attributes:
        name: Exchange name identifier.
        is_connected: Connection status flag.
        is_mock: Whether trades are simulated.
    """

    def __init__(self, mock_mode: bool = False) -> None:
        """
        Initialize base exchange.

        Args:
            mock_mode: Simulate trades without a real account.
        """
        self.is_mock = mock_mode
        self.is_connected = False
        self._name = "base"

    @property
    def name(self) -> str:
        """Exchange name identifier."""
        return self._name

    async def connect(self) -> None:
        """Prepare the exchange for use."""
        self.is_connected = True

    async def disconnect(self) -> None:
        """Release any resources held by the exchange."""
        self.is_connected = False

    @abstractmethod
    async def fetch_holdings(self) -> list[Holding]:
        """
        Fetch current holdings for the account.

        Returns:
            List of Holding objects (assets with no position may be omitted).

        Raises:
            ConnectionError: If holdings cannot be retrieved.
            AuthenticationError: If authentication fails.
        """
        pass

    @abstractmethod
    async def fetch_best_quotes(self, pair_symbols: list[str]) -> list[MarketQuote]:
        """
        Fetch best bid/ask quotes.

        Args:
            pair_symbols: Trading pairs to quote (e.g., ['BTC-USD']).

        Returns:
            List of MarketQuote objects (unknown pairs may be omitted).

        Raises:
            ConnectionError: If quotes cannot be retrieved.
        """
        pass

    @abstractmethod
    async def place_market_order(
        self,
        asset: Asset,
        side: OrderSide,
        quantity: Decimal,
    ) -> Order:
        """
        Place a market order.

        Args:
            asset: Asset to trade.
            side: Buy or sell.
            quantity: Quantity in asset units, already truncated to
                ``asset.quantity_precision``.

        Returns:
            Order confirmation.

        Raises:
            OrderError: If the brokerage rejects the order.
            InsufficientBalanceError: If balance is insufficient.
            ConnectionError: If the brokerage cannot be reached.
        """
        pass

    def __repr__(self) -> str:
        mode = "mock" if self.is_mock else "live"
        status = "connected" if self.is_connected else "disconnected"
        return f"<{self.__class__.__name__} mode={mode} status={status}>"
