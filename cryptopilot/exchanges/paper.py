"""
Paper Trading Exchange Simulator.

Implements BaseExchange interface but executes spot trades virtually.
Useful for:
- Running the bot without a brokerage account
- Strategy experimentation without risking funds
- Engine tests with a realistic, stateful brokerage

Features:
- Instant market fills at the current price (optional slippage)
- USD cash balance and spot holdings per asset
- Quantity reservations to model holdings locked by open orders
- Optional random-walk price drift on every quote fetch
- Trade history logging to JSONL file
- reset() method for repeated runs
- set_price() / set_holding() for external state updates
"""

import json
import logging
import random
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from .base import (
    Asset,
    BaseExchange,
    Holding,
    InsufficientBalanceError,
    MarketQuote,
    Order,
    OrderError,
    OrderSide,
    OrderStatus,
    get_asset,
)

logger = logging.getLogger(__name__)


class PaperExchange(BaseExchange):
    """
    Paper trading exchange simulator.

    Simulates a spot crypto account without real funds. Market orders fill
    instantly at the current price. Buys are limited by cash, sells by the
    quantity available for trading.

    Attributes:
        initial_cash: Starting USD balance.
        cash: Current USD balance.
        holdings: Quantity held per asset symbol.
        reserved: Quantity locked per asset symbol (not available to sell).
        realized_pnl: Total realized profit/loss.
        orders: Dictionary of all orders by order_id.
        trade_history: List of all executed trades.
        current_prices: Dictionary of current prices by asset symbol.
        slippage_bps: Slippage in basis points (100 bps = 1%).
        price_volatility: Max fractional price move applied per quote fetch.
        log_trades: Whether to log trades to file.
        log_path: Path to trade log file.
    """

    def __init__(
        self,
        initial_cash: Decimal = Decimal("2000"),
        prices: Optional[dict[str, Decimal | float | str]] = None,
        slippage_bps: Decimal = Decimal("0"),
        price_volatility: Decimal = Decimal("0"),
        log_trades: bool = True,
        log_path: str = "data/paper_trades.jsonl",
        seed: Optional[int] = None,
    ) -> None:
        """
        Initialize paper trading exchange.

        Args:
            initial_cash: Starting USD balance (default 2,000).
            prices: Initial prices by asset symbol (e.g., {'BTC': 60000}).
            slippage_bps: Slippage in basis points (default 0).
            price_volatility: Random-walk step size per quote fetch (default 0).
            log_trades: Whether to log trades to JSONL file.
            log_path: Path to trade log file.
            seed: Seed for the price random walk (for reproducible runs).
        """
        super().__init__(mock_mode=True)
        self._name = "paper"

        # Balance tracking
        self.initial_cash = Decimal(str(initial_cash))
        self.cash = self.initial_cash
        self.realized_pnl = Decimal("0")

        # Spot holdings: symbol -> quantity
        self.holdings: dict[str, Decimal] = {}
        self.reserved: dict[str, Decimal] = {}

        # Average entry price per symbol for P&L
        self._entry_prices: dict[str, Decimal] = {}

        # Order tracking: order_id -> Order
        self.orders: dict[str, Order] = {}

        # Trade history for analysis
        self.trade_history: list[dict[str, Any]] = []

        # Current prices by asset symbol
        self.current_prices: dict[str, Decimal] = {}
        for symbol, price in (prices or {}).items():
            self.set_price(symbol, price)

        # Configuration
        self.slippage_bps = Decimal(str(slippage_bps))
        self.price_volatility = Decimal(str(price_volatility))
        self.log_trades = log_trades
        self.log_path = Path(log_path)
        self._rng = random.Random(seed)

    # =========================================================================
    # BaseExchange Abstract Method Implementations
    # =========================================================================

    async def connect(self) -> None:
        """Simulate connection to exchange."""
        self.is_connected = True
        self._log_event("CONNECTED", {"initial_cash": str(self.initial_cash)})
        logger.info(f"Paper exchange connected with cash: {self.initial_cash}")

    async def disconnect(self) -> None:
        """Simulate disconnection from exchange."""
        self.is_connected = False
        summary = self.get_pnl_summary()
        self._log_event("DISCONNECTED", summary)
        logger.info(f"Paper exchange disconnected. Realized P&L: {summary['realized_pnl']}")

    async def fetch_holdings(self) -> list[Holding]:
        """Return a fresh snapshot of every non-zero holding."""
        holdings = []
        for symbol, quantity in self.holdings.items():
            if quantity <= 0:
                continue
            reserved = min(self.reserved.get(symbol, Decimal("0")), quantity)
            holdings.append(
                Holding(
                    asset_symbol=symbol,
                    total_quantity=quantity,
                    quantity_available_for_trading=quantity - reserved,
                )
            )
        return holdings

    async def fetch_best_quotes(self, pair_symbols: list[str]) -> list[MarketQuote]:
        """
        Quote every requested pair that has a known price.

        When price_volatility is set, each fetch moves the price first.
        """
        now = datetime.now(timezone.utc)
        quotes = []
        for pair in pair_symbols:
            asset = get_asset(pair)
            if asset is None or asset.symbol not in self.current_prices:
                continue
            if self.price_volatility > 0:
                self._drift_price(asset.symbol)
            price = self.current_prices[asset.symbol]
            spread = price * self.slippage_bps / Decimal("10000")
            quotes.append(
                MarketQuote(
                    asset_symbol=asset.symbol,
                    price=price,
                    observed_at=now,
                    bid=price - spread,
                    ask=price + spread,
                )
            )
        return quotes

    async def place_market_order(
        self,
        asset: Asset,
        side: OrderSide,
        quantity: Decimal,
    ) -> Order:
        """
        Place and immediately fill a simulated market order.

        Args:
            asset: Asset to trade.
            side: Buy or sell.
            quantity: Order quantity.

        Returns:
            Filled Order object.

        Raises:
            OrderError: If the order is invalid or no price is known.
            InsufficientBalanceError: If cash or holdings are insufficient.
        """
        quantity = Decimal(str(quantity))

        # Validate order
        if quantity <= 0:
            raise OrderError("Order quantity must be positive")

        if asset.symbol not in self.current_prices:
            raise OrderError(f"Market data not available for {asset.symbol}")

        fill_price = self._determine_fill_price(asset.symbol, side)
        notional = quantity * fill_price

        if side == OrderSide.BUY:
            if notional > self.cash:
                raise InsufficientBalanceError(
                    f"Insufficient funds: {self.cash} < {notional}"
                )
        else:
            available = self._available_quantity(asset.symbol)
            if quantity > available:
                raise InsufficientBalanceError(
                    f"Insufficient asset balance: {available} < {quantity}"
                )

        now = datetime.now(timezone.utc)
        order = Order(
            order_id=str(uuid.uuid4())[:8],
            asset_symbol=asset.symbol,
            side=side,
            quantity=quantity,
            status=OrderStatus.FILLED,
            filled_quantity=quantity,
            average_fill_price=fill_price,
            created_at=now,
            client_order_id=str(uuid.uuid4()),
        )

        self._apply_fill(asset.symbol, side, quantity, fill_price)
        self.orders[order.order_id] = order
        self._log_trade(order)

        logger.info(
            f"Paper order filled: {side.value} {quantity} {asset.symbol} @ {fill_price}"
        )

        return order

    # =========================================================================
    # Paper Trading Specific Methods
    # =========================================================================

    def set_price(self, symbol: str, price: Decimal | float | str) -> None:
        """
        Set current price for an asset.

        Args:
            symbol: Asset code or trading pair.
            price: Current price in USD.
        """
        asset = get_asset(symbol)
        key = asset.symbol if asset else symbol.upper()
        self.current_prices[key] = Decimal(str(price))

    def set_holding(
        self,
        symbol: str,
        quantity: Decimal | float | str,
        reserved: Decimal | float | str = "0",
        entry_price: Optional[Decimal | float | str] = None,
    ) -> None:
        """
        Seed a holding directly (e.g., a position bought outside the bot).

        Args:
            symbol: Asset code.
            quantity: Total quantity held.
            reserved: Quantity locked by open orders.
            entry_price: Average entry price for P&L, if known.
        """
        symbol = symbol.upper()
        self.holdings[symbol] = Decimal(str(quantity))
        self.reserved[symbol] = Decimal(str(reserved))
        if entry_price is not None:
            self._entry_prices[symbol] = Decimal(str(entry_price))

    def get_trade_history(self) -> list[dict[str, Any]]:
        """Get complete trade history."""
        return self.trade_history.copy()

    def holdings_value(self) -> Decimal:
        """Value of all holdings at current prices."""
        return sum(
            (
                qty * self.current_prices[symbol]
                for symbol, qty in self.holdings.items()
                if symbol in self.current_prices
            ),
            Decimal("0"),
        )

    def get_pnl_summary(self) -> dict[str, Any]:
        """
        Get P&L summary.

        Returns:
            Dictionary with cash, holdings value and P&L breakdown.
        """
        holdings_value = self.holdings_value()
        total_value = self.cash + holdings_value
        return_pct = (
            (total_value / self.initial_cash - 1) * 100 if self.initial_cash > 0 else Decimal("0")
        )
        return {
            "initial_cash": str(self.initial_cash),
            "current_cash": str(self.cash),
            "holdings_value": str(holdings_value),
            "total_value": str(total_value),
            "realized_pnl": str(self.realized_pnl),
            "total_trades": len(self.trade_history),
            "return_pct": str(return_pct),
        }

    def reset(self) -> None:
        """Reset exchange to initial state (prices are kept)."""
        self.cash = self.initial_cash
        self.realized_pnl = Decimal("0")
        self.holdings.clear()
        self.reserved.clear()
        self._entry_prices.clear()
        self.orders.clear()
        self.trade_history.clear()
        self.is_connected = False

        logger.info("Paper exchange reset to initial state")

    # =========================================================================
    # Private Methods
    # =========================================================================

    def _available_quantity(self, symbol: str) -> Decimal:
        held = self.holdings.get(symbol, Decimal("0"))
        return max(held - self.reserved.get(symbol, Decimal("0")), Decimal("0"))

    def _determine_fill_price(self, symbol: str, side: OrderSide) -> Decimal:
        """Current price adjusted by slippage against the taker."""
        base_price = self.current_prices[symbol]
        if self.slippage_bps > 0:
            slippage = base_price * self.slippage_bps / Decimal("10000")
            if side == OrderSide.BUY:
                return base_price + slippage
            return base_price - slippage
        return base_price

    def _drift_price(self, symbol: str) -> None:
        """Move a price by a uniform random step within +/- price_volatility."""
        step = Decimal(str(self._rng.uniform(-1.0, 1.0))) * self.price_volatility
        new_price = self.current_prices[symbol] * (1 + step)
        self.current_prices[symbol] = new_price.quantize(Decimal("0.01"))

    def _apply_fill(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        fill_price: Decimal,
    ) -> None:
        """
        Update cash and holdings after a fill.

        Buys move the weighted average entry price; sells realize P&L
        against it.
        """
        held = self.holdings.get(symbol, Decimal("0"))
        notional = quantity * fill_price

        if side == OrderSide.BUY:
            entry = self._entry_prices.get(symbol, fill_price)
            new_held = held + quantity
            self._entry_prices[symbol] = (held * entry + notional) / new_held
            self.holdings[symbol] = new_held
            self.cash -= notional
            return

        entry = self._entry_prices.get(symbol, fill_price)
        pnl = (fill_price - entry) * quantity
        self.realized_pnl += pnl
        self.cash += notional
        logger.debug(f"Realized P&L for {symbol}: {pnl}")

        remaining = held - quantity
        if remaining <= 0:
            self.holdings.pop(symbol, None)
            self.reserved.pop(symbol, None)
            self._entry_prices.pop(symbol, None)
        else:
            self.holdings[symbol] = remaining

    def _log_trade(self, order: Order) -> None:
        """Log a trade to history and optionally to file."""
        trade = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "order_id": order.order_id,
            "symbol": order.asset_symbol,
            "side": order.side.value,
            "quantity": str(order.quantity),
            "price": str(order.average_fill_price),
            "cash_after": str(self.cash),
            "realized_pnl": str(self.realized_pnl),
        }
        self.trade_history.append(trade)

        if self.log_trades:
            self._write_to_log(trade)

    def _log_event(self, event: str, data: dict[str, Any]) -> None:
        """Log an event to file."""
        if self.log_trades:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event": event,
                **data,
            }
            self._write_to_log(entry)

    def _write_to_log(self, data: dict[str, Any]) -> None:
        """Write data to log file."""
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(data) + "\n")
        except OSError as e:
            logger.warning(f"Failed to write to trade log: {e}")
