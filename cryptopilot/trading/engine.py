"""
Trading Cycle Engine for the BTC/ETH dip-buying strategy.

Each cycle inspects holdings and quotes, sells positions that reached the
profit target, asks the dip classifier whether current prices are a dip, and
buys under a fixed capital ceiling.

Cycle phases (strictly sequential):
1. Snapshot: fetch holdings and quotes (failure aborts the cycle)
2. Sell: per asset, sell everything available once price > last buy * (1 + target)
3. Classify: score current prices as dips (failure skips buying)
4. Dip signals: record every score at or above the threshold
5. Buy: split investable capital by the parsed recommendation
6. Finalize: refetch holdings and return a CycleResult

Safety:
    - At most one cycle in flight; concurrent triggers are rejected
    - Holdings refetched after every order
    - Quantities truncated to asset precision, never rounded up
    - No retries: the next scheduled cycle is the retry
    - Nothing raises out of run_cycle(); failures become error logs

Example:
    >>> engine = TradingEngine(
    ...     exchange=PaperExchange(prices={"BTC": 60000, "ETH": 3000}),
    ...     classifier=DrawdownDipClassifier(),
    ...     ledger=BuyPriceLedger("data/trading_log.csv"),
    ... )
    >>> result = await engine.run_cycle()
    >>> for log in result.logs:
    ...     print(log.kind, log.message)
"""

import asyncio
import logging
import signal
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Sequence

from ..ai.dip_classifier import BaseDipClassifier, DipAnalysis
from ..config import (
    CYCLE_INTERVAL,
    DIP_SCORE_THRESHOLD,
    DIP_SIGNAL_HISTORY,
    MAX_INVESTMENT_USD,
    MIN_INVESTABLE_USD,
    MIN_TRADE_USD,
    PRICE_HISTORY_POINTS,
    PROFIT_TARGET_PERCENTAGE,
)
from ..exchanges.base import (
    TRACKED_ASSETS,
    Asset,
    BaseExchange,
    Holding,
    MarketQuote,
    Order,
    OrderError,
    OrderSide,
    truncate_quantity,
)
from .ledger import BuyPriceLedger, LedgerIOError
from .price_history import PriceHistory
from .recommendation import parse_recommendation

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class LogKind(Enum):
    """Kind of a cycle log entry."""

    INFO = "info"
    BUY = "buy"
    SELL = "sell"
    AI = "ai"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CycleLog:
    """One user-facing audit entry produced during a cycle."""

    message: str
    kind: LogKind = LogKind.INFO
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "kind": self.kind.value,
        }


@dataclass(frozen=True)
class DipSignal:
    """
    An asset the classifier scored at or above the dip threshold.

    Attributes:
        asset_symbol: Asset code (e.g., 'BTC').
        price_at_dip: Quote price when the dip was scored.
        score: Dip score (0-100).
        timestamp: When the quote was observed.
    """

    asset_symbol: str
    price_at_dip: Decimal
    score: float
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_symbol": self.asset_symbol,
            "price_at_dip": str(self.price_at_dip),
            "score": self.score,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CycleResult:
    """
    Outcome of one cycle.

    Attributes:
        logs: Chronological audit entries.
        final_holdings: Holdings snapshot after the cycle.
        dip_signals: Dip signals raised this cycle.
        started_at: Cycle start time.
        finished_at: Cycle end time.
        rejected: True if the cycle was refused because another was running.
    """

    logs: list[CycleLog] = field(default_factory=list)
    final_holdings: list[Holding] = field(default_factory=list)
    dip_signals: list[DipSignal] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utc_now)
    finished_at: Optional[datetime] = None
    rejected: bool = False

    def logs_of(self, kind: LogKind) -> list[CycleLog]:
        """Log entries of one kind."""
        return [log for log in self.logs if log.kind == kind]

    @property
    def errors(self) -> list[str]:
        return [log.message for log in self.logs_of(LogKind.ERROR)]

    def to_dict(self) -> dict[str, Any]:
        """Convert result to a JSON-serialisable dictionary."""
        return {
            "logs": [log.to_dict() for log in self.logs],
            "final_holdings": [h.to_dict() for h in self.final_holdings],
            "dip_signals": [s.to_dict() for s in self.dip_signals],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "rejected": self.rejected,
        }


@dataclass
class EngineState:
    """
    Observability state kept across cycles.

    Attributes:
        is_running: Whether the scheduling loop is active.
        cycle_count: Number of cycles completed.
        rejected_count: Number of triggers rejected while busy.
        last_cycle_time: When the last cycle finished.
        last_error: Last error message (if any).
        start_time: When the scheduling loop started.
        last_holdings: Last successfully fetched holdings.
        dip_signals: Most recent dip signals, oldest first.
    """

    is_running: bool = False
    cycle_count: int = 0
    rejected_count: int = 0
    last_cycle_time: Optional[datetime] = None
    last_error: Optional[str] = None
    start_time: Optional[datetime] = None
    last_holdings: list[Holding] = field(default_factory=list)
    dip_signals: deque = field(default_factory=lambda: deque(maxlen=DIP_SIGNAL_HISTORY))

    def to_dict(self) -> dict[str, Any]:
        """Convert state to dictionary."""
        return {
            "is_running": self.is_running,
            "cycle_count": self.cycle_count,
            "rejected_count": self.rejected_count,
            "last_cycle_time": self.last_cycle_time.isoformat() if self.last_cycle_time else None,
            "last_error": self.last_error,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "uptime_seconds": (
                int((_utc_now() - self.start_time).total_seconds())
                if self.start_time
                else 0
            ),
            "holdings": [h.to_dict() for h in self.last_holdings],
            "dip_signals": [s.to_dict() for s in self.dip_signals],
        }


@dataclass
class _Cycle:
    """Transient per-cycle working state."""

    logs: list[CycleLog] = field(default_factory=list)
    holdings: list[Holding] = field(default_factory=list)
    quotes: dict[str, MarketQuote] = field(default_factory=dict)
    dip_signals: list[DipSignal] = field(default_factory=list)
    holdings_stale: bool = False
    started_at: datetime = field(default_factory=_utc_now)

    def log(self, kind: LogKind, message: str) -> None:
        self.logs.append(CycleLog(message=message, kind=kind))
        if kind == LogKind.ERROR:
            logger.error(message)
        else:
            logger.info(f"[{kind}] {message}")

    def holding(self, asset_symbol: str) -> Optional[Holding]:
        for h in self.holdings:
            if h.asset_symbol == asset_symbol:
                return h
        return None


class TradingEngine:
    """
    Orchestrates the periodic sell/classify/buy cycle.

    Collaborators are injected: a brokerage (BaseExchange), a dip classifier
    (BaseDipClassifier) and the buy-price ledger. Every numeric option
    defaults to the configured value when passed as None.

    Attributes:
        exchange: Brokerage used for holdings, quotes and orders.
        classifier: Dip classifier.
        ledger: Buy-price ledger.
        price_history: Rolling price window fed to the classifier.
        state: Observability state.

    Example:
        >>> engine = TradingEngine(exchange, classifier, ledger, cycle_interval=60)
        >>> engine.start()  # Non-blocking
        >>> await asyncio.sleep(3600)
        >>> engine.stop()
    """

    def __init__(
        self,
        exchange: BaseExchange,
        classifier: BaseDipClassifier,
        ledger: BuyPriceLedger,
        assets: Optional[Sequence[Asset]] = None,
        max_investment: Optional[float] = None,
        profit_target: Optional[float] = None,
        dip_threshold: Optional[float] = None,
        min_investable: Optional[float] = None,
        min_trade: Optional[float] = None,
        cycle_interval: Optional[int] = None,
        dip_signal_history: Optional[int] = None,
        price_history: Optional[PriceHistory] = None,
    ) -> None:
        """
        Initialize the trading engine.

        Args:
            exchange: Brokerage implementation.
            classifier: Dip classifier implementation.
            ledger: Buy-price ledger.
            assets: Assets to trade, in evaluation order (default: BTC, ETH).
            max_investment: Capital ceiling in USD (default from config).
            profit_target: Sell margin over last buy price, e.g. 0.03 (default from config).
            dip_threshold: Minimum dip score to buy (default from config).
            min_investable: Skip buying at or below this capacity (default from config).
            min_trade: Smallest buy notional in USD (default from config).
            cycle_interval: Seconds between scheduled cycles (default from config).
            dip_signal_history: Dip signals retained in state (default from config).
            price_history: Price window (default: new window sized from config).
        """
        self.exchange = exchange
        self.classifier = classifier
        self.ledger = ledger
        self.assets: tuple[Asset, ...] = tuple(assets) if assets is not None else TRACKED_ASSETS

        self.max_investment = self._decimal(max_investment, MAX_INVESTMENT_USD)
        self.profit_target = self._decimal(profit_target, PROFIT_TARGET_PERCENTAGE)
        self.min_investable = self._decimal(min_investable, MIN_INVESTABLE_USD)
        self.min_trade = self._decimal(min_trade, MIN_TRADE_USD)
        self.dip_threshold = float(DIP_SCORE_THRESHOLD if dip_threshold is None else dip_threshold)
        self.cycle_interval = CYCLE_INTERVAL if cycle_interval is None else cycle_interval

        history_len = DIP_SIGNAL_HISTORY if dip_signal_history is None else dip_signal_history
        self.price_history = price_history or PriceHistory(PRICE_HISTORY_POINTS)

        self.state = EngineState(dip_signals=deque(maxlen=history_len))
        self._busy = False
        self._shutdown_event = asyncio.Event()

        logger.info(
            f"TradingEngine initialized: exchange={exchange.name}, "
            f"max_investment=${self.max_investment}, profit_target={self.profit_target}, "
            f"dip_threshold={self.dip_threshold}, interval={self.cycle_interval}s"
        )

    @staticmethod
    def _decimal(value: Optional[float], default: float) -> Decimal:
        return Decimal(str(default if value is None else value))

    @property
    def is_busy(self) -> bool:
        """Whether a cycle is currently in flight."""
        return self._busy

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self) -> CycleResult:
        """
        Run one trading cycle.

        Never raises. If another cycle is in flight the call is rejected
        without touching the brokerage.

        Returns:
            CycleResult with logs, final holdings and dip signals.
        """
        # Checked and set before the first await
        if self._busy:
            self.state.rejected_count += 1
            message = "Cycle already in progress, trigger rejected"
            logger.warning(message)
            return CycleResult(
                logs=[CycleLog(message=message, kind=LogKind.ERROR)],
                final_holdings=list(self.state.last_holdings),
                finished_at=_utc_now(),
                rejected=True,
            )

        self._busy = True
        try:
            return await self._execute_cycle()
        finally:
            self._busy = False

    async def _execute_cycle(self) -> CycleResult:
        cycle = _Cycle(holdings=list(self.state.last_holdings))
        cycle.log(LogKind.INFO, "Cycle started")

        if not await self._snapshot(cycle):
            return self._complete(cycle)

        try:
            await self._sell_phase(cycle)

            analysis = await self._classify(cycle)
            if analysis is not None:
                self._record_dip_signals(cycle, analysis)
                await self._buy_phase(cycle, analysis)
        except Exception as e:
            logger.error(f"Unexpected error in cycle: {e}", exc_info=True)
            cycle.log(LogKind.ERROR, f"Unexpected error during cycle: {e}")

        await self._refresh_holdings(cycle, "at cycle end")
        cycle.log(LogKind.INFO, "Cycle finished")
        return self._complete(cycle)

    def _complete(self, cycle: _Cycle) -> CycleResult:
        """Build the result and update observability state."""
        finished_at = _utc_now()
        self.state.cycle_count += 1
        self.state.last_cycle_time = finished_at

        errors = [log.message for log in cycle.logs if log.kind == LogKind.ERROR]
        if errors:
            self.state.last_error = errors[-1]

        return CycleResult(
            logs=cycle.logs,
            final_holdings=list(cycle.holdings),
            dip_signals=cycle.dip_signals,
            started_at=cycle.started_at,
            finished_at=finished_at,
        )

    async def _snapshot(self, cycle: _Cycle) -> bool:
        """Fetch holdings and quotes. Returns False if the cycle must abort."""
        try:
            holdings = await self.exchange.fetch_holdings()
            quotes = await self.exchange.fetch_best_quotes([a.pair_symbol for a in self.assets])
        except Exception as e:
            cycle.log(LogKind.ERROR, f"Failed to fetch market snapshot, cycle aborted: {e}")
            return False

        cycle.holdings = list(holdings)
        self.state.last_holdings = list(holdings)

        tracked = {a.symbol for a in self.assets}
        for quote in quotes:
            if quote.asset_symbol in tracked and quote.price > 0:
                cycle.quotes[quote.asset_symbol] = quote
        self.price_history.record_quotes(cycle.quotes.values())
        return True

    async def _refresh_holdings(self, cycle: _Cycle, context: str) -> bool:
        """Refetch holdings after a mutation. Keeps the last known set on failure."""
        try:
            holdings = await self.exchange.fetch_holdings()
        except Exception as e:
            cycle.holdings_stale = True
            cycle.log(LogKind.ERROR, f"Failed to refresh holdings {context}: {e}")
            return False

        cycle.holdings = list(holdings)
        cycle.holdings_stale = False
        self.state.last_holdings = list(holdings)
        return True

    async def _place_order(self, asset: Asset, side: OrderSide, quantity: Decimal) -> Order:
        order = await self.exchange.place_market_order(asset, side, quantity)
        if order.is_rejected:
            raise OrderError(f"order {order.order_id} {order.status}")
        return order

    # =========================================================================
    # Sell Phase
    # =========================================================================

    async def _sell_phase(self, cycle: _Cycle) -> None:
        for asset in self.assets:
            holding = cycle.holding(asset.symbol)
            if holding is None or holding.quantity_available_for_trading <= 0:
                continue

            quote = cycle.quotes.get(asset.symbol)
            if quote is None:
                logger.debug(f"No quote for {asset.symbol}, skipping sell check")
                continue

            buy_price = self.ledger.most_recent_buy_price(asset)
            if buy_price is None:
                logger.debug(f"No recorded buy price for {asset.symbol}, skipping sell check")
                continue

            target = buy_price * (1 + self.profit_target)
            if quote.price <= target:
                logger.debug(f"{asset.symbol} at {quote.price} below target {target:.2f}")
                continue

            quantity = truncate_quantity(
                holding.quantity_available_for_trading, asset.quantity_precision
            )
            if quantity <= 0:
                cycle.log(LogKind.INFO, f"{asset.symbol} position too small to sell")
                continue

            try:
                await self._place_order(asset, OrderSide.SELL, quantity)
            except Exception as e:
                cycle.log(LogKind.ERROR, f"Error selling {asset.symbol}: {e}")
                continue

            cycle.log(
                LogKind.SELL,
                f"Profit target reached! Sold {quantity} {asset.symbol} at "
                f"${quote.price:.2f} (bought at ${buy_price:.2f}, target ${target:.2f}).",
            )
            await self._refresh_holdings(cycle, f"after selling {asset.symbol}")

    # =========================================================================
    # Classification
    # =========================================================================

    async def _classify(self, cycle: _Cycle) -> Optional[DipAnalysis]:
        current_prices = {symbol: q.price for symbol, q in cycle.quotes.items()}
        try:
            analysis = await self.classifier.score_dips(
                current_prices, self.price_history.snapshot()
            )
        except Exception as e:
            cycle.log(LogKind.ERROR, f"Error in AI analysis: {e}")
            return None

        scores = ", ".join(
            f"{a.symbol} dip {analysis.score_for(a.symbol):g}" for a in self.assets
        )
        cycle.log(LogKind.AI, f"AI Analysis: {scores}. Recommendation: {analysis.recommendation}")
        return analysis

    def _record_dip_signals(self, cycle: _Cycle, analysis: DipAnalysis) -> None:
        for asset in self.assets:
            score = analysis.score_for(asset.symbol)
            quote = cycle.quotes.get(asset.symbol)
            if score < self.dip_threshold or quote is None:
                continue
            dip = DipSignal(
                asset_symbol=asset.symbol,
                price_at_dip=quote.price,
                score=score,
                timestamp=quote.observed_at,
            )
            cycle.dip_signals.append(dip)
            self.state.dip_signals.append(dip)

    # =========================================================================
    # Buy Phase
    # =========================================================================

    def _crypto_value(self, cycle: _Cycle) -> Decimal:
        """Total USD value of tracked holdings at current quotes."""
        total = Decimal("0")
        for asset in self.assets:
            holding = cycle.holding(asset.symbol)
            quote = cycle.quotes.get(asset.symbol)
            if holding is not None and quote is not None:
                total += holding.total_quantity * quote.price
        return total

    async def _buy_phase(self, cycle: _Cycle, analysis: DipAnalysis) -> None:
        if cycle.holdings_stale:
            cycle.log(LogKind.ERROR, "Holdings unknown after sell phase, skipping buys")
            return

        crypto_value = self._crypto_value(cycle)
        investable = self.max_investment - crypto_value
        if investable <= self.min_investable:
            cycle.log(
                LogKind.INFO,
                f"Insufficient capacity to buy: ${investable:.2f} investable "
                f"(crypto value ${crypto_value:.2f}, cap ${self.max_investment:.2f})",
            )
            return

        allocations = parse_recommendation(analysis.recommendation, self.assets)
        if not allocations:
            logger.info("No buy recommended")
            return

        assets = {a.symbol: a for a in self.assets}

        for allocation in allocations:
            asset = assets[allocation.asset_symbol]
            score = analysis.score_for(asset.symbol)
            if score < self.dip_threshold:
                cycle.log(
                    LogKind.INFO,
                    f"Skipping {asset.symbol} buy: dip score {score:g} below {self.dip_threshold:g}",
                )
                continue

            quote = cycle.quotes.get(asset.symbol)
            if quote is None:
                cycle.log(LogKind.INFO, f"Skipping {asset.symbol} buy: no current price")
                continue

            # Fractions are never re-normalised; the running value caps the total
            amount = min(investable * allocation.fraction, self.max_investment - crypto_value)
            if amount < self.min_trade:
                logger.info(f"Skipping {asset.symbol} buy: ${amount:.2f} below minimum trade")
                continue

            quantity = truncate_quantity(amount / quote.price, asset.quantity_precision)
            if quantity <= 0:
                cycle.log(LogKind.INFO, f"Skipping {asset.symbol} buy: quantity rounds to zero")
                continue

            try:
                order = await self._place_order(asset, OrderSide.BUY, quantity)
            except Exception as e:
                cycle.log(LogKind.ERROR, f"Error buying {asset.symbol}: {e}")
                continue

            # Capital is committed whether or not the order has filled yet
            crypto_value += amount

            if not (order.is_filled or order.filled_quantity > 0):
                cycle.log(
                    LogKind.INFO,
                    f"{asset.symbol} buy order {order.order_id} not filled "
                    f"(status {order.status}), buy price not recorded",
                )
                await self._refresh_holdings(cycle, f"after buying {asset.symbol}")
                continue

            buy_price = order.average_fill_price or quote.price
            target = buy_price * (1 + self.profit_target)
            cycle.log(
                LogKind.BUY,
                f"AI recommended BUY. Bought {quantity} {asset.symbol} at ${buy_price:.2f} "
                f"(${amount:.2f}). Target sell: ${target:.2f}",
            )

            try:
                self.ledger.record_buy(asset, buy_price, order_id=order.order_id or None)
            except LedgerIOError as e:
                cycle.log(LogKind.ERROR, f"Error writing to trading log: {e}")

            await self._refresh_holdings(cycle, f"after buying {asset.symbol}")

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for clean shutdown."""
        try:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)
        except (ValueError, RuntimeError):
            # Signal handlers can only be set in main thread
            pass

    def _signal_handler(self, signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, initiating shutdown...")
        self.stop()

    async def run(self, handle_signals: bool = True) -> None:
        """
        Main loop: run a cycle every ``cycle_interval`` seconds until stopped.

        Args:
            handle_signals: Install SIGINT/SIGTERM handlers that call stop().
        """
        logger.info(f"Starting trading loop (interval={self.cycle_interval}s)")

        if handle_signals:
            self._setup_signal_handlers()

        self._shutdown_event.clear()
        self.state.is_running = True
        self.state.start_time = _utc_now()

        try:
            while not self._shutdown_event.is_set():
                result = await self.run_cycle()
                for error in result.errors:
                    logger.warning(f"Cycle error: {error}")

                # Wait for next cycle
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.cycle_interval,
                    )
                except asyncio.TimeoutError:
                    pass

        except asyncio.CancelledError:
            logger.info("Trading loop cancelled")
        finally:
            self.state.is_running = False
            logger.info("Trading loop stopped")

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        logger.info("Stopping trading engine...")
        self._shutdown_event.set()
        self.state.is_running = False

    def start(self, handle_signals: bool = True) -> asyncio.Task:
        """
        Start the loop as a background task.

        Returns:
            asyncio.Task that can be awaited or cancelled
        """
        return asyncio.create_task(self.run(handle_signals=handle_signals))

    def get_status(self) -> dict[str, Any]:
        """
        Get engine status.

        Returns:
            Dictionary with engine state and configuration.
        """
        return {
            "engine_state": self.state.to_dict(),
            "busy": self._busy,
            "exchange": self.exchange.name,
            "config": {
                "assets": [a.symbol for a in self.assets],
                "max_investment": str(self.max_investment),
                "profit_target": str(self.profit_target),
                "dip_threshold": self.dip_threshold,
                "cycle_interval": self.cycle_interval,
            },
        }
