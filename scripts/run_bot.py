#!/usr/bin/env python3
"""
Run the CryptoPilot dip-buying bot.

This script provides a command-line interface to run the BTC/ETH trading
cycle against the paper exchange (default) or a Robinhood Crypto account.

Usage:
    # Paper trading loop (default, safe)
    python scripts/run_bot.py

    # Run a single cycle and print its logs
    python scripts/run_bot.py --once

    # Check status (configuration, credentials, ledger)
    python scripts/run_bot.py --status

    # Run for a specific duration (in minutes)
    python scripts/run_bot.py --duration 60

    # Live trading (CAUTION - requires Robinhood credentials)
    python scripts/run_bot.py --live

    # Custom capital ceiling and interval
    python scripts/run_bot.py --max-investment 500 --interval 60

Safety Notes:
    - Paper mode is the default. Real money is NEVER risked unless --live is passed.
    - Live mode asks for typed confirmation.
    - Always test with paper trading before going live.

Environment Variables:
    ROBINHOOD_API_KEY - Robinhood crypto API key
    ROBINHOOD_PRIVATE_KEY_BASE64 - Base64 Ed25519 private key
    OPENAI_API_KEY - Enables the OpenAI dip classifier
    TRADING_MODE - "paper" (default) or "live"
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from cryptopilot.ai import build_classifier
from cryptopilot.config import (
    CYCLE_INTERVAL,
    DIP_SCORE_THRESHOLD,
    LEDGER_FULL_PATH,
    LOGS_DIR,
    MAX_INVESTMENT_USD,
    OPENAI_API_KEY,
    OPENAI_MODEL,
    PAPER_BTC_PRICE,
    PAPER_ETH_PRICE,
    PAPER_INITIAL_CASH,
    PAPER_PRICE_VOLATILITY,
    PAPER_TRADE_LOG,
    PROFIT_TARGET_PERCENTAGE,
    ROBINHOOD_API_KEY,
    ROBINHOOD_BASE_URL,
    ROBINHOOD_PRIVATE_KEY_BASE64,
    TRADING_MODE,
)
from cryptopilot.exchanges import BaseExchange, PaperExchange, RobinhoodExchange
from cryptopilot.trading import BuyPriceLedger, CycleResult, TradingEngine


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the bot."""
    level = logging.DEBUG if verbose else logging.INFO

    console_format = "%(asctime)s [%(levelname)s] %(message)s"
    file_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(console_format, datefmt="%H:%M:%S"))

    # File handler
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOGS_DIR / f"cryptopilot_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(file_format))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    for name in ("urllib3", "requests", "httpx", "openai"):
        logging.getLogger(name).setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")


def build_exchange(paper_mode: bool) -> Optional[BaseExchange]:
    """
    Create the brokerage for the selected mode.

    Returns:
        Exchange instance, or None if live credentials are missing.
    """
    if paper_mode:
        return PaperExchange(
            initial_cash=Decimal(str(PAPER_INITIAL_CASH)),
            prices={"BTC": PAPER_BTC_PRICE, "ETH": PAPER_ETH_PRICE},
            price_volatility=Decimal(str(PAPER_PRICE_VOLATILITY)),
            log_path=str(PAPER_TRADE_LOG),
        )

    if not ROBINHOOD_API_KEY or not ROBINHOOD_PRIVATE_KEY_BASE64:
        return None
    return RobinhoodExchange(
        api_key=ROBINHOOD_API_KEY,
        private_key_base64=ROBINHOOD_PRIVATE_KEY_BASE64,
        base_url=ROBINHOOD_BASE_URL,
    )


def print_cycle(result: CycleResult) -> None:
    """Print one cycle's audit trail."""
    for log in result.logs:
        print(f"  {log.timestamp.strftime('%H:%M:%S')} [{log.kind.value.upper():5}] {log.message}")

    print("\nHoldings:")
    if not result.final_holdings:
        print("  (none)")
    for holding in result.final_holdings:
        print(
            f"  {holding.asset_symbol}: {holding.total_quantity} "
            f"(available {holding.quantity_available_for_trading})"
        )

    if result.dip_signals:
        print("\nDip signals:")
        for dip in result.dip_signals:
            print(f"  {dip.asset_symbol} score {dip.score:g} at ${dip.price_at_dip:.2f}")


def show_status() -> None:
    """Show configuration, credentials and ledger without trading."""
    print("\n" + "=" * 70)
    print("CryptoPilot Status")
    print("=" * 70)

    print("\nConfiguration:")
    print(f"  Trading Mode: {TRADING_MODE}")
    print(f"  Max Investment: ${MAX_INVESTMENT_USD}")
    print(f"  Profit Target: {PROFIT_TARGET_PERCENTAGE * 100:.1f}%")
    print(f"  Dip Threshold: {DIP_SCORE_THRESHOLD}")
    print(f"  Cycle Interval: {CYCLE_INTERVAL}s")

    print("\nCredentials:")
    has_rh = bool(ROBINHOOD_API_KEY and ROBINHOOD_PRIVATE_KEY_BASE64)
    print(f"  Robinhood: {'Configured' if has_rh else 'NOT CONFIGURED'}")
    print(f"  OpenAI: {'Configured (' + OPENAI_MODEL + ')' if OPENAI_API_KEY else 'NOT CONFIGURED (drawdown classifier)'}")
    print(f"  Live Trading: {'Ready' if has_rh else 'NOT AVAILABLE'}")

    ledger = BuyPriceLedger(LEDGER_FULL_PATH)
    entries = ledger.entries()
    print(f"\nBuy Ledger ({LEDGER_FULL_PATH}):")
    if not entries:
        print("  No buys recorded yet")
    for entry in entries[-10:]:
        print(
            f"  {entry.recorded_at.isoformat()} {entry.asset_symbol} @ ${entry.buy_price} "
            f"(order {entry.order_id or 'n/a'})"
        )

    if PAPER_TRADE_LOG.exists():
        try:
            with open(PAPER_TRADE_LOG) as f:
                events = [json.loads(line) for line in f if line.strip()]
            trades = [e for e in events if "side" in e]
            print(f"\nPaper Trading History: {len(trades)} trades logged")
        except (OSError, ValueError) as e:
            print(f"\nError reading paper trading log: {e}")
    else:
        print("\nPaper Trading History: No trades yet")

    print("\n" + "=" * 70)


async def run_bot(
    paper_mode: bool,
    once: bool,
    duration_minutes: int,
    interval: int,
    max_investment: float,
) -> None:
    """
    Run the trading engine.

    Args:
        paper_mode: If True, trade against the paper exchange
        once: Run a single cycle and exit
        duration_minutes: How long to run (0 = unlimited)
        interval: Seconds between cycles
        max_investment: Capital ceiling in USD
    """
    mode_str = "PAPER" if paper_mode else "LIVE"

    print("\n" + "=" * 70)
    print(f"Starting CryptoPilot ({mode_str} MODE)")
    print("=" * 70)

    if not paper_mode:
        print("\n" + "!" * 70)
        print("WARNING: LIVE TRADING MODE")
        print("Real money will be at risk!")
        print("!" * 70)

        confirm = input("\nType 'LIVE' to confirm live trading: ")
        if confirm != "LIVE":
            print("Live trading cancelled.")
            return

    exchange = build_exchange(paper_mode)
    if exchange is None:
        print("Error: Robinhood credentials not configured.")
        print("Check that ROBINHOOD_API_KEY and ROBINHOOD_PRIVATE_KEY_BASE64 are set.")
        return

    engine = TradingEngine(
        exchange=exchange,
        classifier=build_classifier(),
        ledger=BuyPriceLedger(LEDGER_FULL_PATH),
        max_investment=max_investment,
        cycle_interval=interval,
    )

    print("\nConfiguration:")
    print(f"  Mode: {mode_str}")
    print(f"  Max Investment: ${max_investment}")
    print(f"  Interval: {interval}s")
    if not once:
        print(f"  Duration: {duration_minutes} minutes" if duration_minutes > 0 else "  Duration: Unlimited")
        print("\nPress Ctrl+C to stop\n")

    await exchange.connect()
    try:
        if once:
            result = await engine.run_cycle()
            print()
            print_cycle(result)
        elif duration_minutes > 0:
            task = engine.start()
            try:
                await asyncio.wait_for(task, timeout=duration_minutes * 60)
            except asyncio.TimeoutError:
                print(f"\nDuration limit reached ({duration_minutes} minutes)")
        else:
            await engine.run()

    except KeyboardInterrupt:
        print("\nShutdown requested by user...")
    finally:
        engine.stop()
        await exchange.disconnect()

        if not once:
            state = engine.get_status()["engine_state"]
            print("\n" + "=" * 70)
            print("Final Status")
            print("=" * 70)
            print("\nSession Summary:")
            print(f"  Mode: {mode_str}")
            print(f"  Cycles completed: {state['cycle_count']}")
            print(f"  Triggers rejected: {state['rejected_count']}")
            print(f"  Uptime: {state['uptime_seconds']} seconds")
            if state.get("last_error"):
                print(f"\nLast Error: {state['last_error']}")

        if isinstance(exchange, PaperExchange):
            summary = exchange.get_pnl_summary()
            print("\nPaper Trading Stats:")
            print(f"  Cash: ${summary['current_cash']}")
            print(f"  Holdings value: ${summary['holdings_value']}")
            print(f"  Realized P&L: ${summary['realized_pnl']}")

        print("\n" + "=" * 70)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the CryptoPilot BTC/ETH dip-buying bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_bot.py                     # Paper trading (default)
  python scripts/run_bot.py --once              # Single cycle
  python scripts/run_bot.py --status            # Check status
  python scripts/run_bot.py --duration 60       # Run for 60 minutes
  python scripts/run_bot.py --live              # Live trading (CAUTION)
        """,
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--status",
        action="store_true",
        help="Show configuration and ledger, then exit",
    )
    mode_group.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit",
    )

    parser.add_argument(
        "--live",
        action="store_true",
        help="Trade on Robinhood (CAUTION: real money at risk)",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=CYCLE_INTERVAL,
        metavar="SECONDS",
        help=f"Seconds between cycles (default: {CYCLE_INTERVAL})",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        metavar="MINUTES",
        help="How long to run in minutes (0 = unlimited, default: 0)",
    )
    parser.add_argument(
        "--max-investment",
        type=float,
        default=MAX_INVESTMENT_USD,
        metavar="USD",
        help=f"Capital ceiling in USD (default: {MAX_INVESTMENT_USD})",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.status:
        show_status()
        return

    setup_logging(verbose=args.verbose)

    paper_mode = not args.live

    try:
        asyncio.run(
            run_bot(
                paper_mode=paper_mode,
                once=args.once,
                duration_minutes=args.duration,
                interval=args.interval,
                max_investment=args.max_investment,
            )
        )
    except Exception as e:
        print(f"\nFatal error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
