"""Configuration management for the CryptoPilot dip-buying bot."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Data directory
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Buy-price ledger (one CSV line per confirmed buy)
LEDGER_PATH = os.getenv("LEDGER_PATH", "data/trading_log.csv")
LEDGER_FULL_PATH = PROJECT_ROOT / LEDGER_PATH

# Robinhood crypto credentials
ROBINHOOD_API_KEY = os.getenv("ROBINHOOD_API_KEY", "")
ROBINHOOD_PRIVATE_KEY_BASE64 = os.getenv("ROBINHOOD_PRIVATE_KEY_BASE64", "")

# Classifier credentials
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Trading mode: "paper" or "live"
TRADING_MODE = os.getenv("TRADING_MODE", "paper")

# =============================================================================
# TRADING CYCLE CONFIGURATION
# =============================================================================

# Capital ceiling: total crypto value (USD) the bot may hold
MAX_INVESTMENT_USD = float(os.getenv("MAX_INVESTMENT_USD", "2000"))

# Sell once price exceeds last buy price by this fraction (0.03 = 3%)
PROFIT_TARGET_PERCENTAGE = float(os.getenv("PROFIT_TARGET_PERCENTAGE", "0.03"))

# Minimum classifier dip score (0-100) required to buy
DIP_SCORE_THRESHOLD = float(os.getenv("DIP_SCORE_THRESHOLD", "70"))

# Seconds between scheduled cycles (5 minutes)
CYCLE_INTERVAL = int(os.getenv("CYCLE_INTERVAL", "300"))

# Skip the buy phase when remaining capacity is at or below this (USD)
MIN_INVESTABLE_USD = float(os.getenv("MIN_INVESTABLE_USD", "10"))

# Smallest buy notional worth submitting (USD)
MIN_TRADE_USD = float(os.getenv("MIN_TRADE_USD", "1"))

# =============================================================================
# OBSERVABILITY
# =============================================================================

# Number of recent dip signals kept in engine state
DIP_SIGNAL_HISTORY = int(os.getenv("DIP_SIGNAL_HISTORY", "10"))

# Price points retained per asset for the classifier (7 days, hourly)
PRICE_HISTORY_POINTS = int(os.getenv("PRICE_HISTORY_POINTS", str(7 * 24)))

# =============================================================================
# PAPER TRADING
# =============================================================================

PAPER_INITIAL_CASH = float(os.getenv("PAPER_INITIAL_CASH", "2000"))
PAPER_TRADE_LOG = DATA_DIR / "paper_trades.jsonl"

# Seed prices for the paper exchange
PAPER_BTC_PRICE = float(os.getenv("PAPER_BTC_PRICE", "60000"))
PAPER_ETH_PRICE = float(os.getenv("PAPER_ETH_PRICE", "3000"))

# Per-fetch random-walk volatility for paper prices (0.02 = 2%)
PAPER_PRICE_VOLATILITY = float(os.getenv("PAPER_PRICE_VOLATILITY", "0.01"))

# =============================================================================
# API ENDPOINTS
# =============================================================================

ROBINHOOD_BASE_URL = "https://trading.robinhood.com"
