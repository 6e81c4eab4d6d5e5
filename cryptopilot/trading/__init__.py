"""
Trading cycle modules.

This module provides:
- TradingEngine: periodic sell/classify/buy cycle
- BuyPriceLedger: append-only record of buy prices
- parse_recommendation: classifier text to buy allocations
- PriceHistory: rolling price window for the classifier
"""

from .engine import CycleLog, CycleResult, DipSignal, EngineState, LogKind, TradingEngine
from .ledger import BuyPriceLedger, LedgerEntry, LedgerIOError
from .price_history import PriceHistory
from .recommendation import Allocation, parse_recommendation

__all__ = [
    # Engine
    "TradingEngine",
    "EngineState",
    "CycleResult",
    "CycleLog",
    "LogKind",
    "DipSignal",
    # Ledger
    "BuyPriceLedger",
    "LedgerEntry",
    "LedgerIOError",
    # Parsing
    "Allocation",
    "parse_recommendation",
    "PriceHistory",
]
