"""
Buy-Price Ledger.

Append-only record of confirmed buys, used to compute sell targets. Each
confirmed buy appends one CSV line; the last line recorded for an asset is
its authoritative buy price.

Line format (oldest first):
    buy,<price>,<order_id or n/a>,<asset symbol>,<pair symbol>,<ISO-8601 UTC>

Example:
    >>> from cryptopilot.exchanges import BTC
    >>> ledger = BuyPriceLedger("data/trading_log.csv")
    >>> ledger.record_buy(BTC, Decimal("60000"), order_id="abc123")
    >>> ledger.most_recent_buy_price(BTC)
    Decimal('60000')
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional, Union

from ..exchanges.base import Asset

logger = logging.getLogger(__name__)

_MISSING_ORDER_ID = "n/a"
_FIELD_COUNT = 6


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class LedgerIOError(Exception):
    """Raised when the ledger cannot be written."""

    pass


@dataclass(frozen=True)
class LedgerEntry:
    """
    One confirmed buy.

    Attributes:
        asset_symbol: Asset code (e.g., 'BTC').
        buy_price: USD price at the time of the buy.
        recorded_at: When the buy was recorded.
        order_id: Brokerage order id, if known.
    """

    asset_symbol: str
    buy_price: Decimal
    recorded_at: datetime = field(default_factory=_utc_now)
    order_id: Optional[str] = None

    def to_line(self, pair_symbol: str) -> str:
        """Serialize entry as one ledger line (without newline)."""
        return ",".join(
            [
                "buy",
                str(self.buy_price),
                self.order_id or _MISSING_ORDER_ID,
                self.asset_symbol,
                pair_symbol,
                self.recorded_at.isoformat(),
            ]
        )

    @classmethod
    def from_line(cls, line: str) -> "LedgerEntry":
        """
        Parse a ledger line.

        Raises:
            ValueError: If the line is not a well-formed buy record.
        """
        parts = [p.strip() for p in line.split(",")]
        if len(parts) != _FIELD_COUNT or parts[0] != "buy":
            raise ValueError(f"unexpected ledger line: {line!r}")

        _, price_text, order_id, symbol, _pair, ts_text = parts
        try:
            price = Decimal(price_text)
        except InvalidOperation:
            raise ValueError(f"invalid price {price_text!r}")
        if not price.is_finite() or price <= 0:
            raise ValueError(f"non-positive price {price_text!r}")

        recorded_at = datetime.fromisoformat(ts_text)
        return cls(
            asset_symbol=symbol.upper(),
            buy_price=price,
            recorded_at=recorded_at,
            order_id=None if order_id == _MISSING_ORDER_ID else order_id,
        )


class BuyPriceLedger:
    """
    File-backed buy-price ledger.

    Entries are only ever appended. Reads never raise: a missing or
    unreadable file behaves as an empty ledger and corrupt lines are skipped.

    Attributes:
        path: Location of the CSV ledger file.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def record_buy(
        self,
        asset: Asset,
        price: Decimal,
        recorded_at: Optional[datetime] = None,
        order_id: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Append a buy record.

        Args:
            asset: Asset that was bought.
            price: Buy price in USD (must be positive).
            recorded_at: Timestamp of the buy (default: now, UTC).
            order_id: Brokerage order id from the confirmation.

        Returns:
            The appended LedgerEntry.

        Raises:
            ValueError: If price is not positive.
            LedgerIOError: If the ledger file cannot be written.
        """
        price = Decimal(str(price))
        if price <= 0:
            raise ValueError(f"Buy price must be positive, got {price}")

        entry = LedgerEntry(
            asset_symbol=asset.symbol,
            buy_price=price,
            recorded_at=recorded_at or _utc_now(),
            order_id=order_id,
        )

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(entry.to_line(asset.pair_symbol) + "\n")
        except OSError as e:
            logger.error(f"Failed to append to ledger {self.path}: {e}")
            raise LedgerIOError(f"Failed to write ledger {self.path}: {e}") from e

        logger.info(f"Ledger: recorded {asset.symbol} buy at {price}")
        return entry

    def entries(self, asset: Optional[Asset] = None) -> list[LedgerEntry]:
        """
        Read all valid entries, oldest first.

        Args:
            asset: Only return entries for this asset (default: all).

        Returns:
            List of LedgerEntry objects.
        """
        if not self.path.exists():
            return []

        # Undecodable bytes become U+FFFD and fail line parsing below
        try:
            with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                lines = f.readlines()
        except OSError as e:
            logger.warning(f"Ledger {self.path} unreadable, treating as empty: {e}")
            return []

        result = []
        for line_no, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = LedgerEntry.from_line(line)
            except ValueError as e:
                logger.warning(f"Skipping corrupt ledger line {line_no}: {e}")
                continue
            if asset is None or entry.asset_symbol == asset.symbol:
                result.append(entry)
        return result

    def most_recent_buy_price(self, asset: Asset) -> Optional[Decimal]:
        """
        Price of the most recent buy for an asset.

        Args:
            asset: Asset to look up.

        Returns:
            Last recorded buy price, or None if the asset was never bought.
        """
        entries = self.entries(asset)
        if not entries:
            return None
        return entries[-1].buy_price
