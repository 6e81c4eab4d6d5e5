"""
Recommendation parser.

Turns the classifier's free-text advice (e.g. "Buy BTC 60%, ETH 40%") into
ordered buy allocations. Pure function, no I/O.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence

from ..exchanges.base import TRACKED_ASSETS, Asset

_PERCENT_RE = re.compile(r"(\d+)%")
_ONE = Decimal("1")


@dataclass(frozen=True)
class Allocation:
    """Fraction of investable capital (0-1] to spend on an asset."""

    asset_symbol: str
    fraction: Decimal


def parse_recommendation(
    text: str,
    assets: Sequence[Asset] = TRACKED_ASSETS,
) -> list[Allocation]:
    """
    Extract buy allocations from recommendation text.

    Rules:
    - No "buy" anywhere in the text: no allocations.
    - Per comma-separated segment, each asset named in the segment takes the
      first "<n>%" in that segment, capped at 100%.
    - If no percentages were found, every asset mentioned in the text gets
      the full fraction (1.0). Fractions are never re-normalised.

    Args:
        text: Recommendation text from the classifier.
        assets: Assets to look for, in priority order.

    Returns:
        Allocations in segment order, then asset order.

    Example:
        >>> parse_recommendation("Buy BTC 60%, ETH 40%")
        [Allocation(asset_symbol='BTC', fraction=Decimal('0.6')),
         Allocation(asset_symbol='ETH', fraction=Decimal('0.4'))]
    """
    if not text or "buy" not in text.lower():
        return []

    allocations: list[Allocation] = []
    for segment in text.split(","):
        lowered = segment.lower()
        for asset in assets:
            if asset.symbol.lower() not in lowered:
                continue
            match = _PERCENT_RE.search(segment)
            if match:
                fraction = min(Decimal(match.group(1)) / 100, _ONE)
                allocations.append(Allocation(asset.symbol, fraction))

    if not allocations:
        lowered = text.lower()
        for asset in assets:
            if asset.symbol.lower() in lowered:
                allocations.append(Allocation(asset.symbol, _ONE))

    return allocations
