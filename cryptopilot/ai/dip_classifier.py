"""
Dip Classifier Adapters.

Scores how attractive the current BTC/ETH prices are as dip-buying
opportunities (0-100 per asset) and produces a free-text recommendation
such as "Buy BTC 60%, ETH 40%".

Implementations:
- OpenAIDipClassifier: asks a chat model, validates its JSON answer
- DrawdownDipClassifier: deterministic drawdown-from-high scorer for paper runs

Any failure surfaces as ClassifierError. Calls are made once; the caller
decides what to skip when scoring fails.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from ..config import DIP_SCORE_THRESHOLD, OPENAI_API_KEY, OPENAI_MODEL
from ..exchanges.base import TRACKED_ASSETS

logger = logging.getLogger(__name__)


class ClassifierError(Exception):
    """Raised when the classifier cannot produce a valid analysis."""

    pass


@dataclass
class DipAnalysis:
    """
    Classifier output.

    Attributes:
        scores: Dip score (0-100) per asset symbol.
        recommendation: Free-text buy advice.
    """

    scores: dict[str, float] = field(default_factory=dict)
    recommendation: str = ""

    def score_for(self, asset_symbol: str) -> float:
        """Score for an asset (0 if not scored)."""
        return self.scores.get(asset_symbol, 0.0)

    @property
    def btc_dip_score(self) -> float:
        return self.score_for("BTC")

    @property
    def eth_dip_score(self) -> float:
        return self.score_for("ETH")

    def to_dict(self) -> dict[str, Any]:
        """Convert analysis to dictionary."""
        return {"scores": dict(self.scores), "recommendation": self.recommendation}


class BaseDipClassifier(ABC):
    """Abstract dip classifier."""

    @abstractmethod
    async def score_dips(
        self,
        current_prices: dict[str, Decimal],
        historical_prices: Optional[dict[str, list[Decimal]]] = None,
    ) -> DipAnalysis:
        """
        Score current prices as dip opportunities.

        Args:
            current_prices: Current USD price per asset symbol.
            historical_prices: Recent prices per asset symbol, oldest first.

        Returns:
            DipAnalysis with a score per asset and a recommendation.

        Raises:
            ClassifierError: If scoring fails.
        """
        pass


# =============================================================================
# OpenAI Classifier
# =============================================================================

SYSTEM_PROMPT = (
    "You are a cryptocurrency trading expert. Analyze the provided BTC and ETH "
    "price data from the past week, along with their current prices, to identify "
    "potential dip buying opportunities."
)

USER_PROMPT = """Consider the historical price movements to determine if the current prices \
represent a significant dip compared to the recent past. Calculate a "dip score" for both \
BTC and ETH, ranging from 0 to 100, where higher scores indicate a more favorable dip opportunity.

Provide a recommendation on whether to buy BTC, ETH, or neither. If buying is recommended, \
suggest allocation percentages between BTC and ETH (for example "Buy BTC 60%, ETH 40%").

Past Week BTC Prices: {btc_history}
Current BTC Price: {btc_price}

Past Week ETH Prices: {eth_history}
Current ETH Price: {eth_price}

Respond with a JSON object with exactly these keys:
{{"btcDipScore": number, "ethDipScore": number, "recommendation": string}}"""

_SCORE_KEYS = {"BTC": "btcDipScore", "ETH": "ethDipScore"}


def _format_prices(prices: list[Decimal]) -> str:
    return "[" + ", ".join(str(p) for p in prices) + "]"


class OpenAIDipClassifier(BaseDipClassifier):
    """
    Dip classifier backed by an OpenAI chat model.

    Example:
        >>> classifier = OpenAIDipClassifier(api_key="sk-...")
        >>> analysis = await classifier.score_dips({"BTC": Decimal("58000"), "ETH": Decimal("2900")})
        >>> analysis.btc_dip_score
        82.0
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[OpenAI] = None,
        timeout: float = 30.0,
    ) -> None:
        """
        Initialize the classifier.

        Args:
            api_key: OpenAI API key (default from config).
            model: Chat model name (default from config).
            client: Preconfigured OpenAI client (for testing).
            timeout: Request timeout in seconds.
        """
        self.model = model or OPENAI_MODEL
        if client is not None:
            self._client = client
        else:
            key = api_key or OPENAI_API_KEY
            if not key:
                raise ClassifierError("OPENAI_API_KEY is not set")
            self._client = OpenAI(api_key=key, timeout=timeout, max_retries=0)

    def build_messages(
        self,
        current_prices: dict[str, Decimal],
        historical_prices: Optional[dict[str, list[Decimal]]] = None,
    ) -> list[dict[str, str]]:
        """Build the chat messages for a scoring request."""
        history = historical_prices or {}
        content = USER_PROMPT.format(
            btc_history=_format_prices(history.get("BTC", [])),
            btc_price=current_prices.get("BTC", "unknown"),
            eth_history=_format_prices(history.get("ETH", [])),
            eth_price=current_prices.get("ETH", "unknown"),
        )
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]

    def _complete(self, messages: list[dict[str, str]]) -> str:
        """Run the chat completion (blocking)."""
        response = self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            response_format={"type": "json_object"},
            temperature=0,
        )
        content = response.choices[0].message.content
        if not content:
            raise ClassifierError("Empty response from model")
        return content

    async def score_dips(
        self,
        current_prices: dict[str, Decimal],
        historical_prices: Optional[dict[str, list[Decimal]]] = None,
    ) -> DipAnalysis:
        messages = self.build_messages(current_prices, historical_prices)
        try:
            content = await asyncio.to_thread(self._complete, messages)
        except OpenAIError as e:
            raise ClassifierError(f"OpenAI request failed: {e}") from e

        analysis = self.parse_response(content)
        logger.debug(f"OpenAI dip analysis: {analysis.to_dict()}")
        return analysis

    @staticmethod
    def parse_response(content: str) -> DipAnalysis:
        """
        Validate the model's JSON answer.

        Raises:
            ClassifierError: If the JSON is malformed or out of range.
        """
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ClassifierError(f"Model returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ClassifierError("Model output is not a JSON object")

        scores = {}
        for symbol, key in _SCORE_KEYS.items():
            value = data.get(key)
            # bool is an int subclass
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ClassifierError(f"{key} missing or not numeric: {value!r}")
            if not 0 <= value <= 100:
                raise ClassifierError(f"{key} out of range: {value}")
            scores[symbol] = float(value)

        recommendation = data.get("recommendation")
        if not isinstance(recommendation, str):
            raise ClassifierError("recommendation missing or not a string")

        return DipAnalysis(scores=scores, recommendation=recommendation)


# =============================================================================
# Drawdown Classifier
# =============================================================================


class DrawdownDipClassifier(BaseDipClassifier):
    """
    Offline classifier scoring the drawdown from the recent high.

    A drawdown of ``full_score_drawdown`` (default 10%) or more scores 100;
    no drawdown scores 0. Assets at or above ``buy_threshold`` are
    recommended, split in proportion to their scores.
    """

    def __init__(
        self,
        full_score_drawdown: float = 0.10,
        buy_threshold: float = 70.0,
    ) -> None:
        if full_score_drawdown <= 0:
            raise ValueError("full_score_drawdown must be positive")
        self.full_score_drawdown = Decimal(str(full_score_drawdown))
        self.buy_threshold = buy_threshold

    def score(self, current: Decimal, history: list[Decimal]) -> float:
        """Dip score for one asset."""
        if not history:
            return 0.0
        high = max(history)
        if high <= 0 or current >= high:
            return 0.0
        drawdown = (high - current) / high
        score = drawdown / self.full_score_drawdown * 100
        return float(min(score, Decimal("100")))

    async def score_dips(
        self,
        current_prices: dict[str, Decimal],
        historical_prices: Optional[dict[str, list[Decimal]]] = None,
    ) -> DipAnalysis:
        history = historical_prices or {}
        scores = {}
        for asset in TRACKED_ASSETS:
            price = current_prices.get(asset.symbol)
            if price is None:
                logger.warning(f"No current price for {asset.symbol}, scoring 0")
                scores[asset.symbol] = 0.0
                continue
            scores[asset.symbol] = round(self.score(price, history.get(asset.symbol, [])), 2)

        return DipAnalysis(scores=scores, recommendation=self._recommend(scores))

    def _recommend(self, scores: dict[str, float]) -> str:
        picks = [(s, v) for s, v in scores.items() if v >= self.buy_threshold]
        if not picks:
            return "Hold"

        total = sum(v for _, v in picks)
        parts = []
        remaining = 100
        for i, (symbol, value) in enumerate(picks):
            pct = remaining if i == len(picks) - 1 else int(round(value / total * 100))
            remaining -= pct
            parts.append(f"{symbol} {pct}%")
        return "Buy " + ", ".join(parts)


def build_classifier() -> BaseDipClassifier:
    """OpenAI classifier when a key is configured, drawdown otherwise."""
    if OPENAI_API_KEY:
        logger.info(f"Using OpenAI dip classifier ({OPENAI_MODEL})")
        return OpenAIDipClassifier()
    logger.info("OPENAI_API_KEY not set, using drawdown dip classifier")
    return DrawdownDipClassifier(buy_threshold=DIP_SCORE_THRESHOLD)
