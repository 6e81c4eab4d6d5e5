"""
Robinhood Crypto exchange implementation.

This module provides a concrete implementation of the BaseExchange interface
for the Robinhood Crypto trading API. Every request is signed with the
account's Ed25519 key. Calls are made once: network and HTTP failures are
mapped to the exchange error taxonomy and left to the caller.
"""

import asyncio
import base64
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import urlencode, urlsplit

import requests
from nacl.signing import SigningKey

from ..config import ROBINHOOD_BASE_URL
from .base import (
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
    TRACKED_ASSETS,
    get_asset,
)

logger = logging.getLogger(__name__)

# Robinhood order states -> OrderStatus
_ORDER_STATES = {
    "open": OrderStatus.OPEN,
    "partially_filled": OrderStatus.PARTIALLY_FILLED,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "failed": OrderStatus.FAILED,
}


def _to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Parse a numeric API field into a Decimal."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return default


def _parse_timestamp(value: Optional[str]) -> datetime:
    """Parse an ISO-8601 API timestamp, falling back to now."""
    if not value:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)


class RobinhoodExchange(BaseExchange):
    """
    Robinhood Crypto brokerage client.

    Supports:
    - Holdings with cursor pagination
    - Best bid/ask quotes for tracked pairs
    - Market orders sized in asset quantity

    Environment Variables:
        ROBINHOOD_API_KEY: API key issued for the account.
        ROBINHOOD_PRIVATE_KEY_BASE64: Base64 Ed25519 private key (seed).

    Example:
        >>> exchange = RobinhoodExchange(api_key="...", private_key_base64="...")
        >>> await exchange.connect()
        >>> holdings = await exchange.fetch_holdings()
    """

    BASE_URL = ROBINHOOD_BASE_URL
    HOLDINGS_PATH = "/api/v1/crypto/trading/holdings/"
    BEST_BID_ASK_PATH = "/api/v1/crypto/marketdata/best_bid_ask/"
    ORDERS_PATH = "/api/v1/crypto/trading/orders/"

    def __init__(
        self,
        api_key: str,
        private_key_base64: str,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        Initialize Robinhood exchange.

        Args:
            api_key: Robinhood crypto API key.
            private_key_base64: Base64-encoded Ed25519 private key. Both the
                32-byte seed and the 64-byte secret key forms are accepted.
            base_url: Override the API host (for testing).
            timeout: Per-request timeout in seconds.
            session: Optional requests session to reuse.

        Raises:
            AuthenticationError: If credentials are missing or malformed.
        """
        super().__init__(mock_mode=False)
        self._name = "robinhood"

        if not api_key or not private_key_base64:
            raise AuthenticationError(
                "Robinhood credentials missing. Set ROBINHOOD_API_KEY and "
                "ROBINHOOD_PRIVATE_KEY_BASE64."
            )

        self._api_key = api_key
        self._signing_key = self._load_signing_key(private_key_base64)
        self._base_url = (base_url or self.BASE_URL).rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

        logger.info("Robinhood exchange initialized")

    @staticmethod
    def _load_signing_key(private_key_base64: str) -> SigningKey:
        """Decode the private key into a SigningKey."""
        try:
            key_bytes = base64.b64decode(private_key_base64)
        except (ValueError, TypeError) as e:
            raise AuthenticationError(f"Private key is not valid base64: {e}")

        # 64-byte secret keys carry the seed in the first half
        if len(key_bytes) == 64:
            key_bytes = key_bytes[:32]
        if len(key_bytes) != 32:
            raise AuthenticationError(
                f"Private key must be 32 or 64 bytes, got {len(key_bytes)}"
            )
        return SigningKey(key_bytes)

    async def disconnect(self) -> None:
        """Close the HTTP session."""
        self._session.close()
        self.is_connected = False
        logger.info("Disconnected from Robinhood")

    # =========================================================================
    # Request Signing
    # =========================================================================

    def get_authorization_headers(
        self, method: str, path: str, body: str = "", timestamp: Optional[int] = None
    ) -> dict[str, str]:
        """
        Build the signed headers for a request.

        Args:
            method: HTTP method (GET or POST).
            path: Request path including query string.
            body: Exact request body that will be sent.
            timestamp: Unix timestamp in seconds (defaults to now).

        Returns:
            Header dictionary with api key, timestamp and signature.
        """
        if timestamp is None:
            timestamp = int(time.time())
        message = f"{self._api_key}{timestamp}{path}{method}{body}"
        signed = self._signing_key.sign(message.encode("utf-8"))
        return {
            "x-api-key": self._api_key,
            "x-timestamp": str(timestamp),
            "x-signature": base64.b64encode(signed.signature).decode("utf-8"),
            "Content-Type": "application/json; charset=utf-8",
        }

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict[str, Any]:
        """
        Perform one signed request (blocking).

        Raises:
            ConnectionError: On transport failures, 5xx on reads, bad JSON.
            AuthenticationError: On 401/403.
            RateLimitError: On 429.
            OrderError: On rejected writes.
        """
        body = json.dumps(payload) if payload is not None else ""
        headers = self.get_authorization_headers(method, path, body)
        url = f"{self._base_url}{path}"

        try:
            response = self._session.request(
                method,
                url,
                headers=headers,
                data=body or None,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise ConnectionError(f"{method} {path} failed: {e}")

        if response.status_code >= 400:
            self._raise_for_status(method, path, response)

        try:
            return response.json()
        except ValueError as e:
            raise ConnectionError(f"{method} {path} returned invalid JSON: {e}")

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        """Extract a readable error message from an error response."""
        try:
            data = response.json()
        except ValueError:
            return response.text[:200]
        errors = data.get("errors") if isinstance(data, dict) else None
        if errors:
            return "; ".join(str(e.get("detail", e)) for e in errors)
        return json.dumps(data)[:200]

    def _raise_for_status(self, method: str, path: str, response: requests.Response) -> None:
        """Map an HTTP error response onto the exchange exceptions."""
        status = response.status_code
        detail = self._error_detail(response)
        message = f"{method} {path} -> HTTP {status}: {detail}"

        if status in (401, 403):
            raise AuthenticationError(message)
        if status == 429:
            raise RateLimitError(message)
        if method == "POST":
            if "insufficient" in detail.lower():
                raise InsufficientBalanceError(message)
            raise OrderError(message)
        if status >= 500:
            raise ConnectionError(message)
        raise ExchangeError(message)

    async def _call(self, method: str, path: str, payload: Optional[dict] = None) -> dict[str, Any]:
        """Run a signed request in a worker thread."""
        return await asyncio.to_thread(self._request, method, path, payload)

    # =========================================================================
    # BaseExchange Implementation
    # =========================================================================

    async def fetch_holdings(self) -> list[Holding]:
        """
        Fetch holdings for the tracked assets, following pagination.

        Returns:
            List of Holding objects.
        """
        query = urlencode([("asset_code", a.symbol) for a in TRACKED_ASSETS])
        path: Optional[str] = f"{self.HOLDINGS_PATH}?{query}"
        holdings: list[Holding] = []

        while path:
            data = await self._call("GET", path)
            for item in data.get("results", []):
                total = _to_decimal(item.get("total_quantity"), Decimal("0"))
                available = _to_decimal(item.get("quantity_available_for_trading"), Decimal("0"))
                holdings.append(
                    Holding(
                        asset_symbol=str(item.get("asset_code", "")).upper(),
                        total_quantity=total,
                        quantity_available_for_trading=min(available, total),
                    )
                )
            path = self._next_path(data.get("next"))

        return holdings

    def _next_path(self, next_url: Optional[str]) -> Optional[str]:
        """Turn a pagination URL into a signable path."""
        if not next_url:
            return None
        parts = urlsplit(next_url)
        return f"{parts.path}?{parts.query}" if parts.query else parts.path

    async def fetch_best_quotes(self, pair_symbols: list[str]) -> list[MarketQuote]:
        """
        Fetch best bid/ask for the given trading pairs.

        Args:
            pair_symbols: Trading pairs (e.g., ['BTC-USD', 'ETH-USD']).

        Returns:
            List of MarketQuote objects for recognised pairs.
        """
        if not pair_symbols:
            return []

        query = urlencode([("symbol", s) for s in pair_symbols])
        data = await self._call("GET", f"{self.BEST_BID_ASK_PATH}?{query}")

        quotes = []
        for item in data.get("results", []):
            asset = get_asset(str(item.get("symbol", "")))
            price = _to_decimal(item.get("price"))
            if asset is None or price is None or price <= 0:
                logger.warning(f"Ignoring unusable quote: {item}")
                continue
            quotes.append(
                MarketQuote(
                    asset_symbol=asset.symbol,
                    price=price,
                    observed_at=_parse_timestamp(item.get("timestamp")),
                    bid=_to_decimal(item.get("bid_inclusive_of_sell_spread")),
                    ask=_to_decimal(item.get("ask_inclusive_of_buy_spread")),
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
        Submit a market order sized in asset units.

        Args:
            asset: Asset to trade.
            side: Buy or sell.
            quantity: Quantity already truncated to the asset precision.

        Returns:
            Order confirmation parsed from the response.
        """
        if quantity <= 0:
            raise OrderError("Order quantity must be positive")

        client_order_id = str(uuid.uuid4())
        payload = {
            "client_order_id": client_order_id,
            "side": side.value,
            "type": "market",
            "symbol": asset.pair_symbol,
            "market_order_config": {"asset_quantity": format(quantity, "f")},
        }

        data = await self._call("POST", self.ORDERS_PATH, payload)
        order = self._parse_order(data, asset, side, quantity, client_order_id)

        logger.info(
            f"Robinhood order {order.order_id}: {side.value} {quantity} "
            f"{asset.pair_symbol} state={order.status.value}"
        )
        return order

    @staticmethod
    def _parse_order(
        data: dict[str, Any],
        asset: Asset,
        side: OrderSide,
        quantity: Decimal,
        client_order_id: str,
    ) -> Order:
        """Convert an order response into an Order."""
        state = str(data.get("state", "")).lower()
        return Order(
            order_id=str(data.get("id", "")),
            asset_symbol=asset.symbol,
            side=side,
            quantity=quantity,
            status=_ORDER_STATES.get(state, OrderStatus.PENDING),
            filled_quantity=_to_decimal(data.get("filled_asset_quantity"), Decimal("0")),
            average_fill_price=_to_decimal(data.get("average_price")),
            created_at=_parse_timestamp(data.get("created_at")),
            client_order_id=data.get("client_order_id", client_order_id),
            raw=data,
        )
