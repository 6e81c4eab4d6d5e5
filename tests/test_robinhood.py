"""
Tests for the Robinhood Crypto exchange client.

Tests cover:
- Credential validation
- Ed25519 request signing
- Holdings pagination
- Quote parsing
- Order payloads and status mapping
- HTTP and transport error mapping

HTTP is mocked at the requests.Session level; no network access.
"""

import base64
import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests
from nacl.signing import SigningKey

from cryptopilot.config import ROBINHOOD_BASE_URL
from cryptopilot.exchanges.base import (
    BTC,
    ETH,
    AuthenticationError,
    ConnectionError,
    InsufficientBalanceError,
    OrderError,
    OrderSide,
    OrderStatus,
    RateLimitError,
)
from cryptopilot.exchanges.robinhood import RobinhoodExchange



def _response(status_code=200, payload=None):
    """Build a fake requests.Response."""
    response = MagicMock()
    response.status_code = status_code
    if payload is None:
        response.json.side_effect = ValueError("no json")
        response.text = "not json"
    else:
        response.json.return_value = payload
        response.text = json.dumps(payload)
    return response


@pytest.fixture
def signing_key():
    return SigningKey.generate()


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def exchange(signing_key, session):
    return RobinhoodExchange(
        api_key="rh-api-key",
        private_key_base64=base64.b64encode(bytes(signing_key)).decode(),
        session=session,
    )


class TestCredentials:
    """Tests for key loading."""

    def test_missing_credentials(self):
        with pytest.raises(AuthenticationError):
            RobinhoodExchange(api_key="", private_key_base64="")

    def test_wrong_key_length(self):
        with pytest.raises(AuthenticationError):
            RobinhoodExchange(
                api_key="key",
                private_key_base64=base64.b64encode(b"short").decode(),
                session=MagicMock(),
            )

    def test_invalid_base64(self):
        with pytest.raises(AuthenticationError):
            RobinhoodExchange(api_key="key", private_key_base64="@@@", session=MagicMock())

    @pytest.mark.asyncio
    async def test_base_url_default_and_override(self, signing_key):
        key = base64.b64encode(bytes(signing_key)).decode()
        session = MagicMock()
        session.request.return_value = _response(200, {"next": None, "results": []})

        default = RobinhoodExchange(api_key="key", private_key_base64=key, session=session)
        await default.fetch_holdings()
        assert session.request.call_args[0][1].startswith(f"{ROBINHOOD_BASE_URL}/api/v1/")

        sandbox = RobinhoodExchange(
            api_key="key",
            private_key_base64=key,
            base_url="https://sandbox.example.com/",
            session=session,
        )
        await sandbox.fetch_holdings()
        assert session.request.call_args[0][1].startswith("https://sandbox.example.com/api/v1/")

    def test_64_byte_secret_key_accepted(self, signing_key):
        secret = bytes(signing_key) + bytes(signing_key.verify_key)
        exchange = RobinhoodExchange(
            api_key="key",
            private_key_base64=base64.b64encode(secret).decode(),
            session=MagicMock(),
        )
        headers = exchange.get_authorization_headers("GET", "/path", timestamp=1)
        signing_key.verify_key.verify(
            b"key1/pathGET", base64.b64decode(headers["x-signature"])
        )


class TestSigning:
    """Tests for request signatures."""

    def test_headers(self, exchange):
        headers = exchange.get_authorization_headers("GET", "/api/v1/x/", timestamp=1700000000)
        assert headers["x-api-key"] == "rh-api-key"
        assert headers["x-timestamp"] == "1700000000"

    def test_signature_covers_key_timestamp_path_method_body(self, exchange, signing_key):
        body = '{"a": 1}'
        headers = exchange.get_authorization_headers(
            "POST", "/api/v1/crypto/trading/orders/", body, timestamp=1700000000
        )
        message = b'rh-api-key1700000000/api/v1/crypto/trading/orders/POST{"a": 1}'
        # Raises BadSignatureError on mismatch
        signing_key.verify_key.verify(message, base64.b64decode(headers["x-signature"]))

    @pytest.mark.asyncio
    async def test_sent_body_matches_signed_body(self, exchange, session):
        session.request.return_value = _response(200, {"id": "o1", "state": "filled"})
        await exchange.place_market_order(BTC, OrderSide.BUY, Decimal("0.02"))

        _, kwargs = session.request.call_args
        assert json.loads(kwargs["data"])["symbol"] == "BTC-USD"
        assert kwargs["headers"]["x-signature"]


class TestHoldings:
    """Tests for holdings retrieval."""

    @pytest.mark.asyncio
    async def test_pagination_followed(self, exchange, session):
        session.request.side_effect = [
            _response(200, {
                "next": f"{ROBINHOOD_BASE_URL}/api/v1/crypto/trading/holdings/?asset_code=BTC&cursor=abc",
                "results": [
                    {"asset_code": "BTC", "total_quantity": "1.5",
                     "quantity_available_for_trading": "1.0"},
                ],
            }),
            _response(200, {
                "next": None,
                "results": [
                    {"asset_code": "ETH", "total_quantity": "2",
                     "quantity_available_for_trading": "2"},
                ],
            }),
        ]

        holdings = await exchange.fetch_holdings()

        assert [h.asset_symbol for h in holdings] == ["BTC", "ETH"]
        assert holdings[0].quantity_available_for_trading == Decimal("1.0")
        assert session.request.call_count == 2
        second_url = session.request.call_args_list[1][0][1]
        assert second_url == f"{ROBINHOOD_BASE_URL}/api/v1/crypto/trading/holdings/?asset_code=BTC&cursor=abc"

    @pytest.mark.asyncio
    async def test_first_request_filters_tracked_assets(self, exchange, session):
        session.request.return_value = _response(200, {"next": None, "results": []})
        await exchange.fetch_holdings()

        method, url = session.request.call_args[0]
        assert method == "GET"
        assert url.endswith("/holdings/?asset_code=BTC&asset_code=ETH")


class TestQuotes:
    """Tests for best bid/ask retrieval."""

    @pytest.mark.asyncio
    async def test_parse_quotes(self, exchange, session):
        session.request.return_value = _response(200, {
            "results": [
                {"symbol": "BTC-USD", "price": "60000.5",
                 "bid_inclusive_of_sell_spread": "59900", "ask_inclusive_of_buy_spread": "60100",
                 "timestamp": "2024-05-01T12:00:00Z"},
                {"symbol": "ETH-USD", "price": "3000"},
                {"symbol": "DOGE-USD", "price": "0.1"},
            ]
        })

        quotes = await exchange.fetch_best_quotes(["BTC-USD", "ETH-USD"])

        assert [q.asset_symbol for q in quotes] == ["BTC", "ETH"]
        assert quotes[0].price == Decimal("60000.5")
        assert quotes[0].bid == Decimal("59900")
        assert quotes[0].observed_at.year == 2024
        url = session.request.call_args[0][1]
        assert "symbol=BTC-USD&symbol=ETH-USD" in url

    @pytest.mark.asyncio
    async def test_no_pairs_no_request(self, exchange, session):
        assert await exchange.fetch_best_quotes([]) == []
        session.request.assert_not_called()


class TestOrders:
    """Tests for market orders."""

    @pytest.mark.asyncio
    async def test_payload(self, exchange, session):
        session.request.return_value = _response(200, {
            "id": "order-1", "state": "filled",
            "filled_asset_quantity": "0.266666", "average_price": "3000",
        })

        order = await exchange.place_market_order(ETH, OrderSide.BUY, Decimal("0.266666"))

        method, url = session.request.call_args[0]
        payload = json.loads(session.request.call_args[1]["data"])
        assert method == "POST"
        assert url == f"{ROBINHOOD_BASE_URL}/api/v1/crypto/trading/orders/"
        assert payload["side"] == "buy"
        assert payload["type"] == "market"
        assert payload["symbol"] == "ETH-USD"
        assert payload["market_order_config"] == {"asset_quantity": "0.266666"}
        assert payload["client_order_id"]

        assert order.order_id == "order-1"
        assert order.status == OrderStatus.FILLED
        assert order.average_fill_price == Decimal("3000")

    @pytest.mark.asyncio
    async def test_canceled_state_is_rejected(self, exchange, session):
        session.request.return_value = _response(200, {"id": "o2", "state": "canceled"})
        order = await exchange.place_market_order(BTC, OrderSide.SELL, Decimal("1"))
        assert order.status == OrderStatus.CANCELLED
        assert order.is_rejected

    @pytest.mark.asyncio
    async def test_zero_quantity(self, exchange, session):
        with pytest.raises(OrderError):
            await exchange.place_market_order(BTC, OrderSide.BUY, Decimal("0"))
        session.request.assert_not_called()


class TestErrorMapping:
    """Tests for HTTP error translation."""

    @pytest.mark.asyncio
    async def test_unauthorized(self, exchange, session):
        session.request.return_value = _response(401, {"errors": [{"detail": "bad signature"}]})
        with pytest.raises(AuthenticationError, match="bad signature"):
            await exchange.fetch_holdings()

    @pytest.mark.asyncio
    async def test_rate_limited(self, exchange, session):
        session.request.return_value = _response(429, {"errors": [{"detail": "slow down"}]})
        with pytest.raises(RateLimitError):
            await exchange.fetch_best_quotes(["BTC-USD"])

    @pytest.mark.asyncio
    async def test_server_error_on_read(self, exchange, session):
        session.request.return_value = _response(503)
        with pytest.raises(ConnectionError):
            await exchange.fetch_holdings()

    @pytest.mark.asyncio
    async def test_transport_failure(self, exchange, session):
        session.request.side_effect = requests.Timeout("timed out")
        with pytest.raises(ConnectionError):
            await exchange.fetch_holdings()

    @pytest.mark.asyncio
    async def test_invalid_json(self, exchange, session):
        session.request.return_value = _response(200)
        with pytest.raises(ConnectionError):
            await exchange.fetch_holdings()

    @pytest.mark.asyncio
    async def test_insufficient_balance_on_order(self, exchange, session):
        session.request.return_value = _response(
            400, {"errors": [{"detail": "Insufficient buying power"}]}
        )
        with pytest.raises(InsufficientBalanceError):
            await exchange.place_market_order(BTC, OrderSide.BUY, Decimal("1"))

    @pytest.mark.asyncio
    async def test_order_validation_error(self, exchange, session):
        session.request.return_value = _response(400, {"errors": [{"detail": "invalid quantity"}]})
        with pytest.raises(OrderError) as exc_info:
            await exchange.place_market_order(BTC, OrderSide.BUY, Decimal("1"))
        assert not isinstance(exc_info.value, InsufficientBalanceError)
