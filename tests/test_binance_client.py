"""Tests for the Binance REST client helpers and order result handling."""

import hashlib
import hmac
from unittest.mock import AsyncMock

import pytest

from cryptobot.errors import ExchangeError
from cryptobot.services.binance_client import (
    BinanceClient,
    format_decimal,
    format_symbol,
    parse_fill,
    sign_query,
)


def _client():
    return BinanceClient("key", "secret", "https://testnet.binance.vision/api/")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_format_symbol():
    assert format_symbol("BTC/USDT") == "BTCUSDT"
    assert format_symbol("eth/usdt") == "ETHUSDT"


@pytest.mark.parametrize("value,expected", [
    (0.001, "0.001"),
    (1e-05, "0.00001"),
    (1.0, "1"),
    (123.456789123, "123.45678912"),
    ("10.50000", "10.5"),
])
def test_format_decimal(value, expected):
    assert format_decimal(value) == expected


def test_sign_query_appends_hmac():
    query = sign_query({"symbol": "BTCUSDT", "timestamp": 1767614400000}, "secret")
    base = "symbol=BTCUSDT&timestamp=1767614400000"
    expected = hmac.new(b"secret", base.encode(), hashlib.sha256).hexdigest()
    assert query == f"{base}&signature={expected}"


class TestParseFill:
    def test_average_from_cumulative_quote(self):
        assert parse_fill({"executedQty": "2", "cummulativeQuoteQty": "201"}) == (100.5, 2.0)

    def test_average_from_fills(self):
        data = {"executedQty": "2", "cummulativeQuoteQty": "0",
                "fills": [{"price": "100", "qty": "1"}, {"price": "102", "qty": "1"}]}
        assert parse_fill(data) == (101.0, 2.0)

    def test_unfilled(self):
        assert parse_fill({"executedQty": "0"}) == (None, None)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_market_order_success():
    client = _client()
    client._request = AsyncMock(return_value={
        "orderId": 42, "status": "FILLED", "executedQty": "0.5", "cummulativeQuoteQty": "25000",
    })

    result = await client.place_market_order("BTC/USDT", "BUY", 0.5)

    assert result.success
    assert result.order_id == "42"
    assert result.filled_price == 50000
    assert result.filled_amount == 0.5
    method, endpoint, payload = client._request.call_args.args
    assert (method, endpoint) == ("POST", "/order")
    assert payload == {"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET",
                       "quantity": "0.5", "newOrderRespType": "FULL"}
    assert client._request.call_args.kwargs == {"signed": True}


@pytest.mark.asyncio
async def test_market_order_failure_returns_result():
    client = _client()
    client._request = AsyncMock(side_effect=ExchangeError("POST /order -> 400: insufficient balance", status=400))

    result = await client.place_market_order("BTCUSDT", "SELL", 1)

    assert not result.success
    assert "insufficient balance" in result.error


@pytest.mark.asyncio
async def test_invalid_side_rejected_without_request():
    client = _client()
    client._request = AsyncMock()
    result = await client.place_market_order("BTCUSDT", "HOLD", 1)
    assert not result.success
    client._request.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_order_swallows_exchange_error():
    client = _client()
    client._request = AsyncMock(side_effect=ExchangeError("DELETE /order -> 400: unknown order", status=400))
    assert await client.cancel_order("BTCUSDT", "42") is False


@pytest.mark.asyncio
async def test_get_price_parses_float():
    client = _client()
    client._request = AsyncMock(return_value={"symbol": "BTCUSDT", "price": "50123.45"})
    assert await client.get_price("BTCUSDT") == 50123.45
    assert client.base_url == "https://testnet.binance.vision/api"


@pytest.mark.asyncio
async def test_limit_order_payload():
    client = _client()
    client._request = AsyncMock(return_value={"orderId": 7, "status": "NEW", "executedQty": "0"})

    result = await client.place_limit_order("ETHUSDT", "SELL", 2, 3000.5, time_in_force="IOC")

    assert result.success
    assert result.filled_price is None
    assert result.order_status == "NEW"
    _, _, payload = client._request.call_args.args
    assert payload == {"symbol": "ETHUSDT", "side": "SELL", "type": "LIMIT", "timeInForce": "IOC",
                       "quantity": "2", "price": "3000.5", "newOrderRespType": "FULL"}


@pytest.mark.asyncio
async def test_market_sell_shortcut():
    client = _client()
    client._request = AsyncMock(return_value={"orderId": 1, "status": "FILLED",
                                              "executedQty": "1", "cummulativeQuoteQty": "100"})
    await client.market_sell("BTCUSDT", 1)
    assert client._request.call_args.args[2]["side"] == "SELL"


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    closed = False

    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = payload if payload is not None else {}
        self.calls = []

    def request(self, method, url):
        self.calls.append((method, url))
        return FakeResponse(self.status, self.payload)

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_signed_request_adds_timestamp_and_signature():
    session = FakeSession(payload=[])
    client = BinanceClient("key", "secret", "https://api.example", recv_window=6000, session=session)

    await client.get_open_orders("BTC/USDT")

    method, url = session.calls[0]
    assert method == "GET"
    path, query = url.split("?", 1)
    assert path == "https://api.example/openOrders"
    params = dict(part.split("=", 1) for part in query.split("&"))
    assert params["symbol"] == "BTCUSDT"
    assert params["recvWindow"] == "6000"
    assert "timestamp" in params
    unsigned = query.rsplit("&signature=", 1)[0]
    assert params["signature"] == hmac.new(b"secret", unsigned.encode(), hashlib.sha256).hexdigest()


@pytest.mark.asyncio
async def test_public_request_is_unsigned():
    session = FakeSession(payload={"symbols": []})
    client = BinanceClient("key", "secret", "https://api.example", session=session)

    await client.get_exchange_info()

    assert session.calls == [("GET", "https://api.example/exchangeInfo")]


@pytest.mark.asyncio
async def test_error_status_raises_exchange_error():
    session = FakeSession(status=400, payload={"code": -2010, "msg": "Account has insufficient balance"})
    client = BinanceClient("key", "secret", "https://api.example", session=session)

    with pytest.raises(ExchangeError) as exc:
        await client.get_order("BTCUSDT", "42")

    assert exc.value.status == 400
    assert exc.value.code == -2010
    assert "insufficient balance" in str(exc.value)


@pytest.mark.asyncio
async def test_close_releases_session():
    session = FakeSession()
    client = BinanceClient("key", "secret", "https://api.example", session=session)
    await client.close()
    assert session.closed
    assert client._session is None
