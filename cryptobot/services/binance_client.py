"""Binance spot REST client for order placement and market/account queries.

Signed endpoints append `timestamp` and `recvWindow`, sign the url-encoded
query string with HMAC-SHA256 and send the API key in `X-MBX-APIKEY`.
Order placement never raises: failures come back as `OrderResult(success=False)`.
Read calls raise `ExchangeError`.
"""

import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from urllib.parse import urlencode

import aiohttp

from cryptobot.errors import ExchangeError
from cryptobot.utils.constants import BUY, SELL

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 10


@dataclass
class OrderResult:
    success: bool
    order_id: str | None = None
    error: str | None = None
    filled_price: float | None = None
    filled_amount: float | None = None
    order_status: str | None = None
    raw_response: dict | None = None


def format_symbol(symbol: str) -> str:
    """'btc/usdt' -> 'BTCUSDT'."""
    return symbol.replace("/", "").upper()


def format_decimal(value) -> str:
    """Plain decimal string without exponent or trailing zeros, 8 places max."""
    d = Decimal(str(value)).quantize(Decimal("0.00000001"))
    text = format(d, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def sign_query(params: dict, secret: str) -> str:
    """Return the url-encoded query with its HMAC-SHA256 signature appended."""
    query = urlencode(params)
    signature = hmac.new(secret.encode(), query.encode(), hashlib.sha256).hexdigest()
    return f"{query}&signature={signature}"


def parse_fill(data: dict) -> tuple[float | None, float | None]:
    """Average fill price and executed quantity from an order response."""
    executed = float(data.get("executedQty") or 0)
    if executed <= 0:
        return None, None
    quote = data.get("cummulativeQuoteQty")
    if quote is not None and float(quote) > 0:
        return float(quote) / executed, executed
    fills = data.get("fills") or []
    if fills:
        qty = sum(float(f["qty"]) for f in fills)
        if qty > 0:
            return sum(float(f["price"]) * float(f["qty"]) for f in fills) / qty, executed
    return None, executed


class BinanceClient:
    """Async wrapper around the Binance spot REST API."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        recv_window: int = 5000,
        session: aiohttp.ClientSession | None = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self._session = session

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS),
                headers={"X-MBX-APIKEY": self.api_key},
            )
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, endpoint: str, params: dict | None = None, signed: bool = False):
        params = {k: v for k, v in (params or {}).items() if v is not None}
        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = self.recv_window
            query = sign_query(params, self.api_secret)
        else:
            query = urlencode(params)

        url = f"{self.base_url}{endpoint}"
        if query:
            url = f"{url}?{query}"

        session = await self._ensure_session()
        try:
            async with session.request(method, url) as resp:
                data = await resp.json(content_type=None)
                if resp.status >= 400:
                    code = data.get("code") if isinstance(data, dict) else None
                    msg = data.get("msg") if isinstance(data, dict) else str(data)
                    raise ExchangeError(f"{method} {endpoint} -> {resp.status}: {msg}", status=resp.status, code=code)
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ExchangeError(f"{method} {endpoint} failed: {e}") from e

    # ------------------------------------------------------------------
    # Market data (public)
    # ------------------------------------------------------------------

    async def get_price(self, symbol: str) -> float:
        data = await self._request("GET", "/ticker/price", {"symbol": format_symbol(symbol)})
        return float(data["price"])

    async def get_24hr_ticker(self, symbol: str) -> dict:
        return await self._request("GET", "/ticker/24hr", {"symbol": format_symbol(symbol)})

    async def get_klines(self, symbol: str, interval: str = "1m", limit: int = 50) -> list[list]:
        return await self._request("GET", "/klines", {
            "symbol": format_symbol(symbol), "interval": interval, "limit": limit,
        })

    async def get_exchange_info(self, symbol: str | None = None) -> dict:
        params = {"symbol": format_symbol(symbol)} if symbol else None
        return await self._request("GET", "/exchangeInfo", params)

    # ------------------------------------------------------------------
    # Account (signed)
    # ------------------------------------------------------------------

    async def get_account(self) -> dict:
        return await self._request("GET", "/account", signed=True)

    async def get_order(self, symbol: str, order_id: str) -> dict:
        return await self._request("GET", "/order", {"symbol": format_symbol(symbol), "orderId": order_id}, signed=True)

    async def get_open_orders(self, symbol: str | None = None) -> list[dict]:
        params = {"symbol": format_symbol(symbol)} if symbol else None
        return await self._request("GET", "/openOrders", params, signed=True)

    # ------------------------------------------------------------------
    # Orders (signed)
    # ------------------------------------------------------------------

    async def place_market_order(self, symbol: str, side: str, quantity: float) -> OrderResult:
        """Place a MARKET order. `side` is "BUY" or "SELL"."""
        return await self._place_order(symbol, side, {
            "type": "MARKET",
            "quantity": format_decimal(quantity),
            "newOrderRespType": "FULL",
        })

    async def place_limit_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        price: float,
        time_in_force: str = "GTC",
    ) -> OrderResult:
        return await self._place_order(symbol, side, {
            "type": "LIMIT",
            "timeInForce": time_in_force,
            "quantity": format_decimal(quantity),
            "price": format_decimal(price),
            "newOrderRespType": "FULL",
        })

    async def market_buy(self, symbol: str, quantity: float) -> OrderResult:
        return await self.place_market_order(symbol, BUY, quantity)

    async def market_sell(self, symbol: str, quantity: float) -> OrderResult:
        return await self.place_market_order(symbol, SELL, quantity)

    async def _place_order(self, symbol: str, side: str, params: dict) -> OrderResult:
        if side not in (BUY, SELL):
            return OrderResult(success=False, error=f"Invalid side {side!r}")
        payload = {"symbol": format_symbol(symbol), "side": side, **params}
        try:
            data = await self._request("POST", "/order", payload, signed=True)
        except ExchangeError as e:
            logger.error(f"Order rejected: {e}")
            return OrderResult(success=False, error=str(e))

        filled_price, filled_amount = parse_fill(data)
        order_id = str(data.get("orderId")) if data.get("orderId") is not None else None
        logger.info(
            f"Order placed: {order_id} {side} {params['type']} {payload['quantity']} {payload['symbol']} "
            f"status={data.get('status')}"
        )
        return OrderResult(
            success=True,
            order_id=order_id,
            filled_price=filled_price,
            filled_amount=filled_amount,
            order_status=data.get("status"),
            raw_response=data,
        )

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        """Cancel an order. Returns False instead of raising on failure."""
        try:
            await self._request("DELETE", "/order", {"symbol": format_symbol(symbol), "orderId": order_id}, signed=True)
        except ExchangeError as e:
            logger.error(f"Cancel {order_id} on {symbol} failed: {e}")
            return False
        logger.info(f"Order cancelled: {order_id}")
        return True
